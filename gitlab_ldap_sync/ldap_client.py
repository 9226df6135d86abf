"""
LDAP client for connecting to and querying the directory.

This module connects and binds to the LDAP server and runs the paged user and group
searches. It returns raw entries; turning them into directory users and groups is the
job of gitlab_ldap_sync.directory.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError, LDAPSocketReceiveError

from gitlab_ldap_sync.retry import RetryableError, MaxRetriesExceeded, retry_call, create_retry_callback

logger = logging.getLogger(__name__)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class _TransientBindError(RetryableError):
    """Bind attempt failed in a way worth retrying."""
    pass


def relative_dn(relative: Optional[str], base_dn: str) -> str:
    """Join an optional relative DN to the base DN."""
    relative = (relative or '').strip().strip(',')
    return f"{relative},{base_dn}" if relative else base_dn


class LDAPClient:
    """
    LDAP client running the user and group searches of one directory.

    Entries are returned as ``{'dn': str, 'attributes': {lowercased name: [str, ...]}}``.
    """

    def __init__(self, config: Dict[str, Any], retry_config: Optional[Dict[str, Any]] = None):
        """
        Initialize LDAP client with configuration.

        Args:
            config: ldap section of the configuration
            retry_config: error_handling section of the configuration
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')
        self.queries = config.get('queries', {})

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 500)

        retry_config = retry_config or {}
        self.max_retries = retry_config.get('max_retries', 3)
        self.retry_wait = retry_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[float] = None) -> bool:
        """
        Connect and bind to the LDAP server, retrying transient failures.

        Args:
            max_retries: Retries after the first attempt (uses config default if None)
            retry_wait: Seconds to wait between attempts (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If the bind is refused or every attempt fails
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        retry_wait = self.retry_wait if retry_wait is None else retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._bind_once,
                max_attempts=max_retries + 1,
                delay=retry_wait,
                exceptions=(_TransientBindError,),
                on_retry=create_retry_callback(f"LDAP bind to {self.server_url}")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _bind_once(self):
        if not self.bind_dn:
            logger.warning("No bind DN configured, binding anonymously")

        self.connection = Connection(
            self.server,
            user=self.bind_dn or None,
            password=self.bind_password or None,
            auto_bind=False,
            receive_timeout=self.receive_timeout,
            raise_exceptions=False
        )

        try:
            # open() returns nothing and raises LDAPSocketOpenError on failure
            self.connection.open()

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPConnectionError(f"Bind failed: {self.connection.result}")

        except (LDAPSocketOpenError, LDAPSocketReceiveError) as e:
            self._drop_connection()
            raise _TransientBindError(str(e))
        except LDAPBindError as e:
            self._drop_connection()
            raise LDAPConnectionError(f"Bind failed: {e}")
        except LDAPException as e:
            self._drop_connection()
            raise LDAPConnectionError(f"LDAP connection failed: {e}")
        except (LDAPConnectionError, _TransientBindError):
            self._drop_connection()
            raise

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while dropping LDAP connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED}
        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(self, search_base: str, search_filter: str, attributes: List[str]) -> List[Dict[str, Any]]:
        """
        Run a paged subtree search.

        Args:
            search_base: Base DN of the search
            search_filter: LDAP filter
            attributes: Attributes to fetch

        Returns:
            List of entries with lowercased attribute names and list values

        Raises:
            LDAPQueryError: If the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        try:
            results = self.connection.extend.standard.paged_search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=attributes,
                paged_size=self.page_size,
                generator=True
            )
            for result in results:
                if result.get('type') != 'searchResEntry':
                    continue
                entries.append({
                    'dn': str(result.get('dn', '')),
                    'attributes': self._normalize_attributes(result.get('attributes', {}))
                })
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP search failed in {search_base}: {e}")

        logger.info(f"Retrieved {len(entries)} entries from {search_base}")
        return entries

    @staticmethod
    def _normalize_attributes(attributes: Dict[str, Any]) -> Dict[str, List[str]]:
        normalized = {}
        for name, value in attributes.items():
            if value is None:
                values = []
            elif isinstance(value, (list, tuple)):
                values = list(value)
            else:
                values = [value]
            normalized[name.lower()] = [
                v.decode('utf-8', 'replace') if isinstance(v, bytes) else str(v) for v in values
            ]
        return normalized

    def search_users(self) -> List[Dict[str, Any]]:
        """Fetch the user entries described by the ldap.queries settings."""
        queries = self.queries
        attributes = sorted({
            queries['user_unique_attribute'],
            queries.get('user_match_attribute') or queries['user_unique_attribute'],
            queries['user_name_attribute'],
            queries['user_email_attribute'],
        })
        return self.search(relative_dn(queries.get('user_dn'), queries['base_dn']),
                           queries['user_filter'], attributes)

    def search_groups(self) -> List[Dict[str, Any]]:
        """Fetch the group entries described by the ldap.queries settings."""
        queries = self.queries
        attributes = sorted({queries['group_unique_attribute'], queries['group_member_attribute']})
        return self.search(relative_dn(queries.get('group_dn'), queries['base_dn']),
                           queries['group_filter'], attributes)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
