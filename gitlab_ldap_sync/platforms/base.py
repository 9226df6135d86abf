"""
Base platform API interface and common functionality.

This module defines the abstract base class that every platform integration implements,
along with the shared HTTP client, TLS and token handling, and the page iterator used
by all listing calls.
"""

import json
import ssl
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Iterator, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from gitlab_ldap_sync.retry import RetryableError, MaxRetriesExceeded, retry_call, create_retry_callback

logger = logging.getLogger(__name__)


class PlatformAPIError(Exception):
    """Base exception for platform API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PlatformAuthenticationError(PlatformAPIError):
    """Raised when authentication to the platform API fails."""
    pass


class PlatformTransientError(PlatformAPIError, RetryableError):
    """Raised for failures worth retrying on read-only calls (connection errors, 429, 5xx)."""
    pass


class EmailAlreadyTakenError(PlatformAPIError):
    """Raised when a user cannot be created because the e-mail address is already registered."""
    pass


class PlatformAPIBase(ABC):
    """
    Abstract base class for platform integrations.

    Subclasses map the platform operations used by the reconcilers onto the platform's REST
    API. Listing operations return iterators over raw JSON records; mutating operations
    return the raw JSON response.
    """

    DEFAULT_TIMEOUT = 30

    def __init__(self, config: Dict[str, Any], retry_config: Optional[Dict[str, Any]] = None):
        """
        Initialize platform API client.

        Args:
            config: Instance configuration dictionary
            retry_config: error_handling section (max_retries, retry_wait_seconds)
        """
        self.config = config
        self.name = config['name']
        self.base_url = config['base_url']
        self.auth_config = config.get('auth', {})
        self.verify_ssl = config.get('verify_ssl', True)
        self.page_size = int(config.get('page_size', 100))
        self.timeout = config.get('timeout', self.DEFAULT_TIMEOUT)

        retry_config = retry_config or {}
        self.max_attempts = int(retry_config.get('max_retries', 3)) + 1
        self.retry_wait = float(retry_config.get('retry_wait_seconds', 5))

        # Parse base URL
        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}
        self.authenticated = False

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        ca_cert_file = self.config.get('ca_cert_file')
        if ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=ca_cert_file)
                logger.info(f"Loaded CA certificates for {self.name}: {ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise PlatformAPIError(f"CA certificate loading failed for {self.name}: {e}")

        client_cert_file = self.config.get('client_cert_file')
        if client_cert_file:
            try:
                self.ssl_context.load_cert_chain(client_cert_file, self.config.get('client_key_file'))
                logger.info(f"Loaded client certificate for {self.name}: {client_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise PlatformAPIError(f"Client certificate loading failed for {self.name}: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = self.auth_config.get('method', 'token').lower()
        token = self.auth_config.get('token')

        if not token:
            logger.error(f"Token auth configured but missing token for {self.name}")
            return

        if auth_method == 'token':
            self.auth_headers['PRIVATE-TOKEN'] = token
            logger.debug(f"Configured private token authentication for {self.name}")
        elif auth_method == 'bearer':
            self.auth_headers['Authorization'] = f"Bearer {token}"
            logger.debug(f"Configured Bearer token authentication for {self.name}")
        else:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, body: Optional[Dict] = None,
                params: Optional[Dict] = None) -> Any:
        """
        Make HTTP request to the platform API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API endpoint path (relative to base_url)
            body: Request body data, sent as JSON
            params: Query string parameters

        Returns:
            Parsed JSON response ({} for an empty body)

        Raises:
            PlatformAuthenticationError: On HTTP 401
            PlatformTransientError: On connection errors, HTTP 429 and 5xx
            PlatformAPIError: On any other failure
        """
        full_path = self.base_path + '/' + path.lstrip('/')
        if params:
            full_path += '?' + urlencode(params)

        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = 'application/json'
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError, HTTPException) as e:
            self.close_connection()
            raise PlatformTransientError(f"Connection error to {self.name}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        try:
            payload = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            if response.status < 400:
                raise PlatformAPIError(f"Invalid JSON response from {self.name}: {e}", response.status)
            payload = response_data

        if response.status >= 400:
            self._raise_for_status(method, path, response.status, response.reason, payload)

        return payload

    def _raise_for_status(self, method: str, path: str, status: int, reason: str, payload: Any):
        """Turn an HTTP error response into the matching exception; subclasses may refine."""
        message = f"{method} {path}: HTTP {status} {reason}"
        if payload:
            message += f" {payload}"
        if status == 401:
            raise PlatformAuthenticationError(f"Authentication failed for {self.name}: {message}", status, payload)
        if status == 429 or 500 <= status < 600:
            raise PlatformTransientError(message, status, payload)
        raise PlatformAPIError(message, status, payload)

    def get(self, path: str, params: Optional[Dict] = None) -> Any:
        """
        Read-only request, retried on transient failures.

        Raises:
            PlatformTransientError: If every attempt fails transiently
            PlatformAPIError: If the request fails otherwise
        """
        try:
            return retry_call(
                self.request, ('GET', path), {'params': params},
                max_attempts=self.max_attempts,
                delay=self.retry_wait,
                exceptions=(PlatformTransientError,),
                on_retry=create_retry_callback(f"GET {path} on {self.name}")
            )
        except MaxRetriesExceeded as e:
            logger.error(f"GET {path} on {self.name} failed after {e.attempts} attempts")
            raise e.last_exception

    def iter_pages(self, path: str, params: Optional[Dict] = None) -> Iterator[List[Any]]:
        """
        Yield listing pages until the platform returns an empty one.

        Raises:
            PlatformAPIError: If a page is not a JSON list
        """
        page = 1
        while True:
            query = dict(params or {})
            query.update({'page': page, 'per_page': self.page_size})
            records = self.get(path, query)
            if not isinstance(records, list):
                raise PlatformAPIError(f"Unexpected listing response from {self.name} for {path}")
            if not records:
                return
            logger.debug(f"Fetched page {page} of {path} ({len(records)} record(s))")
            yield records
            page += 1

    def paginate(self, path: str, params: Optional[Dict] = None) -> Iterator[Any]:
        """Yield every record of a paginated listing."""
        for records in self.iter_pages(path, params):
            for record in records:
                yield record

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    @abstractmethod
    def authenticate(self) -> bool:
        """
        Verify the configured credentials against the platform.

        Returns:
            True if authentication successful

        Raises:
            PlatformAuthenticationError: If the platform rejects the credentials
        """
        pass

    @abstractmethod
    def list_users(self) -> Iterator[Dict[str, Any]]:
        """Iterate over every platform user record."""
        pass

    @abstractmethod
    def create_user(self, email: str, password: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a platform user.

        Args:
            email: E-mail address of the new user
            password: Initial password
            attributes: Remaining user attributes

        Returns:
            Created user record
        """
        pass

    @abstractmethod
    def update_user(self, user_id: int, attributes: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def block_user(self, user_id: int) -> Any:
        pass

    @abstractmethod
    def unblock_user(self, user_id: int) -> Any:
        pass

    @abstractmethod
    def list_groups(self) -> Iterator[Dict[str, Any]]:
        """Iterate over every platform group record visible to the token."""
        pass

    @abstractmethod
    def create_group(self, name: str, path: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update_group(self, group_id: int, attributes: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def delete_group(self, group_id: int) -> Any:
        pass

    @abstractmethod
    def group_project_count(self, group_id: int) -> int:
        pass

    @abstractmethod
    def group_subgroup_count(self, group_id: int) -> int:
        pass

    @abstractmethod
    def list_group_members(self, group_id: int) -> Iterator[Dict[str, Any]]:
        """Iterate over the direct members of a platform group."""
        pass

    @abstractmethod
    def add_group_member(self, group_id: int, user_id: int, access_level: int) -> Dict[str, Any]:
        pass

    @abstractmethod
    def remove_group_member(self, group_id: int, user_id: int) -> Any:
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
