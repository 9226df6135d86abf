"""
Configuration loading and management for GitLab LDAP Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

ACCESS_LEVELS = {
    10: 'Guest',
    20: 'Reporter',
    30: 'Developer',
    40: 'Maintainer',
    50: 'Owner',
}

MEMBER_REFERENCE_BY_ATTRIBUTE = {
    'memberuid': 'login',
    'member': 'dn',
    'uniquemember': 'dn',
}

MAX_API_COOLDOWN_MS = 5000


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def token_env_var(instance_name: str) -> str:
    """Name of the environment variable overriding an instance's API token."""
    return re.sub(r'[^A-Z0-9]+', '_', instance_name.upper()).strip('_') + '_TOKEN'


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    REQUIRED_QUERY_FIELDS = [
        'base_dn', 'user_filter', 'user_unique_attribute', 'user_name_attribute',
        'user_email_attribute', 'group_filter', 'group_unique_attribute', 'group_member_attribute',
    ]

    LIST_SYNC_FIELDS = [
        'user_names_to_ignore', 'group_names_to_ignore',
        'group_names_of_administrators', 'group_names_of_external',
    ]

    OPTIONAL_SECTIONS = ['sync', 'logging', 'error_handling', 'notifications']

    BOOLEAN_SYNC_FIELDS = {
        'create_empty_groups': False,
        'delete_extra_groups': False,
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except OSError as e:
            raise ConfigurationError(f"Configuration file not readable: {self.config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if self.config is None:
            raise ConfigurationError(f"Configuration file is empty: {self.config_path}")
        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        instances = self.config.get('instances')
        if not isinstance(instances, list):
            return
        for i, instance in enumerate(instances):
            if not isinstance(instance, dict):
                continue
            env_var = token_env_var(str(instance.get('name', f'instance_{i}')))
            env_value = os.getenv(env_var)
            if env_value:
                auth = instance.setdefault('auth', {})
                if isinstance(auth, dict):
                    auth['token'] = env_value
                    logger.debug(f"Applied environment override {env_var}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate configuration, collecting every error before failing."""
        errors = []
        self._validate_optional_sections(errors)
        self._validate_ldap(errors)
        self._validate_sync(errors)
        self._validate_instances(errors)

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_optional_sections(self, errors: List[str]):
        for section in self.OPTIONAL_SECTIONS:
            # an empty YAML section loads as None
            if self.config.get(section) is None:
                self.config[section] = {}
            elif not isinstance(self.config[section], dict):
                errors.append(f"Section {section} must be a mapping")

    def _validate_ldap(self, errors: List[str]):
        ldap_config = self.config.get('ldap')
        if not isinstance(ldap_config, dict):
            errors.append("Missing required section: ldap")
            return

        if not ldap_config.get('server_url'):
            errors.append("Missing required LDAP field: server_url")
        if ldap_config.get('bind_dn') and not ldap_config.get('bind_password'):
            errors.append("Missing LDAP bind_password for bind_dn (or LDAP_BIND_PASSWORD)")

        queries = ldap_config.get('queries')
        if not isinstance(queries, dict):
            errors.append("Missing required section: ldap.queries")
            return

        for field in self.REQUIRED_QUERY_FIELDS:
            if not isinstance(queries.get(field), str) or not queries[field].strip():
                errors.append(f"Missing required LDAP query field: {field}")

        reference = queries.get('group_member_reference')
        if reference is not None:
            if reference not in ('login', 'dn'):
                errors.append(f"Invalid ldap.queries.group_member_reference '{reference}' (expected login or dn)")
        elif isinstance(queries.get('group_member_attribute'), str):
            if queries['group_member_attribute'].lower() not in MEMBER_REFERENCE_BY_ATTRIBUTE:
                errors.append(f"Cannot infer how group member attribute '{queries['group_member_attribute']}' "
                              f"refers to users, set ldap.queries.group_member_reference")

        base_dn = queries.get('base_dn')
        for field in ('user_dn', 'group_dn'):
            value = queries.get(field)
            if isinstance(value, str) and isinstance(base_dn, str) and base_dn and \
                    value.strip().lower().endswith(base_dn.strip().lower()):
                logger.warning(f"ldap.queries.{field} should be relative to base_dn, "
                               f"but '{value}' ends with '{base_dn}'")

    def _validate_sync(self, errors: List[str]):
        sync_config = self.config.get('sync', {})
        if not isinstance(sync_config, dict):
            return

        for field in self.LIST_SYNC_FIELDS:
            value = sync_config.get(field)
            if value is None:
                continue
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                errors.append(f"sync.{field} must be a list of names")

        for field in self.BOOLEAN_SYNC_FIELDS:
            value = sync_config.get(field)
            if value is not None and not isinstance(value, bool):
                errors.append(f"sync.{field} must be true or false")

        level = sync_config.get('new_member_access_level')
        if level is not None and level not in ACCESS_LEVELS:
            errors.append(f"Invalid sync.new_member_access_level {level} "
                          f"(expected one of {', '.join(str(k) for k in ACCESS_LEVELS)})")

        cooldown = sync_config.get('api_cooldown_ms')
        if cooldown is not None and (not isinstance(cooldown, int) or isinstance(cooldown, bool)
                                     or not 0 <= cooldown <= MAX_API_COOLDOWN_MS):
            errors.append(f"Invalid sync.api_cooldown_ms {cooldown} (expected 0 to {MAX_API_COOLDOWN_MS})")

    def _validate_instances(self, errors: List[str]):
        instances = self.config.get('instances')
        if not isinstance(instances, list) or not instances:
            errors.append("At least one platform instance must be configured")
            return

        names = set()
        for i, instance in enumerate(instances):
            prefix = f"instances[{i}]"
            if not isinstance(instance, dict):
                errors.append(f"{prefix} must be a mapping")
                continue

            for field in ('name', 'base_url'):
                if not instance.get(field):
                    errors.append(f"Missing required field {prefix}.{field}")

            name = instance.get('name')
            if name:
                if str(name).lower() in names:
                    errors.append(f"Duplicate instance name '{name}'")
                names.add(str(name).lower())

            base_url = instance.get('base_url')
            if base_url and not str(base_url).startswith(('http://', 'https://')):
                errors.append(f"{prefix}.base_url must start with http:// or https://")

            auth = instance.get('auth')
            if not isinstance(auth, dict) or not auth.get('token'):
                errors.append(f"Missing API token for {prefix} (auth.token or {token_env_var(str(name or i))})")
            elif auth.get('method', 'token') not in ('token', 'bearer'):
                errors.append(f"Invalid auth method '{auth.get('method')}' for {prefix} (expected token or bearer)")

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_config = self.config['ldap']
        for key, value in {
            'bind_dn': None,
            'bind_password': None,
            'start_tls': False,
            'verify_ssl': True,
            'ca_cert_file': None,
            'connection_timeout': 10,
            'receive_timeout': 10,
            'page_size': 500,
        }.items():
            ldap_config.setdefault(key, value)

        if not ldap_config.get('bind_dn'):
            logger.warning("No ldap.bind_dn configured, the directory will be queried anonymously")

        queries = ldap_config['queries']
        queries.setdefault('user_dn', '')
        queries.setdefault('group_dn', '')
        if not queries.get('user_match_attribute'):
            logger.warning(f"ldap.queries.user_match_attribute not set, "
                           f"defaulting to user_unique_attribute '{queries['user_unique_attribute']}'")
            queries['user_match_attribute'] = queries['user_unique_attribute']
        if not queries.get('group_member_reference'):
            queries['group_member_reference'] = MEMBER_REFERENCE_BY_ATTRIBUTE[queries['group_member_attribute'].lower()]

        sync_config = self.config.setdefault('sync', {})
        for field in self.LIST_SYNC_FIELDS:
            if sync_config.get(field) is None:
                sync_config[field] = []
        for field, default in self.BOOLEAN_SYNC_FIELDS.items():
            if sync_config.get(field) is None:
                logger.warning(f"sync.{field} not set, defaulting to {str(default).lower()}")
                sync_config[field] = default
        if sync_config.get('new_member_access_level') is None:
            logger.warning("sync.new_member_access_level not set, defaulting to 30 (Developer)")
            sync_config['new_member_access_level'] = 30
        sync_config.setdefault('api_cooldown_ms', 100)

        logging_config = self.config.setdefault('logging', {})
        for key, value in {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO',
        }.items():
            logging_config.setdefault(key, value)

        error_config = self.config.setdefault('error_handling', {})
        error_config.setdefault('max_retries', 3)
        error_config.setdefault('retry_wait_seconds', 5)

        notification_config = self.config.setdefault('notifications', {})
        for key, value in {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True,
        }.items():
            notification_config.setdefault(key, value)

        for instance in self.config['instances']:
            instance.setdefault('module', 'gitlab')
            instance.setdefault('ldap_server_name', 'ldapmain')
            instance.setdefault('verify_ssl', True)
            instance.setdefault('page_size', 100)
            instance['auth'].setdefault('method', 'token')


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
