#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading, validation, member reference inference, defaults and environment
variable overrides.
"""

import copy
import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gitlab_ldap_sync.config import ConfigLoader, ConfigurationError, load_config, token_env_var


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'ldap': {
                'server_url': 'ldaps://ldap.example.com:636',
                'bind_dn': 'cn=gitlab-sync,ou=Services,dc=example,dc=com',
                'bind_password': 'password',
                'queries': {
                    'base_dn': 'dc=example,dc=com',
                    'user_dn': 'ou=People',
                    'user_filter': '(objectClass=inetOrgPerson)',
                    'user_unique_attribute': 'uid',
                    'user_match_attribute': 'uid',
                    'user_name_attribute': 'cn',
                    'user_email_attribute': 'mail',
                    'group_dn': 'ou=Groups',
                    'group_filter': '(objectClass=posixGroup)',
                    'group_unique_attribute': 'cn',
                    'group_member_attribute': 'memberUid',
                }
            },
            'sync': {
                'user_names_to_ignore': ['svc-backup'],
                'group_names_to_ignore': [],
                'create_empty_groups': False,
                'delete_extra_groups': True,
                'new_member_access_level': 30,
                'api_cooldown_ms': 100,
            },
            'instances': [
                {
                    'name': 'primary',
                    'base_url': 'https://gitlab.example.com',
                    'auth': {'method': 'token', 'token': 'glpat-secret'},
                }
            ],
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7
            },
            'notifications': {
                'enable_email': False
            }
        }
        self.env = patch.dict(os.environ, {}, clear=False)
        self.env.start()
        for name in ('LDAP_BIND_PASSWORD', 'SMTP_PASSWORD', 'PRIMARY_TOKEN', 'CONFIG_PATH'):
            os.environ.pop(name, None)

    def tearDown(self):
        self.env.stop()

    def _write(self, config):
        handle = tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False)
        with handle:
            if isinstance(config, str):
                handle.write(config)
            else:
                yaml.dump(config, handle)
        self.addCleanup(os.unlink, handle.name)
        return handle.name

    def _load(self, config):
        return ConfigLoader(self._write(config)).load()

    def test_load_valid_config(self):
        """Test loading a valid configuration file."""
        config = self._load(self.valid_config)

        self.assertEqual(config['ldap']['server_url'], 'ldaps://ldap.example.com:636')
        self.assertEqual(config['instances'][0]['name'], 'primary')
        self.assertTrue(config['sync']['delete_extra_groups'])

    def test_defaults_applied(self):
        """Test default values for optional fields."""
        config = self._load(self.valid_config)

        self.assertEqual(config['ldap']['queries']['group_member_reference'], 'login')
        self.assertEqual(config['ldap']['page_size'], 500)
        self.assertFalse(config['ldap']['start_tls'])
        self.assertEqual(config['sync']['group_names_of_administrators'], [])
        self.assertEqual(config['error_handling'], {'max_retries': 3, 'retry_wait_seconds': 5})
        self.assertTrue(config['logging']['console_output'])
        self.assertTrue(config['notifications']['email_on_failure'])

        instance = config['instances'][0]
        self.assertEqual(instance['module'], 'gitlab')
        self.assertEqual(instance['ldap_server_name'], 'ldapmain')
        self.assertEqual(instance['page_size'], 100)
        self.assertTrue(instance['verify_ssl'])

    def test_missing_optional_sync_settings_warn(self):
        """Test defaulting warnings for options the operator should set."""
        config = copy.deepcopy(self.valid_config)
        del config['sync']
        del config['ldap']['queries']['user_match_attribute']

        with self.assertLogs('gitlab_ldap_sync.config', level='WARNING') as logs:
            loaded = self._load(config)

        output = '\n'.join(logs.output)
        self.assertIn('user_match_attribute', output)
        self.assertIn('create_empty_groups', output)
        self.assertIn('new_member_access_level', output)
        self.assertEqual(loaded['ldap']['queries']['user_match_attribute'], 'uid')
        self.assertFalse(loaded['sync']['delete_extra_groups'])
        self.assertEqual(loaded['sync']['new_member_access_level'], 30)
        self.assertEqual(loaded['sync']['api_cooldown_ms'], 100)

    def test_member_reference_inferred_from_attribute(self):
        """Test member reference inference for member and uniqueMember."""
        for attribute in ('member', 'uniqueMember'):
            config = copy.deepcopy(self.valid_config)
            config['ldap']['queries']['group_member_attribute'] = attribute
            self.assertEqual(self._load(config)['ldap']['queries']['group_member_reference'], 'dn')

    def test_unknown_member_attribute_requires_reference(self):
        """Test that an unknown member attribute needs an explicit reference."""
        config = copy.deepcopy(self.valid_config)
        config['ldap']['queries']['group_member_attribute'] = 'owner'

        with self.assertRaises(ConfigurationError) as context:
            self._load(config)
        self.assertIn('group_member_reference', str(context.exception))

        config['ldap']['queries']['group_member_reference'] = 'dn'
        self.assertEqual(self._load(config)['ldap']['queries']['group_member_reference'], 'dn')

    def test_invalid_member_reference(self):
        config = copy.deepcopy(self.valid_config)
        config['ldap']['queries']['group_member_reference'] = 'email'

        with self.assertRaises(ConfigurationError):
            self._load(config)

    def test_missing_config_file(self):
        """Test handling of missing configuration file."""
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(context.exception))

    def test_invalid_yaml(self):
        """Test handling of invalid YAML syntax."""
        with self.assertRaises(ConfigurationError) as context:
            self._load("ldap: [unclosed\n")
        self.assertIn('Invalid YAML', str(context.exception))

    def test_empty_file(self):
        with self.assertRaises(ConfigurationError) as context:
            self._load("")
        self.assertIn('empty', str(context.exception))

    def test_non_mapping_document(self):
        with self.assertRaises(ConfigurationError):
            self._load("- just\n- a list\n")

    def test_empty_optional_sections_defaulted(self):
        """Test that bare 'logging:' style sections get their defaults."""
        config = copy.deepcopy(self.valid_config)
        del config['logging']
        del config['notifications']
        text = yaml.dump(config) + "logging:\nerror_handling:\nnotifications:\n"

        loaded = self._load(text)

        self.assertEqual(loaded['logging']['log_dir'], 'logs')
        self.assertEqual(loaded['error_handling']['max_retries'], 3)
        self.assertFalse(loaded['notifications']['enable_email'])

    def test_empty_sync_section_defaulted(self):
        config = copy.deepcopy(self.valid_config)
        config['sync'] = None

        loaded = self._load(config)

        self.assertEqual(loaded['sync']['user_names_to_ignore'], [])
        self.assertEqual(loaded['sync']['new_member_access_level'], 30)

    def test_non_mapping_optional_section(self):
        config = copy.deepcopy(self.valid_config)
        config['logging'] = 'verbose'
        config['error_handling'] = [3, 5]

        with self.assertRaises(ConfigurationError) as context:
            self._load(config)

        message = str(context.exception)
        self.assertIn('Section logging must be a mapping', message)
        self.assertIn('Section error_handling must be a mapping', message)

    def test_validation_errors_collected(self):
        """Test that every validation error is reported at once."""
        config = copy.deepcopy(self.valid_config)
        del config['ldap']['server_url']
        del config['ldap']['queries']['user_filter']
        config['sync']['new_member_access_level'] = 35
        config['sync']['api_cooldown_ms'] = 10000
        config['sync']['create_empty_groups'] = 'yes'
        config['sync']['user_names_to_ignore'] = 'svc-backup'

        with self.assertRaises(ConfigurationError) as context:
            self._load(config)

        message = str(context.exception)
        self.assertIn('server_url', message)
        self.assertIn('user_filter', message)
        self.assertIn('new_member_access_level', message)
        self.assertIn('api_cooldown_ms', message)
        self.assertIn('create_empty_groups', message)
        self.assertIn('user_names_to_ignore', message)

    def test_missing_sections(self):
        with self.assertRaises(ConfigurationError) as context:
            self._load({'logging': {'level': 'INFO'}})

        message = str(context.exception)
        self.assertIn('ldap', message)
        self.assertIn('instance', message)

    def test_instance_validation(self):
        config = copy.deepcopy(self.valid_config)
        config['instances'].append({'name': 'PRIMARY', 'base_url': 'gitlab.example.com',
                                    'auth': {'method': 'basic', 'token': 'x'}})
        config['instances'].append({'name': 'secondary', 'base_url': 'https://git2.example.com'})

        with self.assertRaises(ConfigurationError) as context:
            self._load(config)

        message = str(context.exception)
        self.assertIn("Duplicate instance name 'PRIMARY'", message)
        self.assertIn('must start with http', message)
        self.assertIn("Invalid auth method 'basic'", message)
        self.assertIn('SECONDARY_TOKEN', message)

    def test_bind_password_required_with_bind_dn(self):
        config = copy.deepcopy(self.valid_config)
        del config['ldap']['bind_password']

        with self.assertRaises(ConfigurationError):
            self._load(config)

    def test_anonymous_bind_warns(self):
        config = copy.deepcopy(self.valid_config)
        del config['ldap']['bind_dn']
        del config['ldap']['bind_password']

        with self.assertLogs('gitlab_ldap_sync.config', level='WARNING') as logs:
            self._load(config)
        self.assertTrue(any('anonymously' in line for line in logs.output))

    def test_relative_dn_warning(self):
        config = copy.deepcopy(self.valid_config)
        config['ldap']['queries']['user_dn'] = 'ou=People,dc=example,dc=com'

        with self.assertLogs('gitlab_ldap_sync.config', level='WARNING') as logs:
            self._load(config)
        self.assertTrue(any('relative to base_dn' in line for line in logs.output))

    def test_environment_overrides(self):
        """Test environment variable overrides for secrets."""
        config = copy.deepcopy(self.valid_config)
        del config['ldap']['bind_password']
        del config['instances'][0]['auth']['token']

        with patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'env_ldap_pass', 'PRIMARY_TOKEN': 'env-token',
                                     'SMTP_PASSWORD': 'env_smtp_pass'}):
            loaded = self._load(config)

        self.assertEqual(loaded['ldap']['bind_password'], 'env_ldap_pass')
        self.assertEqual(loaded['instances'][0]['auth']['token'], 'env-token')
        self.assertEqual(loaded['notifications']['smtp_password'], 'env_smtp_pass')

    def test_config_path_from_environment(self):
        path = self._write(self.valid_config)

        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            config = load_config()

        self.assertEqual(config['instances'][0]['name'], 'primary')


class TestTokenEnvVar(unittest.TestCase):
    """Test cases for token_env_var."""

    def test_names(self):
        self.assertEqual(token_env_var('primary'), 'PRIMARY_TOKEN')
        self.assertEqual(token_env_var('gitlab-prod.eu'), 'GITLAB_PROD_EU_TOKEN')


if __name__ == '__main__':
    unittest.main()
