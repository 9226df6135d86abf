#!/usr/bin/env python3
"""
Unit tests for LDAP client module.

ldap3's Server and Connection are mocked; the tests cover bind retries, paged searches
and entry normalization.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import ldap3
from ldap3 import MOCK_SYNC
from ldap3.core.exceptions import LDAPBindError, LDAPSocketOpenError, LDAPException

from gitlab_ldap_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError, relative_dn


class TestLDAPClient(unittest.TestCase):
    """Test cases for LDAPClient class."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': 'cn=gitlab-sync,dc=example,dc=com',
            'bind_password': 'password',
            'page_size': 100,
            'queries': {
                'base_dn': 'dc=example,dc=com',
                'user_dn': 'ou=People',
                'user_filter': '(objectClass=inetOrgPerson)',
                'user_unique_attribute': 'uid',
                'user_match_attribute': 'uid',
                'user_name_attribute': 'cn',
                'user_email_attribute': 'mail',
                'group_dn': '',
                'group_filter': '(objectClass=posixGroup)',
                'group_unique_attribute': 'cn',
                'group_member_attribute': 'memberUid',
            }
        }
        self.retry_config = {'max_retries': 2, 'retry_wait_seconds': 0}

        server_patcher = patch('gitlab_ldap_sync.ldap_client.Server')
        connection_patcher = patch('gitlab_ldap_sync.ldap_client.Connection')
        self.mock_server = server_patcher.start()
        self.mock_connection_class = connection_patcher.start()
        self.addCleanup(server_patcher.stop)
        self.addCleanup(connection_patcher.stop)

        self.conn = Mock()
        self.conn.bind.return_value = True
        self.mock_connection_class.return_value = self.conn

    def _connected_client(self):
        client = LDAPClient(self.config, self.retry_config)
        client.connect()
        return client

    def test_connect_success(self):
        """Test successful LDAP connection and bind."""
        client = LDAPClient(self.config, self.retry_config)

        self.assertTrue(client.connect())

        self.mock_server.assert_called_once()
        self.assertFalse(self.mock_server.call_args.kwargs['use_ssl'])
        self.assertIsNone(self.mock_server.call_args.kwargs['tls'])
        kwargs = self.mock_connection_class.call_args.kwargs
        self.assertEqual(kwargs['user'], 'cn=gitlab-sync,dc=example,dc=com')
        self.assertEqual(kwargs['password'], 'password')

    def test_ldaps_uses_tls(self):
        self.config['server_url'] = 'ldaps://ldap.example.com:636'
        client = LDAPClient(self.config, self.retry_config)

        client.connect()

        self.assertTrue(self.mock_server.call_args.kwargs['use_ssl'])
        self.assertIsNotNone(self.mock_server.call_args.kwargs['tls'])

    def test_bind_refused_not_retried(self):
        """Test that rejected credentials fail immediately."""
        self.conn.bind.return_value = False
        client = LDAPClient(self.config, self.retry_config)

        with self.assertRaises(LDAPConnectionError):
            client.connect()
        self.assertEqual(self.mock_connection_class.call_count, 1)

    def test_bind_error_not_retried(self):
        self.conn.bind.side_effect = LDAPBindError('invalidCredentials')
        client = LDAPClient(self.config, self.retry_config)

        with self.assertRaises(LDAPConnectionError):
            client.connect()
        self.assertEqual(self.mock_connection_class.call_count, 1)

    def test_open_failure_retried(self):
        """Test that socket failures are retried up to max_retries."""
        self.conn.open.side_effect = LDAPSocketOpenError('unreachable')
        client = LDAPClient(self.config, self.retry_config)

        with self.assertRaises(LDAPConnectionError) as context:
            client.connect()
        self.assertIn('3 attempts', str(context.exception))
        self.assertEqual(self.mock_connection_class.call_count, 3)

    def test_open_failure_then_success(self):
        self.conn.open.side_effect = [LDAPSocketOpenError('unreachable'), None]
        client = LDAPClient(self.config, self.retry_config)

        self.assertTrue(client.connect())
        self.assertEqual(self.mock_connection_class.call_count, 2)

    def test_connect_override_retries(self):
        self.conn.open.side_effect = LDAPSocketOpenError('unreachable')
        client = LDAPClient(self.config, self.retry_config)

        with self.assertRaises(LDAPConnectionError):
            client.connect(max_retries=0)
        self.assertEqual(self.mock_connection_class.call_count, 1)

    def test_search_requires_connection(self):
        client = LDAPClient(self.config, self.retry_config)

        with self.assertRaises(LDAPQueryError):
            client.search('dc=example,dc=com', '(objectClass=*)', ['cn'])

    def test_search_normalizes_entries(self):
        """Test that entries get lowercased attribute names and string list values."""
        self.conn.extend.standard.paged_search.return_value = iter([
            {'type': 'searchResEntry', 'dn': 'uid=alice,ou=People,dc=example,dc=com',
             'attributes': {'uid': ['alice'], 'CN': 'Alice Liddell', 'mail': [b'alice@example.com'],
                            'uidNumber': 1001}},
            {'type': 'searchResRef', 'uri': ['ldap://other.example.com/']},
        ])
        client = self._connected_client()

        entries = client.search_users()

        self.assertEqual(entries, [{
            'dn': 'uid=alice,ou=People,dc=example,dc=com',
            'attributes': {'uid': ['alice'], 'cn': ['Alice Liddell'], 'mail': ['alice@example.com'],
                           'uidnumber': ['1001']},
        }])
        kwargs = self.conn.extend.standard.paged_search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'ou=People,dc=example,dc=com')
        self.assertEqual(kwargs['search_filter'], '(objectClass=inetOrgPerson)')
        self.assertEqual(kwargs['attributes'], ['cn', 'mail', 'uid'])
        self.assertEqual(kwargs['paged_size'], 100)
        self.assertTrue(kwargs['generator'])

    def test_search_groups(self):
        self.conn.extend.standard.paged_search.return_value = iter([])
        client = self._connected_client()

        self.assertEqual(client.search_groups(), [])
        kwargs = self.conn.extend.standard.paged_search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'dc=example,dc=com')
        self.assertEqual(kwargs['attributes'], ['cn', 'memberUid'])

    def test_search_failure(self):
        self.conn.extend.standard.paged_search.side_effect = LDAPException('sizeLimitExceeded')
        client = self._connected_client()

        with self.assertRaises(LDAPQueryError):
            client.search_users()

    def test_disconnect(self):
        client = self._connected_client()

        client.disconnect()

        self.conn.unbind.assert_called_once()
        self.assertIsNone(client.connection)
        client.disconnect()
        self.conn.unbind.assert_called_once()

    def test_context_manager(self):
        with self._connected_client():
            pass
        self.conn.unbind.assert_called_once()


class TestLDAPClientMockServer(unittest.TestCase):
    """Connect against ldap3's in-memory MOCK_SYNC strategy instead of stubs."""

    BIND_DN = 'cn=gitlab-sync,dc=example,dc=com'

    def setUp(self):
        self.config = {
            'server_url': 'ldap://ldap.example.com:389',
            'bind_dn': self.BIND_DN,
            'bind_password': 'password',
            'queries': {'base_dn': 'dc=example,dc=com'},
        }

        def mock_connection(server, **kwargs):
            connection = ldap3.Connection(server, client_strategy=MOCK_SYNC, **kwargs)
            connection.strategy.add_entry(self.BIND_DN, {'userPassword': 'password', 'objectClass': 'person'})
            return connection

        patcher = patch('gitlab_ldap_sync.ldap_client.Connection', side_effect=mock_connection)
        self.mock_connection_class = patcher.start()
        self.addCleanup(patcher.stop)

    def test_connect_binds(self):
        client = LDAPClient(self.config, {'max_retries': 2, 'retry_wait_seconds': 0})

        self.assertTrue(client.connect())
        self.assertTrue(client.connection.bound)
        self.assertEqual(self.mock_connection_class.call_count, 1)
        client.disconnect()

    def test_wrong_password_refused(self):
        self.config['bind_password'] = 'wrong'
        client = LDAPClient(self.config, {'max_retries': 2, 'retry_wait_seconds': 0})

        with self.assertRaises(LDAPConnectionError):
            client.connect()
        self.assertEqual(self.mock_connection_class.call_count, 1)


class TestRelativeDN(unittest.TestCase):
    """Test cases for relative_dn."""

    def test_join(self):
        self.assertEqual(relative_dn('ou=People', 'dc=example,dc=com'), 'ou=People,dc=example,dc=com')
        self.assertEqual(relative_dn('ou=People,', 'dc=example,dc=com'), 'ou=People,dc=example,dc=com')

    def test_empty(self):
        self.assertEqual(relative_dn('', 'dc=example,dc=com'), 'dc=example,dc=com')
        self.assertEqual(relative_dn(None, 'dc=example,dc=com'), 'dc=example,dc=com')


if __name__ == '__main__':
    unittest.main()
