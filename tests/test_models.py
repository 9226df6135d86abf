#!/usr/bin/env python3
"""
Unit tests for the typed records.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gitlab_ldap_sync.errors import RecordValidationError
from gitlab_ldap_sync.models import (
    ClassificationResult, PlatformGroup, PlatformMembership, PlatformUser, SimulatedId, SyncOptions,
    UserState, canonical, is_simulated
)
from gitlab_ldap_sync.protected import ProtectedEntitySet


class TestPlatformUser(unittest.TestCase):
    """Test cases for PlatformUser.from_record."""

    def test_states(self):
        cases = {
            'active': UserState.ACTIVE,
            'blocked': UserState.BLOCKED,
            'ldap_blocked': UserState.LDAP_BLOCKED,
            'deactivated': UserState.ACTIVE,
        }
        for raw_state, expected in cases.items():
            user = PlatformUser.from_record({'id': 3, 'username': 'alice', 'state': raw_state})
            self.assertEqual(user.state, expected, raw_state)
            self.assertEqual(user.raw_state, raw_state)

    def test_missing_state_is_active(self):
        self.assertEqual(PlatformUser.from_record({'id': 3, 'username': 'alice'}).state, UserState.ACTIVE)

    def test_bot(self):
        user = PlatformUser.from_record({'id': 9, 'username': 'project_1_bot', 'state': 'active', 'bot': True})
        self.assertEqual(user.state, UserState.BOT)

    def test_string_id_accepted(self):
        self.assertEqual(PlatformUser.from_record({'id': '7', 'username': 'bob'}).id, 7)

    def test_invalid_records(self):
        for record in ({'username': 'x'}, {'id': None, 'username': 'x'}, {'id': -1, 'username': 'x'},
                       {'id': 'x', 'username': 'x'}, {'id': 1}, {'id': 1, 'username': ''}, ['id', 1]):
            with self.assertRaises(RecordValidationError, msg=repr(record)):
                PlatformUser.from_record(record)


class TestPlatformGroupAndMembership(unittest.TestCase):
    """Test cases for PlatformGroup and PlatformMembership."""

    def test_group(self):
        group = PlatformGroup.from_record({'id': 4, 'name': 'Ops', 'path': 'ops', 'visibility': 'private'})
        self.assertEqual((group.id, group.name, group.path, group.key), (4, 'Ops', 'ops', 'ops'))

    def test_group_without_path(self):
        with self.assertRaises(RecordValidationError):
            PlatformGroup.from_record({'id': 4, 'name': 'Ops'})

    def test_membership(self):
        member = PlatformMembership.from_record(4, {'id': 2, 'username': 'Alice', 'access_level': 40})
        self.assertEqual((member.group_id, member.user_id, member.access_level, member.key), (4, 2, 40, 'alice'))

    def test_membership_access_level(self):
        self.assertEqual(PlatformMembership.from_record(4, {'id': 2, 'username': 'alice'}).access_level, 0)
        self.assertEqual(PlatformMembership.from_record(4, {'id': 2, 'username': 'a', 'access_level': '30'}).access_level, 30)
        for level in ('owner', [40], {'level': 40}):
            with self.assertRaises(RecordValidationError, msg=repr(level)):
                PlatformMembership.from_record(4, {'id': 2, 'username': 'alice', 'access_level': level})


class TestSimulatedId(unittest.TestCase):
    """Test cases for simulated identifiers."""

    def test_simulated(self):
        simulated = SimulatedId('ops')
        self.assertTrue(is_simulated(simulated))
        self.assertFalse(is_simulated(4))
        self.assertEqual(simulated, SimulatedId('ops'))
        self.assertEqual(str(simulated), 'dry:ops')
        self.assertEqual(len({simulated, SimulatedId('ops')}), 1)

    def test_canonical(self):
        self.assertEqual(canonical('  Alice '), 'alice')


class TestClassificationResult(unittest.TestCase):
    """Test cases for ClassificationResult."""

    def test_sort_by_name(self):
        result = ClassificationResult(found={3: 'zoe', 1: 'Bob', 2: 'alice'}).sort()
        self.assertEqual(list(result.found.items()), [(2, 'alice'), (1, 'Bob'), (3, 'zoe')])


class TestSyncOptions(unittest.TestCase):
    """Test cases for SyncOptions."""

    def test_from_config(self):
        config = {
            'sync': {
                'user_names_to_ignore': ['SVC-Backup', ''],
                'group_names_to_ignore': ['Sandbox'],
                'create_empty_groups': True,
                'delete_extra_groups': False,
                'new_member_access_level': 20,
                'api_cooldown_ms': 250,
            }
        }
        instance = {'name': 'primary', 'ldap_server_name': 'corp'}

        options = SyncOptions.from_config(config, instance, dry_run=True, continue_on_fail=True)

        self.assertEqual(options.user_names_to_ignore, frozenset({'svc-backup'}))
        self.assertTrue(options.ignores_user('svc-BACKUP'))
        self.assertTrue(options.ignores_group('sandbox'))
        self.assertFalse(options.ignores_group('Ops'))
        self.assertTrue(options.create_empty_groups)
        self.assertFalse(options.delete_extra_groups)
        self.assertEqual(options.new_member_access_level, 20)
        self.assertEqual(options.provider, 'corp')
        self.assertEqual(options.api_cooldown_seconds, 0.25)
        self.assertTrue(options.dry_run)
        self.assertTrue(options.continue_on_fail)

    def test_defaults(self):
        options = SyncOptions.from_config({}, {'name': 'primary'})

        self.assertEqual(options.provider, 'ldapmain')
        self.assertEqual(options.new_member_access_level, 30)
        self.assertEqual(options.api_cooldown_seconds, 0.1)
        self.assertFalse(options.dry_run)


class TestProtectedEntitySet(unittest.TestCase):
    """Test cases for ProtectedEntitySet."""

    def test_defaults(self):
        protected = ProtectedEntitySet()
        for name in ('root', 'Ghost', 'support-bot', 'alert-bot'):
            self.assertTrue(protected.is_protected_user(name), name)
        self.assertTrue(protected.is_protected_group('users'))
        self.assertTrue(protected.is_protected_group('Root'))
        self.assertFalse(protected.is_protected_user('alice'))
        self.assertFalse(protected.is_protected_group('Ops'))

    def test_custom(self):
        protected = ProtectedEntitySet(user_names=['admin'], group_names=[])
        self.assertTrue(protected.is_protected_user('ADMIN'))
        self.assertFalse(protected.is_protected_user('root'))
        self.assertFalse(protected.is_protected_group('Users'))


if __name__ == '__main__':
    unittest.main()
