#!/usr/bin/env python3
"""
Unit tests for the data model and the local record stores.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import Mock

import yaml

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_auth_sync.models import DN_FIELD, DirectoryEntry, LocalGroup, LocalUser
from ldap_auth_sync.store import InMemoryRecordStore, StoreError, YamlRecordStore


class TestDirectoryEntry(unittest.TestCase):
    """Test cases for DirectoryEntry."""

    def test_case_insensitive_attributes(self):
        entry = DirectoryEntry('uid=jdoe,dc=example,dc=com', {'givenName': ['John']})
        self.assertEqual(entry.get('GIVENNAME'), ['John'])
        self.assertEqual(entry.first('givenname'), 'John')
        self.assertIn('GivenName', entry)

    def test_single_values_and_bytes(self):
        entry = DirectoryEntry('uid=jdoe', {'cn': 'John', 'photo': [b'abc'], 'uidNumber': 1000})
        self.assertEqual(entry.get('cn'), ['John'])
        self.assertEqual(entry.get('photo'), ['abc'])
        self.assertEqual(entry.get('uidnumber'), ['1000'])

    def test_missing_attribute(self):
        entry = DirectoryEntry('uid=jdoe')
        self.assertEqual(entry.get('mail'), [])
        self.assertEqual(entry.first('mail', 'none'), 'none')

    def test_immutable(self):
        entry = DirectoryEntry('uid=jdoe')
        with self.assertRaises(AttributeError):
            entry.dn = 'uid=other'

    def test_to_dict(self):
        entry = DirectoryEntry('uid=jdoe', {'CN': ['John']})
        self.assertEqual(entry.to_dict(), {'dn': 'uid=jdoe', 'cn': ['John']})


class TestLocalRecord(unittest.TestCase):

    def test_copy_is_independent(self):
        user = LocalUser('fe_users', {'uid': 3, 'username': 'jdoe'}, {'city': 'Paris'})
        user.source = 'LDAP'
        clone = user.copy()
        clone['username'] = 'other'
        clone.extra_data['city'] = 'Lyon'

        self.assertEqual(user.username, 'jdoe')
        self.assertEqual(user.extra_data['city'], 'Paris')
        self.assertEqual(clone.source, 'LDAP')
        self.assertIsInstance(clone, LocalUser)

    def test_flags(self):
        group = LocalGroup('fe_groups', {'uid': '7', 'deleted': '1', DN_FIELD: 'cn=staff'})
        self.assertEqual(group.uid, 7)
        self.assertTrue(group.deleted)
        self.assertEqual(group.dn, 'cn=staff')
        self.assertEqual(LocalGroup('fe_groups').uid, 0)


class TestInMemoryRecordStore(unittest.TestCase):
    """Test cases for InMemoryRecordStore."""

    def setUp(self):
        self.store = InMemoryRecordStore(schemas={'fe_users': {'name': '', 'disable': 1}})

    def test_create_has_all_columns(self):
        user = self.store.create('fe_users')
        self.assertIsInstance(user, LocalUser)
        self.assertEqual(user.uid, 0)
        for column in ('username', 'password', 'usergroup', 'endtime', 'name', 'disable', DN_FIELD):
            self.assertIn(column, user)
        self.assertEqual(user['disable'], 0)
        self.assertIsInstance(self.store.create('fe_groups'), LocalGroup)

    def test_column_defaults(self):
        self.assertEqual(self.store.get_column_defaults('fe_users'), {'name': '', 'disable': 1})
        self.assertEqual(self.store.get_column_defaults('fe_groups'), {})

    def test_add_assigns_uid(self):
        first = self.store.add('fe_users', self.store.create('fe_users'))
        second = self.store.add('fe_users', self.store.create('fe_users'))
        self.assertEqual((first.uid, second.uid), (1, 2))

    def test_fetch_by_dn_prefers_dn_and_active(self):
        """DN matches come before username matches, active before deleted."""
        def add(username, dn, deleted=0):
            user = self.store.create('fe_users')
            user.fields.update({'username': username, DN_FIELD: dn, 'deleted': deleted})
            return self.store.add('fe_users', user)

        by_username = add('jdoe', '')
        deleted = add('john', 'uid=jdoe,dc=example', deleted=1)
        active = add('john.doe', 'uid=jdoe,dc=example')
        add('other', 'uid=other,dc=example')

        found = self.store.fetch('fe_users', 0, 0, 'jdoe', 'uid=jdoe,dc=example')
        self.assertEqual([user.uid for user in found], [active.uid, deleted.uid, by_username.uid])

    def test_fetch_filters_pid(self):
        user = self.store.create('fe_users')
        user.fields.update({'username': 'jdoe', 'pid': 5})
        self.store.add('fe_users', user)
        self.assertEqual(self.store.fetch('fe_users', 0, 4, 'jdoe'), [])
        self.assertEqual(len(self.store.fetch('fe_users', 0, 5, 'jdoe')), 1)

    def test_fetch_returns_copies(self):
        added = self.store.add('fe_users', self.store.create('fe_users'))
        fetched = self.store.fetch('fe_users', added.uid)[0]
        fetched['username'] = 'changed'
        self.assertEqual(self.store.fetch('fe_users', added.uid)[0]['username'], '')

    def test_update(self):
        added = self.store.add('fe_users', self.store.create('fe_users'))
        added['name'] = 'John'
        self.store.update('fe_users', added)
        self.assertEqual(self.store.fetch('fe_users', added.uid)[0]['name'], 'John')

    def test_update_missing_record(self):
        with self.assertRaises(StoreError):
            self.store.update('fe_users', LocalUser('fe_users', {'uid': 99}))

    def test_failed_update_keeps_previous_row(self):
        added = self.store.add('fe_users', self.store.create('fe_users'))
        self.store._persist = Mock(side_effect=StoreError('disk full'))

        added['name'] = 'John'
        with self.assertRaises(StoreError):
            self.store.update('fe_users', added)
        self.assertEqual(self.store.fetch('fe_users', added.uid)[0]['name'], '')

    def test_failed_add_leaves_no_row(self):
        self.store.add('fe_users', self.store.create('fe_users'))
        self.store._persist = Mock(side_effect=StoreError('disk full'))

        with self.assertRaises(StoreError):
            self.store.add('fe_users', self.store.create('fe_users'))
        self.assertEqual(len(self.store.fetch('fe_users')), 1)

        del self.store._persist
        self.assertEqual(self.store.add('fe_users', self.store.create('fe_users')).uid, 2)

    def test_username_exists(self):
        user = self.store.create('fe_users')
        user['username'] = 'jdoe'
        added = self.store.add('fe_users', user)
        self.assertTrue(self.store.username_exists('fe_users', 'jdoe'))
        self.assertFalse(self.store.username_exists('fe_users', 'jdoe', exclude_uid=added.uid))
        self.assertFalse(self.store.username_exists('fe_users', 'other'))


class TestYamlRecordStore(unittest.TestCase):
    """Test cases for the YAML file-backed store."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='ldap_store_test_')
        self.path = os.path.join(self.temp_dir, 'data', 'records.yaml')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_records_survive_reload(self):
        store = YamlRecordStore(self.path)
        group = store.create('fe_groups')
        group['title'] = 'Staff'
        group = store.add('fe_groups', group)

        reloaded = YamlRecordStore(self.path)
        self.assertEqual(reloaded.fetch('fe_groups', group.uid)[0]['title'], 'Staff')
        self.assertEqual(reloaded.add('fe_groups', reloaded.create('fe_groups')).uid, group.uid + 1)

        with open(self.path) as f:
            self.assertEqual(yaml.safe_load(f)['fe_groups'][0]['title'], 'Staff')

    def test_write_failure_keeps_memory_and_file_aligned(self):
        """Rows that could not be written are not visible in memory either."""
        store = YamlRecordStore(self.path)
        group = store.create('fe_groups')
        group['title'] = 'Staff'
        group = store.add('fe_groups', group)

        # A directory in place of the temporary file makes every write fail
        os.makedirs(f'{self.path}.tmp')
        group['title'] = 'Faculty'
        with self.assertRaises(StoreError):
            store.update('fe_groups', group)
        with self.assertRaises(StoreError):
            store.add('fe_groups', store.create('fe_groups'))

        self.assertEqual([g['title'] for g in store.fetch('fe_groups')], ['Staff'])
        reloaded = YamlRecordStore(self.path)
        self.assertEqual([g['title'] for g in reloaded.fetch('fe_groups')], ['Staff'])

    def test_invalid_yaml(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write('fe_users: [unclosed')
        with self.assertRaises(StoreError):
            YamlRecordStore(self.path)


if __name__ == '__main__':
    unittest.main()
