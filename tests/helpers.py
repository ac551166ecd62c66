"""
Shared fixtures for the LDAP Auth Sync tests.

Provides a scripted in-memory directory and a fully defaulted configuration
so engine tests run without an LDAP server.
"""

import copy
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_auth_sync.mapping import FieldProcessor
from ldap_auth_sync.models import DirectoryEntry
from ldap_auth_sync.store import InMemoryRecordStore

NOW = 1700000000

USER_BASE = 'ou=people,dc=example,dc=com'
GROUP_BASE = 'ou=groups,dc=example,dc=com'

BASE_CONFIG = {
    'ldap': {
        'server_url': 'ldaps://ldap.example.com:636',
        'bind_dn': 'cn=service,dc=example,dc=com',
        'bind_password': 'service_password',
        'use_ssl': True,
        'start_tls': False,
        'verify_ssl': True,
        'connection_timeout': 10,
        'receive_timeout': 10,
        'pass_through': False,
    },
    'users': {
        'table': 'fe_users',
        'basedn': USER_BASE,
        'filter': '(&(objectClass=inetOrgPerson)(uid={USERNAME}))',
        'mapping': {
            'name': '<cn>',
            'email': '<mail>',
        },
    },
    'groups': {
        'table': 'fe_groups',
        'basedn': GROUP_BASE,
        'filter': '(&(objectClass=groupOfNames)(member={USERDN}))',
        'mapping': {
            'title': '<cn>',
        },
    },
    'policies': {
        'force_lowercase_username': False,
        'required_groups': [],
        'only_existing_users': False,
        'only_existing_groups': False,
        'do_not_synchronize_groups': False,
        'delete_user_if_no_local_groups': False,
        'delete_user_if_no_ldap_groups': False,
        'evaluate_groups_from_membership': False,
        'keep_local_groups': False,
        'assign_groups': [],
        'admin_groups': [],
    },
    'field_processors': {},
    'store': {'path': 'records.yaml', 'schemas': {}},
    'logging': {'level': 'INFO', 'log_dir': 'logs', 'rotation': 'daily', 'retention_days': 7},
}

SCHEMAS = {
    'fe_users': {'name': '', 'email': ''},
    'fe_groups': {'description': ''},
}


def make_config(**policies):
    """Return a copy of the base configuration with policy overrides."""
    config = copy.deepcopy(BASE_CONFIG)
    config['policies'].update(policies)
    return config


def make_store():
    return InMemoryRecordStore(schemas=copy.deepcopy(SCHEMAS))


def clock():
    return NOW


def make_user(uid, cn, mail=None, **attributes):
    dn = f'uid={uid},{USER_BASE}'
    attributes.update({'uid': [uid], 'cn': [cn], 'objectClass': ['inetOrgPerson']})
    if mail:
        attributes['mail'] = [mail]
    return DirectoryEntry(dn, attributes)


def make_group(cn, members):
    dn = f'cn={cn},{GROUP_BASE}'
    return DirectoryEntry(dn, {'cn': [cn], 'member': [m.dn for m in members]})


class FakeDirectory:
    """Scripted directory client with the same surface as LDAPClient."""

    def __init__(self, users=None, groups=None, passwords=None):
        self.users = {entry.dn.lower(): entry for entry in (users or [])}
        self.groups = {entry.dn.lower(): entry for entry in (groups or [])}
        self.passwords = dict(passwords or {})
        self.connect_error = None
        self.pass_through = False
        self.connected = False
        self.disconnect_calls = 0
        self.searches = []
        self._diagnostic = ''

    def connect(self):
        if self.connect_error:
            raise self.connect_error
        self.connected = True
        return True

    def disconnect(self):
        self.connected = False
        self.disconnect_calls += 1

    def valid_user(self, username, password, base_dn, user_filter):
        self._diagnostic = ''
        matches = [entry for entry in self.users.values() if entry.first('uid') == username]
        if not matches:
            self._diagnostic = f'User "{username}" not found in directory'
            return False
        if not password or self.passwords.get(username) != password:
            self._diagnostic = '80090308: LdapErr: DSID-0C09042A, comment: AcceptSecurityContext error, data 52e'
            return False
        if self.pass_through:
            return True
        return matches[0].dn

    def get_last_bind_diagnostic(self):
        return self._diagnostic

    def search(self, base, search_filter='(objectClass=*)', attributes=None, scope='SUBTREE'):
        self.searches.append((base, search_filter, scope))
        key = base.lower()
        if scope == 'BASE':
            entry = self.users.get(key) or self.groups.get(key)
            return [entry] if entry else []
        if key == GROUP_BASE.lower():
            return [group for group in self.groups.values()
                    if any(f'(member={member})'.lower() in search_filter.lower()
                           for member in group.get('member'))]
        return [entry for entry in self.users.values() if entry.dn.lower().endswith(key)]


class UpperCaseProcessor(FieldProcessor):
    """Field processor joining the referenced attributes in upper case."""

    def __init__(self):
        self.calls = []

    def process(self, field, record, entry, attribute_names, params):
        self.calls.append((field, attribute_names, params))
        separator = params.get('separator', ' ')
        return separator.join(entry.first(name).upper() for name in attribute_names)


class NotAProcessor:
    pass
