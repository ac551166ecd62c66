"""
User synchronization.

Creates or updates the local user record of a directory user, applies the
soft-delete policies and assigns the groups resolved by the GroupResolver.
"""

import os
import time
import base64
import secrets
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from ldap3 import BASE, SUBTREE

from ldap_auth_sync.config import USERNAME_MARKER, get_pid, get_username_attribute, is_enabled, split_list
from ldap_auth_sync.errors import MembershipAssignmentRejected, SyncError, UserNotPermitted
from ldap_auth_sync.groups import GroupResolver
from ldap_auth_sync.logging_setup import security_logger
from ldap_auth_sync.mapping import GROUP_FIELD, AttributeMapper
from ldap_auth_sync.models import DN_FIELD, DirectoryEntry, LocalGroup, LocalUser
from ldap_auth_sync.store import RecordStore

logger = logging.getLogger(__name__)

SOURCE_LDAP = 'LDAP'

# Columns set by the engine itself; schema defaults never override them
IDENTITY_COLUMNS = ('uid', 'pid', 'crdate', 'tstamp', 'username', DN_FIELD)


def generate_random_password() -> str:
    """
    Return a password placeholder nobody knows the plain text of.

    The value is an scrypt hash of random bytes, so the password column never
    holds a usable secret for directory-managed accounts.
    """
    salt = os.urandom(16)
    kdf = Scrypt(salt=salt, length=32, n=2 ** 14, r=8, p=1)
    digest = kdf.derive(secrets.token_bytes(32))
    return '$scrypt$' + base64.b64encode(salt).decode() + '$' + base64.b64encode(digest).decode()


def normalize_username(store: RecordStore, table: str, username: str, uid: int = 0) -> str:
    """Trim ``username`` and append a numeric suffix until no other record owns it."""
    username = (username or '').strip()
    candidate = username
    suffix = 0
    while store.username_exists(table, candidate, exclude_uid=uid):
        suffix += 1
        candidate = f"{username}{suffix}"
    if candidate != username:
        logger.info(f"Username {username} already taken in {table}, using {candidate}")
    return candidate


class MembershipAssigner:
    """
    Writes resolved group memberships onto a user record.

    Memberships are stored as a comma separated list of local group ids in the
    ``usergroup`` column.
    """

    def __init__(self, store: RecordStore, config: Dict[str, Any]):
        self.store = store
        self.config = config

    def assign(self, groups: List[LocalGroup], user: LocalUser) -> Optional[LocalUser]:
        """
        Assign ``groups`` to a copy of ``user``.

        Returns:
            The updated user, or None when the assignment is rejected
        """
        unsaved = [group for group in groups if not group.uid]
        if unsaved:
            logger.warning(f"Rejecting membership assignment for {user.username}: "
                           f"{len(unsaved)} group(s) have no persisted id")
            return None

        policies = self.config.get('policies', {})
        group_ids = [str(group.uid) for group in groups]

        if is_enabled(self.config, 'keep_local_groups'):
            for group_id in self._local_only_groups(user):
                if group_id not in group_ids:
                    group_ids.append(group_id)

        for group_id in split_list(policies.get('assign_groups')):
            if group_id not in group_ids:
                group_ids.append(group_id)

        assigned = user.copy()
        assigned[GROUP_FIELD] = ','.join(group_ids)

        admin_groups = set(split_list(policies.get('admin_groups')))
        if admin_groups:
            assigned['admin'] = 1 if admin_groups.intersection(group_ids) else 0

        return assigned

    def _local_only_groups(self, user: LocalUser) -> List[str]:
        """Groups currently assigned to the user that are not directory-managed."""
        table = self.config['groups']['table']
        kept = []
        for group_id in split_list(user.get(GROUP_FIELD)):
            existing = self.store.fetch(table, int(group_id)) if group_id.isdigit() else []
            if existing and not existing[0].dn:
                kept.append(group_id)
        return kept


class IdentityLocks:
    """Per-identity locks serializing synchronizations of the same DN."""

    def __init__(self):
        # identity -> [lock, number of threads holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._guard = threading.Lock()

    def __len__(self):
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, identity: str):
        key = identity.lower()
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._guard:
                slot[1] -= 1
                if not slot[1]:
                    del self._locks[key]


class UserSynchronizer:
    """
    Synchronizes one directory user into the local user table.

    Args:
        directory: Directory client exposing ``search``
        store: Local record store
        config: Loaded configuration
        mapper: Attribute mapper shared with the group resolver
        group_resolver: Resolver for the user's groups
        assigner: Membership assigner
        clock: Source of the current time
    """

    def __init__(self, directory, store: RecordStore, config: Dict[str, Any],
                 mapper: Optional[AttributeMapper] = None,
                 group_resolver: Optional[GroupResolver] = None,
                 assigner: Optional[MembershipAssigner] = None,
                 clock: Callable[[], float] = time.time):
        self.directory = directory
        self.store = store
        self.config = config
        self.clock = clock
        self.mapper = mapper or AttributeMapper(clock=clock)
        self.group_resolver = group_resolver or GroupResolver(directory, store, config, self.mapper, clock)
        self.assigner = assigner or MembershipAssigner(store, config)
        self._locks = IdentityLocks()

    @property
    def table(self) -> str:
        return self.config['users']['table']

    def get_directory_user(self, dn: str) -> Optional[DirectoryEntry]:
        """Fetch a directory user by DN, with every attribute."""
        search_filter = self.config['users']['filter'].replace(USERNAME_MARKER, '*')
        users = self.directory.search(dn, search_filter, [], scope=BASE)
        user = users[0] if users else None
        logger.debug(f"Retrieving LDAP user from DN {dn}: {'found' if user else 'not found'}")
        return user

    def get_directory_users(self) -> List[DirectoryEntry]:
        """Fetch every directory user below the user base DN."""
        users_config = self.config['users']
        search_filter = users_config['filter'].replace(USERNAME_MARKER, '*')
        return self.directory.search(users_config['basedn'], search_filter, [], scope=SUBTREE)

    def get_local_user(self, username: str, dn: str, pid: int, now: int) -> Optional[LocalUser]:
        """
        Look up the local user for a directory identity.

        Returns:
            The first matching record, a new unsaved record, or None when only
            existing users may authenticate and none matches
        """
        only_existing = is_enabled(self.config, 'only_existing_users')
        users = self.store.fetch(self.table, 0, pid, username, dn)

        if only_existing:
            # Deleted users behave as if they did not exist
            users = [user for user in users if not user.deleted]

        if users:
            if len(users) > 1:
                logger.warning(f"{len(users)} local users match {dn}, using uid {users[0].uid}")
            return users[0]

        if only_existing:
            return None

        user = self.store.create(self.table)
        user['pid'] = pid
        user['crdate'] = now
        user['tstamp'] = now
        user['username'] = username
        user[DN_FIELD] = dn
        return user

    def synchronize(self, user_dn: str, username: Optional[str] = None,
                    directory_user: Optional[DirectoryEntry] = None) -> LocalUser:
        """
        Create or update the local user of a directory user.

        Args:
            user_dn: DN of the directory user
            username: Login name if already known from the bind
            directory_user: Directory entry if already fetched

        Returns:
            The persisted local user, tagged with ``source = 'LDAP'``

        Raises:
            SyncError: If the user cannot be synchronized; see ``errors`` for the
                specific subclasses
        """
        with self._locks.hold(user_dn):
            return self._synchronize(user_dn, username, directory_user)

    def _synchronize(self, user_dn: str, username: Optional[str],
                     directory_user: Optional[DirectoryEntry]) -> LocalUser:
        now = int(self.clock())
        users_config = self.config['users']
        mapping = users_config.get('mapping', {})

        entry = directory_user or self.get_directory_user(user_dn)
        if entry is None:
            raise SyncError(f"User {user_dn} not found in directory")

        if not username:
            username = entry.first(get_username_attribute(users_config['filter']))

        user = self.get_local_user(username, user_dn, get_pid(mapping), now)
        if user is None:
            raise UserNotPermitted(f'Local user "{username}" does not exist')

        resolution = self.group_resolver.resolve_user_groups(entry, now=now)
        groups = resolution.local_groups

        if is_enabled(self.config, 'only_existing_users') and not user.uid:
            raise UserNotPermitted(f'Local user "{username}" does not exist')

        delete_if_no_local_groups = is_enabled(self.config, 'delete_user_if_no_local_groups')
        if not user.uid and (groups or not delete_if_no_local_groups):
            for column, default in self.store.get_column_defaults(self.table).items():
                if column not in IDENTITY_COLUMNS:
                    user[column] = default
            user['username'] = normalize_username(self.store, self.table, user['username'])
            user = self.store.add(self.table, user)
            security_logger.log_record_operation('create', self.table, user.uid, user_dn)

        if not user.uid:
            raise UserNotPermitted(f'No local user could be created for "{username}"')

        user['deleted'] = 0
        user['endtime'] = 0
        user['password'] = generate_random_password()

        if not groups and delete_if_no_local_groups:
            user['deleted'] = 1
            user['endtime'] = now
        if is_enabled(self.config, 'delete_user_if_no_ldap_groups') and not resolution.directory_groups:
            user['deleted'] = 1
            user['endtime'] = now
        if user.deleted:
            security_logger.log_record_operation('soft-delete', self.table, user.uid, user_dn)

        assigned = self.assigner.assign(groups, user)
        if assigned is None:
            raise MembershipAssignmentRejected(f'Group assignment rejected for "{username}"')

        user = self.mapper.merge(entry, assigned, mapping, now)

        if is_enabled(self.config, 'force_lowercase_username'):
            user['username'] = user['username'].lower()

        self.store.update(self.table, user)
        security_logger.log_record_operation('update', self.table, user.uid, user_dn)

        user.source = SOURCE_LDAP
        return user
