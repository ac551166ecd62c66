"""
Group resolution for directory users.

Directory groups of a user are looked up with one of two strategies (membership
attribute on the user entry, or reverse lookup by member DN) and reconciled with
the local group table: missing groups are created, soft-deleted ones restored.
"""

import time
import logging
from typing import Any, Callable, Dict, List, Optional

from ldap3 import BASE
from ldap3.utils.conv import escape_filter_chars

from ldap_auth_sync.config import get_pid, is_enabled, split_list
from ldap_auth_sync.errors import RequiredGroupsMissing
from ldap_auth_sync.logging_setup import security_logger
from ldap_auth_sync.mapping import GROUP_FIELD, AttributeMapper, get_ldap_attributes
from ldap_auth_sync.models import DN_FIELD, DirectoryEntry, GroupResolution, LocalGroup
from ldap_auth_sync.store import RecordStore

logger = logging.getLogger(__name__)

USER_DN_MARKER = '{USERDN}'
USER_UID_MARKER = '{USERUID}'


def get_membership(user: DirectoryEntry, user_mapping: Dict[str, Any]) -> List[str]:
    """Return the group DNs listed in the membership attribute named by ``usergroup``."""
    attributes = get_ldap_attributes([user_mapping.get(GROUP_FIELD)])
    if not attributes:
        return []
    return user.get(attributes[0])


def is_under_base(dn: str, base_dn: str) -> bool:
    if not base_dn:
        return True
    return dn.lower().replace(' ', '').endswith(base_dn.lower().replace(' ', ''))


def select_from_membership(directory, membership: List[str], base_dn: str, group_filter: str,
                           attributes: List[str], extended_check: bool = True) -> List[DirectoryEntry]:
    """
    Resolve membership DNs into directory groups.

    Args:
        directory: Directory client
        membership: Group DNs read from the user entry
        base_dn: Only groups below this DN are considered
        group_filter: Group filter; user markers are not applicable here
        attributes: Attributes to fetch for every group
        extended_check: Query every group against the directory; when False the
            DNs are accepted as-is so groups may live on another server

    Returns:
        Directory groups in membership order
    """
    if USER_DN_MARKER in group_filter or USER_UID_MARKER in group_filter:
        group_filter = '(objectClass=*)'

    groups = []
    for group_dn in membership:
        if not is_under_base(group_dn, base_dn):
            logger.debug(f"Skipping group {group_dn} outside of {base_dn}")
            continue
        if not extended_check:
            groups.append(DirectoryEntry(group_dn))
            continue
        entries = directory.search(group_dn, group_filter or '(objectClass=*)', attributes, scope=BASE)
        if entries:
            groups.append(entries[0])
        else:
            logger.debug(f"Group {group_dn} not found in directory")
    return groups


def select_from_user(directory, base_dn: str, group_filter: str, user_dn: str,
                     user_uid: str, attributes: List[str]) -> List[DirectoryEntry]:
    """Find groups whose membership attribute references the user DN (or uid)."""
    search_filter = (group_filter
                     .replace(USER_DN_MARKER, escape_filter_chars(user_dn))
                     .replace(USER_UID_MARKER, escape_filter_chars(user_uid)))
    return directory.search(base_dn, search_filter, attributes)


class GroupResolver:
    """
    Resolves the local groups of a directory user.

    Args:
        directory: Directory client exposing ``search``
        store: Local record store
        config: Loaded configuration
        mapper: Attribute mapper used to populate group fields
    """

    def __init__(self, directory, store: RecordStore, config: Dict[str, Any],
                 mapper: Optional[AttributeMapper] = None, clock: Callable[[], float] = time.time):
        self.directory = directory
        self.store = store
        self.config = config
        self.mapper = mapper or AttributeMapper(clock=clock)
        self.clock = clock

    def fetch_directory_groups(self, user: DirectoryEntry,
                               config: Optional[Dict[str, Any]] = None) -> List[DirectoryEntry]:
        """Retrieve the directory groups of a user with the configured strategy."""
        config = config or self.config
        groups_config = config['groups']
        attributes = get_ldap_attributes(groups_config.get('mapping', {}).values())

        if is_enabled(config, 'evaluate_groups_from_membership'):
            membership = get_membership(user, config['users'].get('mapping', {}))
            directory_groups = select_from_membership(
                self.directory,
                membership,
                groups_config.get('basedn', ''),
                groups_config.get('filter', ''),
                attributes,
                # Unknown groups are skipped anyway when groups are not synchronized
                extended_check=not is_enabled(config, 'do_not_synchronize_groups')
            )
        else:
            directory_groups = select_from_user(
                self.directory,
                groups_config.get('basedn', ''),
                groups_config.get('filter', ''),
                user.dn,
                user.first('uid'),
                attributes
            )

        logger.debug(f"Retrieved {len(directory_groups)} LDAP groups for user {user.dn}")
        return directory_groups

    def get_local_groups(self, directory_groups: List[DirectoryEntry], table: str,
                         pid: int, now: int) -> List[LocalGroup]:
        """
        Match directory groups to local groups, allocating unsaved ones when missing.

        The first local record returned for a DN wins.
        """
        candidates = []
        for directory_group in directory_groups:
            existing = self.store.fetch(table, 0, pid, dn=directory_group.dn)
            if existing:
                candidate = existing[0]
            else:
                candidate = self.store.create(table)
                candidate['pid'] = pid
                candidate['crdate'] = now
                candidate['tstamp'] = now
                candidate[DN_FIELD] = directory_group.dn
            candidates.append(candidate)
        return candidates

    def resolve_user_groups(self, user: DirectoryEntry, config: Optional[Dict[str, Any]] = None,
                            group_table: Optional[str] = None, now: Optional[int] = None) -> GroupResolution:
        """
        Resolve and reconcile the local groups of a directory user.

        Args:
            user: Directory user entry
            config: Configuration to use instead of the resolver's own
            group_table: Local group table; defaults to ``groups.table``
            now: Timestamp of the current synchronization

        Returns:
            The reconciled local groups together with the directory groups found

        Raises:
            RequiredGroupsMissing: If required groups are configured and none matches
        """
        config = config or self.config
        table = group_table or config['groups']['table']
        mapping = config['groups'].get('mapping', {})
        required = split_list(config.get('policies', {}).get('required_groups'))
        if now is None:
            now = int(self.clock())

        directory_groups = self.fetch_directory_groups(user, config)
        if not directory_groups:
            if required:
                logger.info(f"User {user.dn} has no LDAP groups but required groups are configured")
                raise RequiredGroupsMissing()
            return GroupResolution([], directory_groups)

        candidates = self.get_local_groups(directory_groups, table, get_pid(mapping), now)

        if required:
            resolved_ids = {str(candidate.uid) for candidate in candidates if candidate.uid}
            if not resolved_ids.intersection(required):
                logger.info(f"User {user.dn} is in none of the required groups {required}")
                raise RequiredGroupsMissing()

        if is_enabled(config, 'only_existing_groups') and not any(c.uid for c in candidates):
            logger.debug(f"No local group exists for the LDAP groups of {user.dn}")
            return GroupResolution([], directory_groups)

        local_groups = []
        for directory_group, candidate in zip(directory_groups, candidates):
            if is_enabled(config, 'do_not_synchronize_groups'):
                if candidate.uid:
                    local_groups.append(candidate)
                continue

            if not candidate.uid:
                group = self.store.add(table, candidate)
                security_logger.log_record_operation('create', table, group.uid, directory_group.dn)
            else:
                # Restore group that may have been previously deleted
                group = candidate.copy()
                if group.deleted:
                    security_logger.log_record_operation('restore', table, group.uid, directory_group.dn)
                group['deleted'] = 0
                group['tstamp'] = now

            merged = self.mapper.merge(directory_group, group, mapping, now)
            self.store.update(table, merged)

            canonical = self.store.fetch(table, merged.uid)
            group = canonical[0] if canonical else merged
            group.extra_data = dict(merged.extra_data)
            local_groups.append(group)

        return GroupResolution(local_groups, directory_groups)
