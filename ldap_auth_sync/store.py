"""
Local record storage for users and groups.

This module defines the store contract consumed by the synchronization engine
along with a thread-safe in-memory implementation and a YAML file-backed one.
"""

import os
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

import yaml

from ldap_auth_sync.models import DN_FIELD, LocalGroup, LocalRecord, LocalUser

logger = logging.getLogger(__name__)

BASE_COLUMNS = {
    'uid': 0,
    'pid': 0,
    'deleted': 0,
    'crdate': 0,
    'tstamp': 0,
    DN_FIELD: '',
}

USER_COLUMNS = {
    'username': '',
    'password': '',
    'endtime': 0,
    'usergroup': '',
    'admin': 0,
}

GROUP_COLUMNS = {
    'title': '',
}


class StoreError(Exception):
    """Raised when a record cannot be read or written."""
    pass


class RecordStore(ABC):
    """
    Contract for the local record store.

    Records are handed out as copies; changes only reach the store through
    ``add`` and ``update``.
    """

    @abstractmethod
    def fetch(self, table: str, uid: int = 0, pid: Optional[int] = None,
              username: Optional[str] = None, dn: Optional[str] = None) -> List[LocalRecord]:
        """
        Fetch records by id, or by DN and/or username within a parent container.

        When both ``dn`` and ``username`` are given, records matching either are
        returned, DN matches first and active records before soft-deleted ones.
        """

    @abstractmethod
    def create(self, table: str) -> LocalRecord:
        """Return a new, not yet persisted record (uid 0) with every column present."""

    @abstractmethod
    def add(self, table: str, record: LocalRecord) -> LocalRecord:
        """Persist a new record and return it with its assigned uid."""

    @abstractmethod
    def update(self, table: str, record: LocalRecord) -> None:
        """Write back an existing record."""

    def get_column_defaults(self, table: str) -> Dict[str, Any]:
        """Column defaults declared by the table schema."""
        return {}

    def username_exists(self, table: str, username: str, exclude_uid: int = 0) -> bool:
        """Check whether another active record already owns ``username``."""
        return False


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe in-memory record store.

    Args:
        schemas: Table name to ``{column: default}`` mapping; columns listed here are
            added to the built-in ones and their defaults are reported by
            ``get_column_defaults``.
        record_classes: Optional table name to record class mapping
    """

    def __init__(self, schemas: Optional[Dict[str, Dict[str, Any]]] = None,
                 record_classes: Optional[Dict[str, Type[LocalRecord]]] = None):
        self.schemas = {table: dict(columns or {}) for table, columns in (schemas or {}).items()}
        self.record_classes = dict(record_classes or {})
        self._rows: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._next_uid: Dict[str, int] = {}
        self._lock = threading.RLock()

    def _record_class(self, table: str) -> Type[LocalRecord]:
        if table in self.record_classes:
            return self.record_classes[table]
        if table.endswith('users'):
            return LocalUser
        if table.endswith('groups'):
            return LocalGroup
        return LocalRecord

    def _columns(self, table: str) -> Dict[str, Any]:
        columns = dict(BASE_COLUMNS)
        record_class = self._record_class(table)
        if issubclass(record_class, LocalUser):
            columns.update(USER_COLUMNS)
        elif issubclass(record_class, LocalGroup):
            columns.update(GROUP_COLUMNS)
        for column, default in self.schemas.get(table, {}).items():
            columns.setdefault(column, '' if default is None else type(default)())
        return columns

    def _build(self, table: str, row: Dict[str, Any]) -> LocalRecord:
        return self._record_class(table)(table, row)

    def fetch(self, table: str, uid: int = 0, pid: Optional[int] = None,
              username: Optional[str] = None, dn: Optional[str] = None) -> List[LocalRecord]:
        with self._lock:
            rows = list(self._rows.get(table, {}).values())

            if uid:
                matches = [row for row in rows if row['uid'] == int(uid)]
            else:
                if pid is not None:
                    rows = [row for row in rows if int(row.get('pid') or 0) == int(pid)]
                if dn:
                    matches = [row for row in rows
                               if (row.get(DN_FIELD) or '').lower() == dn.lower()
                               or (username and row.get('username') == username)]
                    matches.sort(key=lambda row: (
                        0 if (row.get(DN_FIELD) or '').lower() == dn.lower() else 1,
                        int(row.get('deleted') or 0),
                        row['uid'],
                    ))
                elif username:
                    matches = [row for row in rows if row.get('username') == username]
                    matches.sort(key=lambda row: (int(row.get('deleted') or 0), row['uid']))
                else:
                    matches = sorted(rows, key=lambda row: row['uid'])

            return [self._build(table, dict(row)) for row in matches]

    def create(self, table: str) -> LocalRecord:
        return self._build(table, self._columns(table))

    def add(self, table: str, record: LocalRecord) -> LocalRecord:
        with self._lock:
            uid = self._next_uid.get(table, 1)
            row = self._columns(table)
            row.update(record.fields)
            row['uid'] = uid
            rows = self._rows.setdefault(table, {})
            rows[uid] = row
            try:
                self._persist()
            except StoreError:
                del rows[uid]
                raise
            self._next_uid[table] = uid + 1
            logger.debug(f"Added record {uid} to table {table}")
        persisted = record.copy()
        persisted.fields = dict(row)
        return persisted

    def update(self, table: str, record: LocalRecord) -> None:
        with self._lock:
            rows = self._rows.get(table, {})
            if record.uid not in rows:
                raise StoreError(f"Cannot update missing record {record.uid} in table {table}")
            previous = rows[record.uid]
            updated = dict(previous)
            updated.update(record.fields)
            rows[record.uid] = updated
            try:
                self._persist()
            except StoreError:
                rows[record.uid] = previous
                raise
            logger.debug(f"Updated record {record.uid} in table {table}")

    def get_column_defaults(self, table: str) -> Dict[str, Any]:
        return {column: default for column, default in self.schemas.get(table, {}).items()
                if default is not None}

    def username_exists(self, table: str, username: str, exclude_uid: int = 0) -> bool:
        with self._lock:
            return any(row.get('username') == username and row['uid'] != exclude_uid
                       and not int(row.get('deleted') or 0)
                       for row in self._rows.get(table, {}).values())

    def all(self, table: str) -> List[LocalRecord]:
        return self.fetch(table)

    def _persist(self):
        """Hook for subclasses that keep the rows somewhere durable."""
        pass


class YamlRecordStore(InMemoryRecordStore):
    """
    Record store persisted to a YAML file.

    The file holds one list of rows per table and is rewritten after every write.
    """

    def __init__(self, path: str, schemas: Optional[Dict[str, Dict[str, Any]]] = None,
                 record_classes: Optional[Dict[str, Type[LocalRecord]]] = None):
        super().__init__(schemas, record_classes)
        self.path = path
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            logger.info(f"Record file {self.path} does not exist yet, starting empty")
            return

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise StoreError(f"Invalid YAML in record file {self.path}: {e}")

        for table, rows in data.items():
            for row in rows or []:
                uid = int(row['uid'])
                self._rows.setdefault(table, {})[uid] = dict(row)
                self._next_uid[table] = max(self._next_uid.get(table, 1), uid + 1)
        logger.debug(f"Loaded records for {len(data)} tables from {self.path}")

    def _persist(self):
        data = {table: [rows[uid] for uid in sorted(rows)] for table, rows in self._rows.items()}
        directory = os.path.dirname(self.path)
        tmp_path = f"{self.path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreError(f"Failed to write record file {self.path}: {e}")
