"""
Data model shared by the synchronization engine.

Directory entries are read-only snapshots of LDAP search results. Local records are
transient copies of rows owned by the record store; the engine edits them in memory
and writes them back explicitly.
"""

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Optional

from ldap_auth_sync.errors import SyncError

# Local column tracking the directory DN of a user or group record
DN_FIELD = 'ldap_dn'

HOOK_PATTERN = re.compile(r'\{([^$]*)\}')
MARKER_PATTERN = re.compile(r'<(.+?)>')


def _to_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


class DirectoryEntry:
    """
    Immutable snapshot of one directory entry.

    Attribute names are case-insensitive; every attribute holds an ordered sequence
    of string values since directory attributes are inherently multi-valued.
    """

    __slots__ = ('_dn', '_attributes')

    def __init__(self, dn: str, attributes: Optional[Dict[str, Any]] = None):
        normalized = {}
        for name, values in (attributes or {}).items():
            if values is None:
                continue
            if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
                values = [values]
            key = name.lower()
            normalized[key] = normalized.get(key, ()) + tuple(_to_text(v) for v in values)
        object.__setattr__(self, '_dn', dn)
        object.__setattr__(self, '_attributes', MappingProxyType(normalized))

    def __setattr__(self, name, value):
        raise AttributeError("DirectoryEntry is immutable")

    @classmethod
    def from_ldap3(cls, entry) -> 'DirectoryEntry':
        """Build an entry from an ldap3 ``Entry`` returned by a search."""
        return cls(str(entry.entry_dn), entry.entry_attributes_as_dict)

    @property
    def dn(self) -> str:
        return self._dn

    @property
    def attribute_names(self) -> List[str]:
        return list(self._attributes.keys())

    def get(self, name: str) -> List[str]:
        """Return all values of an attribute; ``dn`` resolves to the entry DN."""
        key = name.lower()
        if key in self._attributes:
            return list(self._attributes[key])
        if key == 'dn':
            return [self._dn]
        return []

    def first(self, name: str, default: str = '') -> str:
        values = self.get(name)
        return values[0] if values else default

    def __contains__(self, name: str) -> bool:
        key = name.lower()
        return key in self._attributes or key == 'dn'

    def to_dict(self) -> Dict[str, Any]:
        data = {'dn': self._dn}
        data.update({name: list(values) for name, values in self._attributes.items()})
        return data

    def __eq__(self, other):
        if not isinstance(other, DirectoryEntry):
            return NotImplemented
        return self._dn == other._dn and dict(self._attributes) == dict(other._attributes)

    def __hash__(self):
        return hash(self._dn)

    def __repr__(self):
        return f"DirectoryEntry(dn={self._dn!r})"


class LocalRecord:
    """
    In-memory copy of a local user or group row.

    ``fields`` holds the columns known to the local schema; values mapped onto
    columns the schema does not have are kept in ``extra_data``.
    """

    def __init__(self, table: str, fields: Optional[Dict[str, Any]] = None,
                 extra_data: Optional[Dict[str, Any]] = None):
        self.table = table
        self.fields = dict(fields or {})
        self.extra_data = dict(extra_data or {})

    @property
    def uid(self) -> int:
        try:
            return int(self.fields.get('uid') or 0)
        except (TypeError, ValueError):
            return 0

    @property
    def pid(self) -> int:
        return int(self.fields.get('pid') or 0)

    @property
    def deleted(self) -> bool:
        return bool(int(self.fields.get('deleted') or 0))

    @property
    def dn(self) -> str:
        return self.fields.get(DN_FIELD) or ''

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def __setitem__(self, key: str, value: Any):
        self.fields[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self.fields

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def copy(self):
        clone = type(self)(self.table, self.fields, self.extra_data)
        clone.__dict__.update({k: v for k, v in self.__dict__.items()
                               if k not in ('table', 'fields', 'extra_data')})
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.fields)

    def __eq__(self, other):
        if not isinstance(other, LocalRecord):
            return NotImplemented
        return (self.table == other.table and self.fields == other.fields
                and self.extra_data == other.extra_data)

    def __repr__(self):
        return f"{type(self).__name__}(table={self.table!r}, uid={self.uid})"


class LocalUser(LocalRecord):
    """Local user record. ``source`` tags records provisioned from the directory."""

    def __init__(self, table: str, fields: Optional[Dict[str, Any]] = None,
                 extra_data: Optional[Dict[str, Any]] = None):
        super().__init__(table, fields, extra_data)
        self.source = None

    @property
    def username(self) -> str:
        return self.fields.get('username') or ''


class LocalGroup(LocalRecord):
    """Local group record."""
    pass


@dataclass(frozen=True)
class Literal:
    """Expression used verbatim."""
    value: Any


@dataclass(frozen=True)
class Constant:
    """``{DATE}`` or ``{RAND}``."""
    tag: str


@dataclass(frozen=True)
class DirectoryAttribute:
    """Template with one or more ``<attr>`` markers."""
    template: str

    @property
    def markers(self) -> List[str]:
        return [name.lower() for name in MARKER_PATTERN.findall(self.template)]


@dataclass(frozen=True)
class HookInvocation:
    """``{hookName|name;key|value}`` delegated to a registered field processor."""
    hook_name: str
    params: Dict[str, str]
    text: str


CONSTANT_TAGS = ('DATE', 'RAND')


def parse_hook_params(descriptor: str) -> Dict[str, str]:
    """Split ``key|value;key|value`` pairs; a pair without ``|`` maps to an empty value."""
    params = {}
    for pair in descriptor.split(';'):
        if not pair:
            continue
        key, _, value = pair.partition('|')
        params[key] = value
    return params


def parse_expression(value: Any):
    """
    Classify a mapping expression.

    Args:
        value: Raw expression as found in the mapping configuration

    Returns:
        One of Constant, HookInvocation, DirectoryAttribute or Literal
    """
    text = '' if value is None else str(value)
    match = HOOK_PATTERN.search(text)
    if match:
        for tag in CONSTANT_TAGS:
            if text == '{' + tag + '}':
                return Constant(tag)
        params = parse_hook_params(match.group(1))
        return HookInvocation(params.get('hookName', ''), params, text)
    if MARKER_PATTERN.search(text):
        return DirectoryAttribute(text)
    return Literal(value)


@dataclass
class GroupResolution:
    """Outcome of group resolution for one user."""
    local_groups: List[LocalGroup] = field(default_factory=list)
    directory_groups: List[DirectoryEntry] = field(default_factory=list)


@dataclass
class AuthenticationResult:
    """
    Call-scoped outcome of one authentication attempt.

    ``diagnostic`` is empty on success; ``user`` is None for failures and for
    pass-through successes that carry no directory identity.
    """
    success: bool
    user: Optional[LocalUser] = None
    diagnostic: str = ''
    error: Optional[SyncError] = None

    def __bool__(self):
        return self.success
