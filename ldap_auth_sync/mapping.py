"""
Declarative attribute mapping from directory entries onto local records.

A mapping is a dictionary of local field name to expression text. Expressions are
classified by ``models.parse_expression`` and evaluated here; unresolved markers and
unknown hooks degrade to empty values instead of failing the synchronization.
"""

import time
import random
import logging
import importlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from ldap_auth_sync.models import (
    DN_FIELD,
    MARKER_PATTERN,
    Constant,
    DirectoryAttribute,
    DirectoryEntry,
    HookInvocation,
    LocalRecord,
    parse_expression,
)

logger = logging.getLogger(__name__)

# Reserved mapping field handled by group resolution
GROUP_FIELD = 'usergroup'


class FieldProcessor(ABC):
    """
    Base class for hook-driven field processors.

    A processor is referenced from a mapping expression such as
    ``{hookName|fullName;separator| }`` and computes the field value itself.
    """

    @abstractmethod
    def process(self, field: str, record: LocalRecord, entry: DirectoryEntry,
                attribute_names: List[str], params: Dict[str, str]) -> Any:
        """
        Compute the value of ``field``.

        Args:
            field: Local field being mapped
            record: Local record being merged (read-only for processors)
            entry: Directory entry the record is merged from
            attribute_names: Directory attributes referenced by the expression
            params: Hook parameters, including ``hookName``

        Returns:
            Value to assign to the field
        """


class FieldProcessorRegistry:
    """Registry of field processors keyed by hook name."""

    def __init__(self, processors: Optional[Dict[str, FieldProcessor]] = None):
        self._processors = dict(processors or {})

    def register(self, hook_name: str, processor: FieldProcessor):
        self._processors[hook_name] = processor
        logger.debug(f"Registered field processor for hook {hook_name}")

    def resolve(self, hook_name: str) -> Optional[FieldProcessor]:
        return self._processors.get(hook_name)

    def __len__(self):
        return len(self._processors)

    @classmethod
    def from_config(cls, processors_config: Optional[Dict[str, str]]) -> 'FieldProcessorRegistry':
        """
        Build a registry from ``hookName: "module.path:ClassName"`` entries.

        Raises:
            ImportError: If a module cannot be imported
            TypeError: If the referenced class is not a FieldProcessor
        """
        registry = cls()
        for hook_name, reference in (processors_config or {}).items():
            module_name, _, class_name = reference.partition(':')
            module = importlib.import_module(module_name)
            processor_class = getattr(module, class_name, None)
            if not (isinstance(processor_class, type) and issubclass(processor_class, FieldProcessor)):
                raise TypeError(f"{reference} is not a FieldProcessor subclass")
            registry.register(hook_name, processor_class())
        return registry


def get_ldap_attributes(expressions: Iterable[Any]) -> List[str]:
    """Return the unique, lower-cased attribute names referenced by ``<attr>`` markers."""
    attributes = []
    for expression in expressions:
        for name in MARKER_PATTERN.findall('' if expression is None else str(expression)):
            name = name.lower()
            if name not in attributes:
                attributes.append(name)
    return attributes


def replace_markers(template: str, entry: DirectoryEntry) -> str:
    """
    Replace every ``<attr>`` marker with the first value of that attribute.

    Markers for attributes the entry does not carry are removed.
    """
    return MARKER_PATTERN.sub(lambda match: entry.first(match.group(1)), template)


class AttributeMapper:
    """Evaluates a mapping against a directory entry and merges it into a local record."""

    def __init__(self, registry: Optional[FieldProcessorRegistry] = None,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None):
        self.registry = registry or FieldProcessorRegistry()
        self.clock = clock
        self.rng = rng or random.Random()

    def merge(self, entry: DirectoryEntry, record: LocalRecord, mapping: Dict[str, Any],
              now: Optional[int] = None) -> LocalRecord:
        """
        Merge mapped directory values into a copy of ``record``.

        Args:
            entry: Directory entry to read from
            record: Local record to merge into
            mapping: Field to expression mapping
            now: Timestamp used for ``{DATE}``; defaults to the mapper's clock

        Returns:
            The merged copy of the record
        """
        merged = record.copy()
        if now is None:
            now = int(self.clock())

        for field, expression in (mapping or {}).items():
            if field == GROUP_FIELD:
                continue
            value = self.evaluate(field, expression, entry, merged, now)
            if field in merged:
                merged[field] = value
            else:
                merged.extra_data[field] = value

        return merged

    def evaluate(self, field: str, expression: Any, entry: DirectoryEntry,
                 record: LocalRecord, now: int) -> Any:
        """Compute the value of a single mapped field."""
        parsed = parse_expression(expression)

        if isinstance(parsed, Constant):
            if parsed.tag == 'DATE':
                return now
            return self.rng.randint(0, 2 ** 31 - 1)

        if isinstance(parsed, HookInvocation):
            processor = self.registry.resolve(parsed.hook_name)
            if processor is None:
                logger.debug(f"No field processor registered for hook '{parsed.hook_name}', "
                             f"field {field} left empty")
                return ''
            attribute_names = get_ldap_attributes([parsed.text])
            return processor.process(field, record, entry, attribute_names, parsed.params)

        if isinstance(parsed, DirectoryAttribute):
            if field == DN_FIELD or (field == 'title' and parsed.template == '<dn>'):
                return entry.first(parsed.markers[0])
            return replace_markers(parsed.template, entry)

        return parsed.value
