"""
Record type member tables.

A record type is any default-constructible class with named members. Its
members are declared statically and collected once per type into a
RecordSchema:

- fields: dataclass fields in declaration order, or class annotations for
  plain classes (base classes first)
- properties: public ``property`` objects in definition order

A field may map to a differently named column:

    @dataclass
    class User:
        id: int = 0
        email: str | None = field(default=None, metadata={'column': 'EmailAddress'})
"""
import array
import ctypes
import dataclasses
import datetime
import decimal
import enum
import inspect
import logging
import threading
import typing
import uuid
from collections.abc import Mapping, Set
from typing import Any

import cachetools
from procdb.exceptions import TypeShapeError

logger = logging.getLogger(__name__)

VALUE_TYPES = (int, float, complex, str, bytes, bool, decimal.Decimal,
               datetime.date, datetime.time, datetime.timedelta, uuid.UUID, enum.Enum)
ARRAY_TYPES = (list, tuple, bytearray, memoryview, array.array, Mapping, Set)
POINTER_TYPES = (ctypes._Pointer, ctypes._SimpleCData, ctypes.Array)

_schema_cache: cachetools.LRUCache = cachetools.LRUCache(maxsize=256)
_schema_cache_lock = threading.RLock()


@dataclasses.dataclass(frozen=True)
class Member:
    """One named, typed member of a record type."""
    name: str
    column: str
    type: Any
    kind: str
    settable: bool

    def get(self, record: Any) -> Any:
        return getattr(record, self.name)

    def set(self, record: Any, value: Any) -> None:
        if not self.settable:
            raise TypeShapeError(
                f'No setter defined for {self.name} on {type(record).__name__}')
        setattr(record, self.name, value)


class RecordSchema:
    """Statically derived member table for a record type.
    """

    def __init__(self, record_type: type, fields: tuple[Member, ...],
                 properties: tuple[Member, ...]) -> None:
        self.record_type = record_type
        self.fields = fields
        self.properties = properties
        self.members = fields + properties
        self._by_column = {m.column: m for m in self.members}
        self._fields_by_column = {m.column: m for m in fields}

    def __repr__(self) -> str:
        return (f'RecordSchema({self.record_type.__name__}, '
                f'fields={[m.name for m in self.fields]}, '
                f'properties={[m.name for m in self.properties]})')

    def member(self, column: str, fields_only: bool = False) -> Member | None:
        """Look up the member bound to a column name."""
        if fields_only:
            return self._fields_by_column.get(column)
        return self._by_column.get(column)

    def new(self) -> Any:
        """Create an empty record."""
        return self.record_type()


def check_shape(record_type: Any) -> None:
    """Reject types that cannot be populated member by member.

    Raises TypeShapeError for non-classes, value types, arrays, pointer-like
    types and classes without a zero-argument constructor.
    """
    if not isinstance(record_type, type):
        raise TypeShapeError(f'{record_type!r} is not a class')
    if issubclass(record_type, POINTER_TYPES):
        raise TypeShapeError(f'{record_type.__name__} is a pointer-like type')
    if issubclass(record_type, VALUE_TYPES):
        raise TypeShapeError(f'{record_type.__name__} is a value type')
    if issubclass(record_type, ARRAY_TYPES):
        raise TypeShapeError(f'{record_type.__name__} is an array type')
    try:
        signature = inspect.signature(record_type)
    except (TypeError, ValueError):
        return
    required = [p.name for p in signature.parameters.values()
                if p.default is inspect.Parameter.empty
                and p.kind not in {inspect.Parameter.VAR_POSITIONAL,
                                   inspect.Parameter.VAR_KEYWORD}]
    if required:
        raise TypeShapeError(
            f'{record_type.__name__} has no zero-argument constructor '
            f'(requires {", ".join(required)})')


def _type_hints(obj: Any) -> dict[str, Any]:
    try:
        return typing.get_type_hints(obj, include_extras=True)
    except (NameError, TypeError):
        # unresolvable forward references stay as strings
        return dict(getattr(obj, '__annotations__', {}))


def _collect_fields(record_type: type, hints: dict[str, Any],
                    property_names: set[str]) -> tuple[Member, ...]:
    if dataclasses.is_dataclass(record_type):
        frozen = record_type.__dataclass_params__.frozen
        return tuple(
            Member(name=f.name,
                   column=f.metadata.get('column', f.name),
                   type=hints.get(f.name, f.type),
                   kind='field',
                   settable=not frozen)
            for f in dataclasses.fields(record_type))

    names: list[str] = []
    for klass in reversed(record_type.__mro__):
        for name in inspect.get_annotations(klass):
            if name not in names:
                names.append(name)
    members = []
    for name in names:
        if name.startswith('_') or name in property_names:
            continue
        hint = hints.get(name, Any)
        if typing.get_origin(hint) is typing.ClassVar:
            continue
        members.append(Member(name=name, column=name, type=hint,
                              kind='field', settable=True))
    return tuple(members)


def _collect_properties(record_type: type) -> tuple[Member, ...]:
    found: dict[str, property] = {}
    for klass in reversed(record_type.__mro__):
        for name, value in vars(klass).items():
            if isinstance(value, property) and not name.startswith('_'):
                found[name] = value
    members = []
    for name, prop in found.items():
        hint = _type_hints(prop.fget).get('return', Any) if prop.fget else Any
        members.append(Member(name=name, column=name, type=hint,
                              kind='property', settable=prop.fset is not None))
    return tuple(members)


def schema_for(record_type: Any) -> RecordSchema:
    """Return the cached member table for a record type.

    The shape check runs before any member is inspected.
    """
    with _schema_cache_lock:
        try:
            return _schema_cache[record_type]
        except (KeyError, TypeError):
            pass
        check_shape(record_type)
        properties = _collect_properties(record_type)
        fields = _collect_fields(record_type, _type_hints(record_type),
                                 {m.name for m in properties})
        schema = RecordSchema(record_type, fields, properties)
        _schema_cache[record_type] = schema
    logger.debug(f'Built {schema!r}')
    return schema


def clear_schema_cache() -> None:
    """Forget all derived member tables."""
    with _schema_cache_lock:
        _schema_cache.clear()
