"""
Row mapping between raw result rows and record types.

Three strategies are supported:

- ``name``: each column is matched to a member (field or property) of the same
  column name; unmatched columns are ignored
- ``fields``: as ``name`` but only fields are considered
- ``position``: values are assigned to fields in declaration order, or to
  properties when the field count does not match

For streams, ``compile_mapper`` resolves the column to member binding once per
result set and returns a function applied to each row.
"""
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, TypeVar

from procdb.exceptions import TypeShapeError
from procdb.records import Member, schema_for
from procdb.types import coerce, normalize

logger = logging.getLogger(__name__)

T = TypeVar('T')

MAPPING_STRATEGIES = ('name', 'fields', 'position')


def _split_row(row: Any, column_names: Sequence[str] | None) -> tuple[Sequence[Any], Sequence[str]]:
    """Return (values, names) for a tuple row with names, or a mapping row."""
    if isinstance(row, Mapping):
        if column_names is None:
            return list(row.values()), list(row.keys())
        return [row[name] for name in column_names], column_names
    if column_names is None:
        raise ValueError('column_names are required for sequence rows')
    if len(row) != len(column_names):
        raise ValueError(f'Row has {len(row)} values but {len(column_names)} column names')
    return row, column_names


def _bind_by_name(record_type: type, column_names: Sequence[str],
                  fields_only: bool) -> list[tuple[int, Member]]:
    """Resolve column positions to members, failing on matched read-only members."""
    schema = schema_for(record_type)
    plan = []
    for index, name in enumerate(column_names):
        member = schema.member(name, fields_only=fields_only)
        if member is None:
            continue
        if not member.settable:
            raise TypeShapeError(
                f'No setter defined for {name} on {record_type.__name__}')
        plan.append((index, member))
    return plan


def _bind_by_position(record_type: type, count: int) -> list[tuple[int, Member]]:
    """Choose fields, then properties, whose count equals the value count."""
    schema = schema_for(record_type)
    if len(schema.fields) == count:
        members = schema.fields
    elif len(schema.properties) == count:
        members = schema.properties
    else:
        raise TypeShapeError(
            f'{record_type.__name__} has {len(schema.fields)} fields and '
            f'{len(schema.properties)} properties, cannot map {count} values by position')
    for member in members:
        if not member.settable:
            raise TypeShapeError(
                f'No setter defined for {member.name} on {record_type.__name__}')
    return list(enumerate(members))


def _populate(record_type: type, plan: list[tuple[int, Member]], values: Sequence[Any]) -> Any:
    record = schema_for(record_type).new()
    for index, member in plan:
        member.set(record, coerce(values[index], member.type))
    return record


def compile_mapper(record_type: type[T], column_names: Sequence[str],
                   by: str = 'name') -> Callable[[Sequence[Any]], T]:
    """Build a row -> record function for one result set.

    The shape of the record type and the column binding are checked here,
    before any row is read.
    """
    if by == 'name':
        plan = _bind_by_name(record_type, column_names, fields_only=False)
    elif by == 'fields':
        plan = _bind_by_name(record_type, column_names, fields_only=True)
    elif by == 'position':
        plan = _bind_by_position(record_type, len(column_names))
    else:
        raise ValueError(f'Unknown mapping strategy {by!r}, expected one of {MAPPING_STRATEGIES}')
    logger.debug(f'Compiled {by} mapper for {record_type.__name__}: '
                 f'{[(column_names[i], m.name) for i, m in plan]}')

    def mapper(row: Sequence[Any]) -> T:
        if len(row) != len(column_names):
            raise TypeShapeError(
                f'Row has {len(row)} values, result set has {len(column_names)} columns')
        return _populate(record_type, plan, row)

    return mapper


def map_by_name(record_type: type[T], row: Any,
                column_names: Sequence[str] | None = None) -> T | None:
    """Populate a new record from matching fields and properties.
    """
    schema_for(record_type)
    if row is None:
        return None
    values, names = _split_row(row, column_names)
    return _populate(record_type, _bind_by_name(record_type, names, False), values)


def map_by_fields(record_type: type[T], row: Any,
                  column_names: Sequence[str] | None = None) -> T | None:
    """Populate a new record from matching fields only.
    """
    schema_for(record_type)
    if row is None:
        return None
    values, names = _split_row(row, column_names)
    return _populate(record_type, _bind_by_name(record_type, names, True), values)


def map_positional(record_type: type[T], values: Sequence[Any] | None) -> T | None:
    """Populate a new record from values in member declaration order.

    The record must have exactly as many fields, or else properties, as there
    are values.
    """
    schema_for(record_type)
    if values is None:
        return None
    return _populate(record_type, _bind_by_position(record_type, len(values)), values)


def as_records(record_type: type[T], rows: Iterable[Sequence[Any]]) -> list[T]:
    """Convert a table of raw rows to records by position."""
    return [map_positional(record_type, row) for row in rows]


def as_dict(rows: Iterable[Sequence[Any]], value_type: Any = None) -> dict[Any, Any]:
    """Convert a table of raw rows to a dictionary keyed by the first column.

    Only the first two columns are used, further columns are ignored.
    """
    result: dict[Any, Any] = {}
    for row in rows:
        if len(row) < 2:
            raise ValueError(f'Expected at least two columns, got {len(row)}')
        key = normalize(row[0])
        if key in result:
            raise ValueError(f'Duplicate key {key!r}')
        result[key] = coerce(row[1], value_type) if value_type is not None else normalize(row[1])
    return result
