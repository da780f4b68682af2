"""
Consolidated type handling for procedure results and parameters.

This module provides:
- DBNull: the database-null marker used by tabular parameters
- normalize / coerce / coerce_strict: convert raw database values to the
  declared type of a record member
- Column: column metadata from cursor descriptions
- resolve_type: resolve database type codes to Python types
"""
import datetime
import decimal
import enum
import logging
import math
import types
import typing
import uuid
from typing import Any, Self

import dateutil.parser
import numpy as np
import pandas as pd
from procdb.exceptions import ConversionError
from psycopg.postgres import types as pg_types

logger = logging.getLogger(__name__)


class _DBNullType:
    """Database-null marker, distinct from the absence of a value.
    """

    _instance = None

    def __new__(cls) -> Self:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return 'DBNull'

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_DBNullType, ())


DBNull = _DBNullType()

NUMPY_SCALAR_TYPES = (np.floating, np.integer, np.unsignedinteger, np.bool_)


def is_null(value: Any) -> bool:
    """Check whether a raw value represents "no value".
    """
    if value is None or value is DBNull:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, np.floating) and np.isnan(value):
        return True
    if isinstance(value, np.datetime64) and np.isnat(value):
        return True
    if value is pd.NA or value is pd.NaT:
        return True
    return False


def normalize(value: Any) -> Any:
    """Replace database-null markers with None and unwrap NumPy scalars.
    """
    if is_null(value):
        return None
    if isinstance(value, NUMPY_SCALAR_TYPES):
        return value.item()
    if isinstance(value, np.datetime64):
        return pd.Timestamp(value).to_pydatetime()
    return value


def unwrap_optional(target: Any) -> tuple[Any, bool]:
    """Strip the optional wrapper (and Annotated) from a type annotation.

    Returns the underlying type and whether it was optional. Unions of more
    than one concrete type are returned unchanged.
    """
    if typing.get_origin(target) is typing.Annotated:
        target = typing.get_args(target)[0]
    origin = typing.get_origin(target)
    if origin is typing.Union or origin is types.UnionType:
        args = typing.get_args(target)
        concrete = [a for a in args if a is not type(None)]
        optional = len(concrete) < len(args)
        if len(concrete) == 1:
            return unwrap_optional(concrete[0])[0], optional
        return target, optional
    return target, False


# Conversions between compatible scalar representations

def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value.strip())
    if isinstance(value, decimal.Decimal):
        if value != value.to_integral_value():
            raise ValueError(f'{value!r} has a fractional part')
        return int(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f'{value!r} has a fractional part')
        return int(value)
    if isinstance(value, (int, bool)):
        return int(value)
    raise TypeError(f'cannot convert {type(value).__name__} to int')


def _to_float(value: Any) -> float:
    if isinstance(value, (datetime.date, datetime.time, bytes)):
        raise TypeError(f'cannot convert {type(value).__name__} to float')
    return float(value)


def _to_decimal(value: Any) -> decimal.Decimal:
    if isinstance(value, float):
        return decimal.Decimal(str(value))
    if isinstance(value, (int, str)):
        return decimal.Decimal(value.strip() if isinstance(value, str) else value)
    raise TypeError(f'cannot convert {type(value).__name__} to Decimal')


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {'true', '1'}:
            return True
        if lowered in {'false', '0'}:
            return False
        raise ValueError(f'{value!r} is not a boolean')
    if isinstance(value, (int, float, decimal.Decimal)):
        return bool(value)
    raise TypeError(f'cannot convert {type(value).__name__} to bool')


def _to_str(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode()
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    return str(value)


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode()
    if isinstance(value, uuid.UUID):
        return value.bytes
    raise TypeError(f'cannot convert {type(value).__name__} to bytes')


def _to_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, str):
        return dateutil.parser.isoparse(value).date()
    raise TypeError(f'cannot convert {type(value).__name__} to date')


def _to_datetime(value: Any) -> datetime.datetime:
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    if isinstance(value, str):
        return dateutil.parser.isoparse(value)
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    raise TypeError(f'cannot convert {type(value).__name__} to datetime')


def _to_time(value: Any) -> datetime.time:
    if isinstance(value, datetime.datetime):
        return value.time()
    if isinstance(value, str):
        return datetime.time.fromisoformat(value.strip())
    raise TypeError(f'cannot convert {type(value).__name__} to time')


def _to_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, (bytes, bytearray)):
        return uuid.UUID(bytes=bytes(value))
    return uuid.UUID(str(value))


_CONVERTERS: dict[type, typing.Callable[[Any], Any]] = {
    bool: _to_bool,
    int: _to_int,
    float: _to_float,
    decimal.Decimal: _to_decimal,
    str: _to_str,
    bytes: _to_bytes,
    datetime.datetime: _to_datetime,
    datetime.date: _to_date,
    datetime.time: _to_time,
    uuid.UUID: _to_uuid,
}


def _convert(value: Any, target: type) -> Any:
    """Convert a normalized, non-null value to a concrete class.
    """
    if type(value) is target:
        return value
    if isinstance(value, target) and not isinstance(value, bool) \
            and not (target is datetime.date and isinstance(value, datetime.datetime)):
        return value
    converter = _CONVERTERS.get(target)
    if converter is None and not issubclass(target, enum.Enum):
        base = next((fn for cls, fn in _CONVERTERS.items() if issubclass(target, cls)), None)
        if base is not None:
            # subclass of a scalar type, e.g. a str-based newtype class
            converter = lambda v: target(base(v))
    if converter is None:
        converter = target
    try:
        return converter(value)
    except (TypeError, ValueError, ArithmeticError, OverflowError) as err:
        raise ConversionError(
            f'Cannot convert {value!r} ({type(value).__name__}) to {target.__name__}: {err}'
        ) from err


def coerce(value: Any, target: Any) -> Any:
    """Normalize a raw value and convert it to the target member type.

    Null markers give None for every target. An optional wrapper is stripped
    before converting. Targets that are not classes (Any, unions, unresolved
    string annotations, generic aliases) receive the normalized value as is.
    """
    value = normalize(value)
    if value is None:
        return None
    target, _ = unwrap_optional(target)
    if target is Any or target is object or not isinstance(target, type):
        return value
    return _convert(value, target)


def coerce_strict(value: Any, target: Any) -> Any:
    """Convert a raw scalar value to the target type, verifying the result.
    """
    result = coerce(value, target)
    if result is None:
        return None
    underlying, _ = unwrap_optional(target)
    if underlying is Any or underlying is object or not isinstance(underlying, type):
        return result
    if not isinstance(result, underlying):
        raise ConversionError(
            f'Converted value {result!r} is not a {underlying.__name__}')
    return result


# Type Resolution - Database type codes -> Python types

_oid = lambda x: pg_types.get(x).oid

postgres_types: dict[int, type] = {}

for v in [_oid('"char"'), _oid('bpchar'), _oid('character varying'), _oid('character'),
          _oid('json'), _oid('name'), _oid('text'), _oid('varchar')]:
    postgres_types[v] = str

for v in [_oid('int2'), _oid('int4'), _oid('int8')]:
    postgres_types[v] = int

for v in [_oid('float4'), _oid('float8')]:
    postgres_types[v] = float

postgres_types[_oid('numeric')] = decimal.Decimal
postgres_types[_oid('date')] = datetime.date
postgres_types[_oid('uuid')] = uuid.UUID

for v in [_oid('time'), _oid('timetz')]:
    postgres_types[v] = datetime.time

for v in [_oid('timestamp'), _oid('timestamptz')]:
    postgres_types[v] = datetime.datetime

postgres_types[_oid('bool')] = bool
postgres_types[_oid('bytea')] = bytes


def resolve_type(dialect: str, type_code: Any) -> type | None:
    """Resolve a cursor description type code to a Python type.

    pyodbc reports Python classes directly; psycopg reports type OIDs.
    """
    if isinstance(type_code, type):
        return type_code
    if dialect == 'postgresql':
        return postgres_types.get(type_code)
    return None


# Column - Metadata from cursor descriptions

class Column:
    """Result or table column metadata."""

    def __init__(self,
                 name: str,
                 type_code: Any = None,
                 python_type: type | None = None,
                 display_size: int | None = None,
                 internal_size: int | None = None,
                 precision: int | None = None,
                 scale: int | None = None,
                 nullable: bool | None = None):
        self.name = name
        self.type_code = type_code
        self.python_type = python_type
        self.display_size = display_size
        self.internal_size = internal_size
        self.precision = precision
        self.scale = scale
        self.nullable = nullable

    @classmethod
    def from_cursor_description(cls, description_item: Any, dialect: str) -> Self:
        """Create a Column from a DB-API 2.0 cursor description item."""
        item = tuple(description_item) + (None,) * (7 - len(description_item))
        name, type_code, display_size, internal_size, precision, scale, nullable = item[:7]
        return cls(
            name=name,
            type_code=type_code,
            python_type=resolve_type(dialect, type_code),
            display_size=display_size,
            internal_size=internal_size,
            precision=precision,
            scale=scale,
            nullable=bool(nullable) if nullable is not None else None,
        )

    def __repr__(self) -> str:
        return (f'Column(name={self.name!r}, type_code={self.type_code!r}, '
                f'python_type={self.python_type.__name__ if self.python_type else None})')

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Column):
            return NotImplemented
        return (self.name, self.python_type) == (other.name, other.python_type)

    def __hash__(self) -> int:
        return hash((self.name, self.python_type))

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'type_code': self.type_code,
            'python_type': self.python_type.__name__ if self.python_type else None,
            'display_size': self.display_size,
            'internal_size': self.internal_size,
            'precision': self.precision,
            'scale': self.scale,
            'nullable': self.nullable
        }

    @staticmethod
    def get_names(columns: list[Self]) -> list[str]:
        return [col.name for col in columns]

    @staticmethod
    def get_types(columns: list[Self]) -> list[type | None]:
        return [col.python_type for col in columns]


def columns_from_cursor_description(cursor: Any, dialect: str) -> list[Column]:
    """Create Column objects from cursor description."""
    if cursor.description is None:
        return []
    return [Column.from_cursor_description(desc, dialect) for desc in cursor.description]
