import datetime
import decimal
import math
import uuid
from typing import Annotated, Any, Optional

import numpy as np
import pandas as pd
import pytest
from procdb.exceptions import ConversionError
from procdb.types import Column, DBNull, coerce, coerce_strict, is_null
from procdb.types import normalize, postgres_types, resolve_type
from procdb.types import unwrap_optional

from tests.fixtures.records import Status


class TestNormalize:
    """Database-null markers become None on every path"""

    @pytest.mark.parametrize('value', [
        None, DBNull, float('nan'), np.nan, np.float64('nan'),
        np.datetime64('NaT'), pd.NA, pd.NaT,
    ])
    def test_null_markers(self, value):
        assert is_null(value)
        assert normalize(value) is None

    def test_numpy_scalars_unwrap(self):
        assert normalize(np.int64(5)) == 5
        assert type(normalize(np.int64(5))) is int
        assert type(normalize(np.float32(1.5))) is float
        assert normalize(np.bool_(True)) is True

    def test_datetime64(self):
        value = normalize(np.datetime64('2024-01-02T03:04:05'))
        assert value == datetime.datetime(2024, 1, 2, 3, 4, 5)

    def test_regular_values_unchanged(self):
        assert normalize('abc') == 'abc'
        assert normalize(0) == 0
        assert normalize('') == ''

    def test_dbnull_singleton(self):
        assert DBNull is type(DBNull)()
        assert not DBNull
        assert repr(DBNull) == 'DBNull'


class TestUnwrapOptional:

    def test_optional(self):
        assert unwrap_optional(Optional[int]) == (int, True)
        assert unwrap_optional(int | None) == (int, True)

    def test_plain(self):
        assert unwrap_optional(str) == (str, False)

    def test_annotated(self):
        assert unwrap_optional(Annotated[int | None, 'id']) == (int, True)

    def test_wide_union_unchanged(self):
        target, optional = unwrap_optional(int | str | None)
        assert optional is True
        assert target == (int | str | None)


class TestCoerce:

    def test_null_gives_none_for_value_types(self):
        """No value-type defaults: a null is None even for int targets"""
        assert coerce(DBNull, int) is None
        assert coerce(None, float) is None
        assert coerce(float('nan'), int | None) is None

    def test_optional_target_uses_underlying_type(self):
        assert coerce('42', int | None) == 42
        assert coerce(decimal.Decimal('3'), Optional[int]) == 3

    @pytest.mark.parametrize(('value', 'target', 'expected'), [
        (7, float, 7.0),
        (7.0, int, 7),
        (decimal.Decimal('12.00'), int, 12),
        (' 12 ', int, 12),
        ('1.25', decimal.Decimal, decimal.Decimal('1.25')),
        (0.1, decimal.Decimal, decimal.Decimal('0.1')),
        ('true', bool, True),
        ('0', bool, False),
        (1, bool, True),
        (5, str, '5'),
        (b'abc', str, 'abc'),
        ('abc', bytes, b'abc'),
        ('2024-03-01', datetime.date, datetime.date(2024, 3, 1)),
        (datetime.datetime(2024, 3, 1, 10, 30), datetime.date, datetime.date(2024, 3, 1)),
        ('2024-03-01T10:30:00', datetime.datetime, datetime.datetime(2024, 3, 1, 10, 30)),
        (datetime.date(2024, 3, 1), datetime.datetime, datetime.datetime(2024, 3, 1)),
        ('10:30:00', datetime.time, datetime.time(10, 30)),
        ('active', Status, Status.ACTIVE),
    ])
    def test_compatible_conversions(self, value, target, expected):
        result = coerce(value, target)
        assert result == expected
        assert type(result) is type(expected)

    def test_uuid(self):
        value = uuid.uuid4()
        assert coerce(str(value), uuid.UUID) == value
        assert coerce(value.bytes, uuid.UUID) == value

    def test_same_type_passes_through(self):
        value = datetime.datetime(2024, 1, 1, 12)
        assert coerce(value, datetime.datetime) is value

    @pytest.mark.parametrize(('value', 'target'), [
        (1.5, int),
        (decimal.Decimal('2.5'), int),
        ('abc', int),
        ('maybe', bool),
        ('not-a-date', datetime.date),
        (datetime.date(2024, 1, 1), float),
        ('unknown', Status),
    ])
    def test_incompatible_conversions_raise(self, value, target):
        with pytest.raises(ConversionError):
            coerce(value, target)

    def test_conversion_error_is_value_error(self):
        with pytest.raises(ValueError):
            coerce('x', int)

    def test_untyped_targets_pass_through(self):
        assert coerce('x', Any) == 'x'
        assert coerce(3, object) == 3
        assert coerce('x', 'SomeForwardRef') == 'x'
        assert coerce(np.int64(3), Any) == 3

    def test_str_subclass_target(self):
        class Code(str):
            pass

        result = coerce(12, Code)
        assert isinstance(result, Code)
        assert result == '12'


class TestCoerceStrict:

    def test_converts(self):
        assert coerce_strict(np.int64(3), int) == 3
        assert coerce_strict('3', int | None) == 3

    def test_null(self):
        assert coerce_strict(DBNull, int) is None

    def test_result_type_checked(self):
        class Loose:
            def __new__(cls, value):
                return value

        with pytest.raises(ConversionError):
            coerce_strict(5, Loose)

    def test_any_target(self):
        assert coerce_strict(5, Any) == 5
        assert coerce_strict('x', Optional[Any]) == 'x'
        assert coerce_strict(np.int64(5), object) == 5
        assert coerce_strict('x', 'SomeForwardRef') == 'x'


class TestColumn:

    def test_from_description_with_python_type(self):
        column = Column.from_cursor_description(('Name', str, None, 50, 50, 0, True), 'mssql')
        assert column.name == 'Name'
        assert column.python_type is str
        assert column.internal_size == 50
        assert column.nullable is True

    def test_from_short_description(self):
        column = Column.from_cursor_description(('Id', None), 'mssql')
        assert column.python_type is None
        assert column.nullable is None

    def test_postgres_oid(self):
        oid = next(oid for oid, python_type in postgres_types.items() if python_type is int)
        assert resolve_type('postgresql', oid) is int
        assert resolve_type('postgresql', -1) is None

    def test_names_and_types(self):
        columns = [Column('id', python_type=int), Column('name', python_type=str)]
        assert Column.get_names(columns) == ['id', 'name']
        assert Column.get_types(columns) == [int, str]
        assert columns[0].to_dict()['python_type'] == 'int'

    def test_equality(self):
        assert Column('id', 23, int) == Column('id', 20, int)
        assert Column('id', python_type=int) != Column('id', python_type=str)
        assert len({Column('id', python_type=int), Column('id', python_type=int)}) == 1

    def test_nan_float_is_null(self):
        assert math.isnan(float('nan'))
        assert coerce(float('nan'), float) is None
