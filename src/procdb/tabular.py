"""
Tabular structures passed as a single structured procedure parameter.

A Table is built from a collection of records:

    table = from_properties(users)
    executor.exec_non_query('ImportUsers', I('Users', table))

The column set comes from the member table of the record type and is fixed
for the whole collection. Null member values are stored as DBNull.
"""
import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any

import pandas as pd
import pyarrow as pa
from procdb.exceptions import TypeShapeError
from procdb.records import Member, schema_for
from procdb.types import Column, DBNull, unwrap_optional

logger = logging.getLogger(__name__)


def _empty_dataframe(columns: Sequence[Column]) -> pd.DataFrame:
    """Create empty DataFrame with column metadata."""
    df = pd.DataFrame(columns=Column.get_names(columns))
    df.attrs['column_types'] = {c.name: c.to_dict() for c in columns}
    return df


def pandas_numpy_data_loader(data: Sequence[Sequence[Any]], columns: Sequence[Column]) -> pd.DataFrame:
    """Standard pandas DataFrame loader using NumPy.

    Always returns a DataFrame, never None, with columns preserved for empty results.
    Includes type information in the DataFrame.attrs attribute.
    """
    if not data:
        return _empty_dataframe(columns)
    df = pd.DataFrame.from_records(list(data), columns=Column.get_names(columns))
    df.attrs['column_types'] = {c.name: c.to_dict() for c in columns}
    return df


def pandas_pyarrow_data_loader(data: Sequence[Sequence[Any]], columns: Sequence[Column]) -> pd.DataFrame:
    """PyArrow-based pandas DataFrame loader.
    """
    if not data:
        return _empty_dataframe(columns)
    names = Column.get_names(columns)
    arrays = [[row[i] for row in data] for i in range(len(names))]
    df = pa.table(arrays, names=names).to_pandas(types_mapper=pd.ArrowDtype)
    df.attrs['column_types'] = {c.name: c.to_dict() for c in columns}
    return df


class Table:
    """Named typed columns plus rows.
    """

    def __init__(self, columns: Sequence[Column] | None = None,
                 rows: Iterable[Sequence[Any]] | None = None) -> None:
        self.columns: list[Column] = list(columns or [])
        self.rows: list[tuple] = []
        for row in rows or []:
            self.add_row(row)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple]:
        return iter(self.rows)

    def __repr__(self) -> str:
        return f'Table(columns={self.names}, rows={len(self.rows)})'

    @property
    def names(self) -> list[str]:
        return Column.get_names(self.columns)

    def add_column(self, name: str, python_type: type | None = None) -> Column:
        """Append a column; only allowed while the table has no rows."""
        if self.rows:
            raise TypeShapeError('Cannot add a column to a table that already has rows')
        if name in self.names:
            raise ValueError(f'Duplicate column {name!r}')
        column = Column(name=name, python_type=python_type)
        self.columns.append(column)
        return column

    def add_row(self, values: Sequence[Any]) -> None:
        """Append a row; None values are stored as DBNull."""
        if len(values) != len(self.columns):
            raise TypeShapeError(
                f'Row has {len(values)} values, table has {len(self.columns)} columns')
        self.rows.append(tuple(DBNull if v is None else v for v in values))

    def value_rows(self) -> list[tuple]:
        """Rows with DBNull replaced by None, as drivers expect."""
        return [tuple(None if v is DBNull else v for v in row) for row in self.rows]

    def to_dicts(self) -> list[dict[str, Any]]:
        names = self.names
        return [dict(zip(names, row)) for row in self.value_rows()]

    def to_dataframe(self, data_loader: Callable[..., pd.DataFrame] = pandas_numpy_data_loader) -> pd.DataFrame:
        """Return a pandas DataFrame; column types go to DataFrame.attrs."""
        return data_loader(self.value_rows(), self.columns)


def _build(items: Iterable[Any], record_type: type | None, fields_only: bool) -> Table:
    if record_type is not None:
        schema_for(record_type)
    table = Table()
    members: tuple[Member, ...] = ()
    first_type = record_type
    exact = record_type is None
    for index, item in enumerate(items):
        if index == 0:
            first_type = first_type or type(item)
            schema = schema_for(first_type)
            members = schema.fields if fields_only else schema.members
            for member in members:
                column_type, _ = unwrap_optional(member.type)
                table.add_column(member.column,
                                 column_type if isinstance(column_type, type) else None)
        if (exact and type(item) is not first_type) or not isinstance(item, first_type):
            raise TypeShapeError(
                f'Item {index} is {type(item).__name__}, expected {first_type.__name__}: '
                'all items must share the column set of the first item')
        table.add_row([member.get(item) for member in members])
    if not table.rows:
        logger.debug('Built empty table: no rows and no columns')
    return table


def from_properties(items: Iterable[Any], record_type: type | None = None) -> Table:
    """Build a table from all readable members (fields and properties).

    When record_type is not given the type of the first item is used and every
    later item must be of exactly that type.
    """
    return _build(items, record_type, fields_only=False)


def from_fields(items: Iterable[Any], record_type: type | None = None) -> Table:
    """Build a table from fields only.
    """
    return _build(items, record_type, fields_only=True)
