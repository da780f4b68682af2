"""
Stored procedure access with typed record mapping for PostgreSQL and SQL Server.

All procedure operations can be called either as:
- Module functions: procdb.execute(executor, procedure, *parameters)
- Executor methods: executor.exec_non_query(procedure, *parameters)

The module functions are facades over the blocking executor.
"""
__version__ = '0.1.0'

from typing import Any

from procdb.connection import ConnectionState, connect, connect_async
from procdb.connection import dispose_all_engines
from procdb.cursor import AsyncRowStream, RowStream
from procdb.exceptions import CommandExecutionError, ConnectionClosedError
from procdb.exceptions import ConnectionFailure, ConversionError, DatabaseError
from procdb.exceptions import IntegrityError, TransactionStateError
from procdb.exceptions import TypeShapeError, is_retryable_error
from procdb.executor import AsyncProcedureExecutor, ProcedureExecutor
from procdb.mapping import as_dict, as_records, compile_mapper, map_by_fields
from procdb.mapping import map_by_name, map_positional
from procdb.options import DatabaseOptions
from procdb.parameters import IO, Direction, I, O, Parameter
from procdb.records import RecordSchema, schema_for
from procdb.source import DbSource, ProcedureSource
from procdb.tabular import Table, from_fields, from_properties
from procdb.types import DBNull, coerce, coerce_strict, normalize


def execute(executor: ProcedureExecutor, procedure: str, *parameters: Any) -> int:
    """Run a procedure and return the affected row count.
    """
    return executor.exec_non_query(procedure, *parameters)


def select(executor: ProcedureExecutor, procedure: str, *parameters: Any) -> list[tuple]:
    """Run a procedure and return the rows of its first result set.
    """
    with executor.query_rows(procedure, *parameters) as rows:
        return rows.fetchall()


def select_records(executor: ProcedureExecutor, record_type: type, procedure: str,
                   *parameters: Any, by: str = 'name') -> list[Any]:
    """Run a procedure and return the first result set as records.
    """
    with executor.query_records(record_type, procedure, *parameters, by=by) as records:
        return records.fetchall()


def select_record_or_none(executor: ProcedureExecutor, record_type: type, procedure: str,
                          *parameters: Any, by: str = 'name') -> Any | None:
    """Run a procedure and return the first row as a record or None if no rows found.
    """
    with executor.query_records(record_type, procedure, *parameters, by=by) as records:
        return next(records, None)


def select_scalar_or_none(executor: ProcedureExecutor, value_type: type, procedure: str,
                          *parameters: Any) -> Any | None:
    """Run a procedure and return the first column of the first row or None.
    """
    with executor.query_rows(procedure, *parameters) as rows:
        row = next(rows, None)
    if not row:
        return None
    return coerce_strict(row[0], value_type)


def select_data(executor: ProcedureExecutor, procedure: str, *parameters: Any) -> list[list[tuple]]:
    """Run a procedure and return every result set.
    """
    return executor.query_data(procedure, *parameters)


def transaction(executor: ProcedureExecutor):
    """Context manager committing on success and rolling back on error.
    """
    return executor.transaction()
