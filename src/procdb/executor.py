"""
Stored procedure executors.

An executor owns one connection handle and at most one transaction. The
connection is opened on first use and every command goes through the dialect
strategy, which renders the call and applies the command timeout.

    executor = connect(options)
    count = executor.exec_non_query('DeactivateUser', I('Id', 7))
    with executor.query_records(User, 'GetUser', I('Id', 7)) as users:
        user = next(users, None)

Output and input/output parameter values are written back to the Parameter
objects after the call, or after the stream is exhausted for row-returning
calls.
"""
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from functools import partial
from typing import Any, Self, TypeVar

from procdb.connection import AsyncConnectionHandle, ConnectionHandle
from procdb.connection import ConnectionState
from procdb.cursor import AsyncCursor, AsyncRowStream, RowStream, adumpsql
from procdb.cursor import all_result_sets, column_names, dumpsql, final_row
from procdb.cursor import first_result_set
from procdb.exceptions import TransactionStateError
from procdb.mapping import compile_mapper
from procdb.parameters import as_parameters
from procdb.records import schema_for
from procdb.strategy import DatabaseStrategy, ProcedureCall, get_strategy
from procdb.transaction import AsyncTransaction, Transaction
from procdb.utils import call_driver, get_dialect_name

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_TIMEOUT = 300


class _ProcedureBase:
    """Statistics, timeout and call rendering shared by both executors.
    """

    def __init__(self, handle: Any, strategy: DatabaseStrategy,
                 timeout: int = DEFAULT_TIMEOUT) -> None:
        self.handle = handle
        self.strategy = strategy
        self._transaction: Any = None
        self.timeout = timeout
        self._applied_timeout: int | None = None
        self.calls = 0
        self.time = 0

    def __repr__(self) -> str:
        return (f'{type(self).__name__}(dialect={self.dialect!r}, '
                f'state={self.handle.state.value}, timeout={self.timeout})')

    @property
    def dialect(self) -> str:
        return self.strategy.dialect_name

    @property
    def timeout(self) -> int:
        """Command timeout in seconds applied to every call, 0 disables it."""
        return self._timeout

    @timeout.setter
    def timeout(self, value: int) -> None:
        if value is None or value < 0:
            raise ValueError('timeout must be a non-negative number of seconds')
        self._timeout = int(value)

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def addcall(self, elapsed: float) -> None:
        """Track execution statistics
        """
        self.time += elapsed
        self.calls += 1

    def _build(self, procedure: str, parameters: tuple[Any, ...],
               returns_rows: bool) -> ProcedureCall:
        return self.strategy.build_call(procedure, as_parameters(parameters),
                                        self._timeout, returns_rows)

    def _apply_trailing_outputs(self, call: ProcedureCall, table: list[tuple]) -> None:
        """Output values arrive as the last result set of the batch, one column each."""
        self.strategy.apply_outputs(call, [p.name for p in call.outputs],
                                    table[0] if table else None)

    def _take_transaction(self) -> Any:
        """Clear the transaction reference and return the transaction."""
        if self._transaction is None:
            raise TransactionStateError('No active transaction')
        transaction, self._transaction = self._transaction, None
        return transaction

    def _log_stats(self) -> None:
        logger.debug(f'Executor closed: {self.calls} calls in {self.time:.2f}s '
                     f'(avg: {self.time/max(1, self.calls):.3f}s per call)')


class ProcedureExecutor(_ProcedureBase):
    """Blocking stored procedure executor.

    Examples
        with connect(options) as executor:
            with executor.transaction():
                executor.exec_non_query('DebitAccount', I('Id', 1), I('Amount', 10))
                executor.exec_non_query('CreditAccount', I('Id', 2), I('Amount', 10))
    """

    def __init__(self, handle: ConnectionHandle, strategy: DatabaseStrategy,
                 timeout: int = DEFAULT_TIMEOUT) -> None:
        super().__init__(handle, strategy, timeout)

    @classmethod
    def from_connection(cls, connection: Any, dialect: str | None = None,
                        timeout: int = DEFAULT_TIMEOUT) -> Self:
        """Wrap an existing SQLAlchemy or DB-API connection.

        The executor takes ownership and closes the connection on close().
        """
        dialect = dialect or get_dialect_name(connection)
        handle = ConnectionHandle(lambda: connection, dialect)
        return cls(handle, get_strategy(dialect), timeout)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        self.close()

    def _open(self) -> Any:
        if self.handle.state is ConnectionState.UNOPENED:
            raw_conn = self.handle.open()
            self.strategy.configure_connection(raw_conn)
            return raw_conn
        return self.handle.open()

    def _cursor(self) -> Any:
        raw_conn = self._open()
        cursor = raw_conn.cursor()
        if self._applied_timeout != self._timeout:
            try:
                statement = self.strategy.prepare_timeout(raw_conn, self._timeout)
                if statement:
                    cursor.execute(statement)
            except BaseException:
                cursor.close()
                raise
            self._applied_timeout = self._timeout
        return cursor

    @dumpsql
    def _execute(self, cursor: Any, call: ProcedureCall) -> None:
        if call.args:
            cursor.execute(call.sql, call.args)
        else:
            cursor.execute(call.sql)

    def _read_outputs(self, call: ProcedureCall, cursor: Any) -> None:
        self.strategy.apply_outputs(call, *final_row(cursor, skip_current=True))

    def exec_non_query(self, procedure: str, *parameters: Any) -> int:
        """Run a procedure and return the affected row count.

        SQL Server reports the rows touched by the procedure. PostgreSQL CALL
        carries no count and returns -1.
        """
        call = self._build(procedure, parameters, returns_rows=False)
        cursor = self._cursor()
        try:
            self._execute(cursor, call)
            rowcount = cursor.rowcount
            if call.outputs:
                self.strategy.apply_outputs(call, *final_row(cursor))
        finally:
            cursor.close()
        logger.debug(f'{procedure} affected {rowcount} rows')
        return rowcount

    def _query(self, procedure: str, parameters: tuple[Any, ...],
               record_type: type | None, by: str) -> RowStream:
        if record_type is not None:
            schema_for(record_type)
        call = self._build(procedure, parameters, returns_rows=True)
        cursor = self._cursor()
        try:
            self._execute(cursor, call)
            if not first_result_set(cursor):
                cursor.close()
                return RowStream(None, self.dialect)
            mapper = None
            if record_type is not None:
                mapper = compile_mapper(record_type, column_names(cursor), by)
        except BaseException:
            cursor.close()
            raise

        on_complete = partial(self._read_outputs, call) if call.outputs else None
        return RowStream(cursor, self.dialect, mapper, on_complete)

    def query_rows(self, procedure: str, *parameters: Any) -> RowStream[tuple]:
        """Run a procedure and stream its first result set as raw tuples."""
        return self._query(procedure, parameters, None, 'name')

    def query_records(self, record_type: type[T], procedure: str, *parameters: Any,
                      by: str = 'name') -> RowStream[T]:
        """Run a procedure and stream its first result set as records.

        Args:
            record_type: Default-constructible class with settable members
            procedure: Stored procedure name
            parameters: Parameter objects or bare positional values
            by: Mapping strategy, one of 'name', 'fields', 'position'

        Returns
            RowStream mapping each row to a new record
        """
        return self._query(procedure, parameters, record_type, by)

    def query_data(self, procedure: str, *parameters: Any) -> list[list[tuple]]:
        """Run a procedure and fetch every result set as raw rows."""
        call = self._build(procedure, parameters, returns_rows=True)
        cursor = self._cursor()
        try:
            self._execute(cursor, call)
            tables = all_result_sets(cursor)
        finally:
            cursor.close()
        if call.outputs and tables:
            self._apply_trailing_outputs(call, tables.pop())
        return tables

    def begin_transaction(self) -> None:
        """Start a transaction; commands run in it until commit or rollback."""
        if self._transaction is not None:
            raise TransactionStateError('A transaction is already active')
        transaction = Transaction(self._open(), self.strategy)
        transaction.begin()
        self._transaction = transaction

    def commit_transaction(self) -> None:
        self._take_transaction().commit()

    def rollback_transaction(self) -> None:
        # session settings made inside the transaction are undone too
        self._applied_timeout = None
        self._take_transaction().rollback()

    @contextmanager
    def transaction(self) -> Iterator[Self]:
        """Commit on success, roll back on error."""
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            if self._transaction is not None:
                self.rollback_transaction()
            raise
        if self._transaction is not None:
            self.commit_transaction()

    def close(self) -> None:
        """Roll back an uncommitted transaction and close the connection.
        """
        if self.handle.state is ConnectionState.CLOSED:
            return
        try:
            if self._transaction is not None:
                self.rollback_transaction()
        finally:
            self.handle.close()
            self._log_stats()


class AsyncProcedureExecutor(_ProcedureBase):
    """Asyncio stored procedure executor.

    The same operations as ProcedureExecutor as coroutines. Native async
    drivers are awaited, blocking drivers run in worker threads.

    Examples
        async with connect_async(options) as executor:
            async with await executor.query_records(User, 'GetUsers') as users:
                async for user in users:
                    ...
    """

    def __init__(self, handle: AsyncConnectionHandle, strategy: DatabaseStrategy,
                 timeout: int = DEFAULT_TIMEOUT) -> None:
        super().__init__(handle, strategy, timeout)

    @classmethod
    def from_connection(cls, connection: Any, dialect: str | None = None,
                        timeout: int = DEFAULT_TIMEOUT) -> Self:
        """Wrap an existing async or blocking DB-API connection."""
        dialect = dialect or get_dialect_name(connection)

        async def connector():
            return connection

        return cls(AsyncConnectionHandle(connector, dialect), get_strategy(dialect), timeout)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None,
                        exc_tb: Any | None) -> None:
        await self.close()

    async def _open(self) -> Any:
        if self.handle.state is ConnectionState.UNOPENED:
            raw_conn = await self.handle.open()
            await self.strategy.configure_connection_async(raw_conn)
            return raw_conn
        return await self.handle.open()

    async def _cursor(self) -> AsyncCursor:
        raw_conn = await self._open()
        cursor = AsyncCursor(await call_driver(raw_conn.cursor, native=self.handle.native))
        if self._applied_timeout != self._timeout:
            try:
                statement = self.strategy.prepare_timeout(raw_conn, self._timeout)
                if statement:
                    await cursor.execute(statement)
            except BaseException:
                await cursor.close()
                raise
            self._applied_timeout = self._timeout
        return cursor

    @adumpsql
    async def _execute(self, cursor: AsyncCursor, call: ProcedureCall) -> None:
        await cursor.execute(call.sql, call.args)

    async def _read_outputs(self, call: ProcedureCall, cursor: AsyncCursor) -> None:
        self.strategy.apply_outputs(call, *await cursor.final_row(skip_current=True))

    async def exec_non_query(self, procedure: str, *parameters: Any) -> int:
        """Run a procedure and return the affected row count, -1 for PostgreSQL CALL."""
        call = self._build(procedure, parameters, returns_rows=False)
        cursor = await self._cursor()
        try:
            await self._execute(cursor, call)
            rowcount = cursor.rowcount
            if call.outputs:
                self.strategy.apply_outputs(call, *await cursor.final_row())
        finally:
            await cursor.close()
        logger.debug(f'{procedure} affected {rowcount} rows')
        return rowcount

    async def _query(self, procedure: str, parameters: tuple[Any, ...],
                     record_type: type | None, by: str) -> AsyncRowStream:
        if record_type is not None:
            schema_for(record_type)
        call = self._build(procedure, parameters, returns_rows=True)
        cursor = await self._cursor()
        try:
            await self._execute(cursor, call)
            if not await cursor.first_result_set():
                await cursor.close()
                return AsyncRowStream(None, self.dialect)
            mapper = None
            if record_type is not None:
                mapper = compile_mapper(record_type, column_names(cursor), by)
        except BaseException:
            await cursor.close()
            raise

        on_complete = partial(self._read_outputs, call) if call.outputs else None
        return AsyncRowStream(cursor, self.dialect, mapper, on_complete)

    async def query_rows(self, procedure: str, *parameters: Any) -> AsyncRowStream[tuple]:
        """Run a procedure and stream its first result set as raw tuples."""
        return await self._query(procedure, parameters, None, 'name')

    async def query_records(self, record_type: type[T], procedure: str, *parameters: Any,
                            by: str = 'name') -> AsyncRowStream[T]:
        """Run a procedure and stream its first result set as records."""
        return await self._query(procedure, parameters, record_type, by)

    async def query_data(self, procedure: str, *parameters: Any) -> list[list[tuple]]:
        """Run a procedure and fetch every result set as raw rows."""
        call = self._build(procedure, parameters, returns_rows=True)
        cursor = await self._cursor()
        try:
            await self._execute(cursor, call)
            tables = await cursor.all_result_sets()
        finally:
            await cursor.close()
        if call.outputs and tables:
            self._apply_trailing_outputs(call, tables.pop())
        return tables

    async def begin_transaction(self) -> None:
        if self._transaction is not None:
            raise TransactionStateError('A transaction is already active')
        transaction = AsyncTransaction(await self._open())
        await transaction.begin()
        self._transaction = transaction

    async def commit_transaction(self) -> None:
        await self._take_transaction().commit()

    async def rollback_transaction(self) -> None:
        self._applied_timeout = None
        await self._take_transaction().rollback()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Self]:
        """Commit on success, roll back on error."""
        await self.begin_transaction()
        try:
            yield self
        except BaseException:
            if self._transaction is not None:
                await self.rollback_transaction()
            raise
        if self._transaction is not None:
            await self.commit_transaction()

    async def close(self) -> None:
        if self.handle.state is ConnectionState.CLOSED:
            return
        try:
            if self._transaction is not None:
                await self.rollback_transaction()
        finally:
            await self.handle.close()
            self._log_stats()
