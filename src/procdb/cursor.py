"""
Cursor-backed row streams and result set helpers.

A stream owns its cursor until the rows are exhausted, the stream is closed,
or it is garbage-collected. Failures while fetching or mapping close the
cursor before the error propagates. Implements iteration over DB-API 2.0
cursors (PEP-249), one row per fetch.
"""
import asyncio
import logging
import time
from collections.abc import Callable
from functools import wraps
from typing import Any, Generic, TypeVar

from procdb.types import Column, columns_from_cursor_description
from procdb.utils import call_driver, is_async_driver

logger = logging.getLogger(__name__)

T = TypeVar('T')

# close tasks of abandoned native async streams, kept alive until done
_pending_closes: set[asyncio.Task] = set()


def dumpsql(func):
    """Decorator for logging procedure calls and timing."""
    @wraps(func)
    def wrapper(self, cursor: Any, call: Any, *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{call.sql}\nargs: {call.args}')
        try:
            return func(self, cursor, call, *args, **kwargs)
        finally:
            elapsed = time.time() - start
            self.addcall(elapsed)
            logger.debug(f'Call time: {elapsed:.4f}s')
    return wrapper


def adumpsql(func):
    """Decorator for logging procedure calls and timing from coroutines."""
    @wraps(func)
    async def wrapper(self, cursor: Any, call: Any, *args: Any, **kwargs: Any):
        start = time.time()
        logger.debug(f'SQL:\n{call.sql}\nargs: {call.args}')
        try:
            return await func(self, cursor, call, *args, **kwargs)
        finally:
            elapsed = time.time() - start
            self.addcall(elapsed)
            logger.debug(f'Call time: {elapsed:.4f}s')
    return wrapper


def column_names(cursor: Any) -> list[str]:
    if cursor.description is None:
        return []
    return [item[0] for item in cursor.description]


def first_result_set(cursor: Any) -> bool:
    """Skip row-count-only results (SQL Server DML inside a procedure).

    Returns False when the batch produced no result set.
    """
    while cursor.description is None:
        if not cursor.nextset():
            return False
    return True


def final_row(cursor: Any, skip_current: bool = False) -> tuple[list[str], Any]:
    """Move to the last result set with columns and return (names, first row).

    Output parameter values come back in this row.
    """
    names, row = [], None
    if not skip_current and cursor.description is not None:
        names, row = column_names(cursor), cursor.fetchone()
    while cursor.nextset():
        if cursor.description is not None:
            names, row = column_names(cursor), cursor.fetchone()
    return names, row


def all_result_sets(cursor: Any) -> list[list[tuple]]:
    """Fetch every result set of the batch as a list of row tuples."""
    tables = []
    while True:
        if cursor.description is not None:
            tables.append([tuple(row) for row in cursor.fetchall()])
        if not cursor.nextset():
            break
    logger.debug(f'Fetched {len(tables)} result set(s)')
    return tables


class AsyncCursor:
    """Awaitable facade over a native async or a blocking DB-API cursor.
    """

    def __init__(self, cursor: Any) -> None:
        self.dbapi_cursor = cursor
        self.native = is_async_driver(cursor)

    @property
    def description(self) -> list[tuple] | None:
        return self.dbapi_cursor.description

    @property
    def rowcount(self) -> int:
        return self.dbapi_cursor.rowcount

    async def execute(self, sql: str, args: tuple = ()) -> Any:
        if args:
            return await call_driver(self.dbapi_cursor.execute, sql, args, native=self.native)
        return await call_driver(self.dbapi_cursor.execute, sql, native=self.native)

    async def fetchone(self) -> tuple | None:
        return await call_driver(self.dbapi_cursor.fetchone, native=self.native)

    async def fetchall(self) -> list[tuple]:
        return await call_driver(self.dbapi_cursor.fetchall, native=self.native)

    async def nextset(self) -> bool | None:
        return await call_driver(self.dbapi_cursor.nextset, native=self.native)

    async def close(self) -> None:
        await call_driver(self.dbapi_cursor.close, native=self.native)

    async def first_result_set(self) -> bool:
        while self.description is None:
            if not await self.nextset():
                return False
        return True

    async def final_row(self, skip_current: bool = False) -> tuple[list[str], Any]:
        names, row = [], None
        if not skip_current and self.description is not None:
            names, row = column_names(self), await self.fetchone()
        while await self.nextset():
            if self.description is not None:
                names, row = column_names(self), await self.fetchone()
        return names, row

    async def all_result_sets(self) -> list[list[tuple]]:
        tables = []
        while True:
            if self.description is not None:
                tables.append([tuple(row) for row in await self.fetchall()])
            if not await self.nextset():
                break
        logger.debug(f'Fetched {len(tables)} result set(s)')
        return tables


class _StreamBase(Generic[T]):

    def __init__(self, cursor: Any, dialect: str,
                 mapper: Callable[[tuple], T] | None = None,
                 on_complete: Callable[[Any], Any] | None = None) -> None:
        self._cursor = cursor
        self._mapper = mapper
        self._on_complete = on_complete
        self.columns: list[Column] = []
        if cursor is not None:
            self.columns = columns_from_cursor_description(cursor, dialect)
        # no cursor: the call produced no result set
        self.closed = cursor is None

    @property
    def names(self) -> list[str]:
        return Column.get_names(self.columns)

    def _map(self, row: Any) -> T:
        if self._mapper is None:
            return tuple(row)
        return self._mapper(tuple(row))

    def __repr__(self) -> str:
        state = 'closed' if self.closed else 'open'
        return f'{type(self).__name__}(columns={self.names}, {state})'


class RowStream(_StreamBase[T]):
    """Lazy rows of one result set, mapped to records when a mapper is given.

    Examples
        with executor.query_records(User, 'GetUsers') as users:
            for user in users:
                ...
    """

    def __iter__(self) -> 'RowStream[T]':
        return self

    def __next__(self) -> T:
        if self.closed:
            raise StopIteration
        try:
            row = self._cursor.fetchone()
            if row is not None:
                return self._map(row)
            if self._on_complete is not None:
                self._on_complete(self._cursor)
        except BaseException:
            self.close()
            raise
        self.close()
        raise StopIteration

    def __enter__(self) -> 'RowStream[T]':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __del__(self) -> None:
        if not getattr(self, 'closed', True):
            self.close()

    def fetchall(self) -> list[T]:
        """Materialize the remaining rows."""
        return list(self)

    def close(self) -> None:
        """Release the cursor; further iteration yields nothing."""
        if self.closed:
            return
        self.closed = True
        cursor, self._cursor = self._cursor, None
        cursor.close()
        logger.debug('Closed row stream')


class AsyncRowStream(_StreamBase[T]):
    """Async counterpart of RowStream over an AsyncCursor.

    Examples
        async with await executor.query_records(User, 'GetUsers') as users:
            async for user in users:
                ...
    """

    def __aiter__(self) -> 'AsyncRowStream[T]':
        return self

    async def __anext__(self) -> T:
        if self.closed:
            raise StopAsyncIteration
        try:
            row = await self._cursor.fetchone()
            if row is not None:
                return self._map(row)
            if self._on_complete is not None:
                await self._on_complete(self._cursor)
        except BaseException:
            await self.aclose()
            raise
        await self.aclose()
        raise StopAsyncIteration

    async def __aenter__(self) -> 'AsyncRowStream[T]':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def __del__(self) -> None:
        if getattr(self, 'closed', True):
            return
        self.closed = True
        cursor, self._cursor = self._cursor, None
        if not cursor.native:
            cursor.dbapi_cursor.close()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning('Async row stream collected outside the event loop, cursor left '
                           'to the driver; use "async with" to release it')
            return
        task = loop.create_task(cursor.close())
        _pending_closes.add(task)
        task.add_done_callback(_pending_closes.discard)

    async def fetchall(self) -> list[T]:
        """Materialize the remaining rows."""
        return [row async for row in self]

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        cursor, self._cursor = self._cursor, None
        await cursor.close()
        logger.debug('Closed async row stream')
