"""Low-level connection utilities with no internal dependencies.

These utilities work with any connection type (SQLAlchemy connections, raw
DB-API connections, async psycopg connections) and import nothing from other
procdb modules, making them safe to import anywhere.
"""
import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


def get_dialect_name(obj: Any) -> str:
    """Get dialect name for a database connection or engine.
    """
    if hasattr(obj, 'dialect'):
        dialect = obj.dialect
        if isinstance(dialect, str):
            return dialect.lower()
        return str(dialect.name).lower()

    if hasattr(obj, 'engine') and hasattr(obj.engine, 'dialect'):
        return str(obj.engine.dialect.name).lower()

    type_name = f'{type(obj).__module__}.{type(obj).__name__}'
    if 'psycopg' in type_name:
        return 'postgresql'
    if 'pyodbc' in type_name:
        return 'mssql'

    raise AttributeError(f'Cannot determine dialect for {type(obj)}')


def get_raw_connection(connection: Any) -> Any:
    """Extract the raw DBAPI connection from a SQLAlchemy wrapper."""
    raw_conn = connection
    if hasattr(raw_conn, 'sa_connection'):
        raw_conn = raw_conn.sa_connection
    if hasattr(raw_conn, 'engine') and hasattr(raw_conn, 'connection'):
        raw_conn = raw_conn.connection
    if hasattr(raw_conn, 'driver_connection'):
        raw_conn = raw_conn.driver_connection
    return raw_conn


def is_async_driver(obj: Any) -> bool:
    """True for native async connections and cursors (psycopg AsyncConnection)."""
    for name in ('execute', 'commit'):
        method = getattr(obj, name, None)
        if method is not None:
            return inspect.iscoroutinefunction(method)
    return False


async def call_driver(func: Callable[..., Any], *args: Any, native: bool = False) -> Any:
    """Call a driver method from async code.

    Coroutine methods (psycopg async connections) are awaited directly. Plain
    methods of a native async driver do not block and are called inline, the
    methods of a blocking driver (pyodbc) run in a worker thread.
    """
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    if native:
        return func(*args)
    return await asyncio.to_thread(func, *args)


async def set_autocommit(raw_conn: Any, value: bool) -> None:
    """Set auto-commit on a sync or async DBAPI connection."""
    setter = getattr(raw_conn, 'set_autocommit', None)
    if setter is not None and inspect.iscoroutinefunction(setter):
        await setter(value)
        return
    await asyncio.to_thread(setattr, raw_conn, 'autocommit', value)
