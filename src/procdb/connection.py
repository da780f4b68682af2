"""
Connection handling for procedure executors.

This module provides:
1. Connection handles that open one DB-API connection on first use
2. Engine creation and management through a thread-safe registry
3. The `connect()` / `connect_async()` entry points returning executors
"""
import atexit
import dataclasses
import enum
import logging
import threading
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from procdb.exceptions import ConnectionClosedError
from procdb.options import DatabaseOptions
from procdb.strategy import get_strategy
from procdb.utils import call_driver, get_dialect_name, get_raw_connection
from procdb.utils import is_async_driver
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

if TYPE_CHECKING:
    from procdb.executor import AsyncProcedureExecutor, ProcedureExecutor

__all__ = [
    'ConnectionState',
    'ConnectionHandle',
    'AsyncConnectionHandle',
    'connect',
    'connect_async',
    'create_url_from_options',
    'get_engine_for_options',
    'dispose_all_engines',
]

logger = logging.getLogger(__name__)

_engine_registry: dict[str, Engine] = {}
_engine_registry_lock = threading.RLock()


def create_url_from_options(options: DatabaseOptions) -> sa.URL:
    """Convert DatabaseOptions to SQLAlchemy URL.
    """
    return get_strategy(options.drivername).build_connection_url(options)


def get_engine_for_options(options: DatabaseOptions,
                           engine_factory: Callable[..., Engine] = sa.create_engine,
                           **kwargs: Any) -> Engine:
    """Get or create a SQLAlchemy engine for the given options.

    Without use_pool every connect opens a new DB-API connection (NullPool).
    """
    url = create_url_from_options(options)
    key = (f'{url.render_as_string(hide_password=False)}_{options.timeout}_{options.use_pool}_'
           f'{options.pool_max_connections}_{options.pool_max_idle_time}_{options.pool_wait_timeout}')

    with _engine_registry_lock:
        if key in _engine_registry:
            logger.debug(f'Using existing engine for {options.drivername}')
            return _engine_registry[key]

        engine_kwargs: dict[str, Any] = {'echo': False}
        engine_kwargs.update(get_strategy(options.drivername).get_engine_kwargs(options))

        if not options.use_pool:
            engine_kwargs['poolclass'] = NullPool
        else:
            engine_kwargs['pool_size'] = options.pool_max_connections
            engine_kwargs['pool_recycle'] = options.pool_max_idle_time
            engine_kwargs['pool_timeout'] = options.pool_wait_timeout
            engine_kwargs['max_overflow'] = 10
            engine_kwargs['pool_pre_ping'] = True
            engine_kwargs['pool_reset_on_return'] = 'rollback'

        engine_kwargs.update(kwargs)
        engine = engine_factory(url, **engine_kwargs)

        _engine_registry[key] = engine
        logger.debug(f'Created new engine for {options.drivername}')
        return engine


def dispose_all_engines() -> None:
    """Dispose all engines in the registry.
    """
    with _engine_registry_lock:
        for engine in _engine_registry.values():
            engine.dispose()
        _engine_registry.clear()
        logger.debug('All database engines disposed')


atexit.register(dispose_all_engines)


class ConnectionState(enum.Enum):
    UNOPENED = 'unopened'
    OPEN = 'open'
    CLOSED = 'closed'


class _HandleBase:

    def __init__(self, connector: Callable[[], Any], dialect: str | None = None) -> None:
        self._connector = connector
        self._dialect = dialect
        self.connection: Any = None
        self.state = ConnectionState.UNOPENED

    def __repr__(self) -> str:
        return f'{type(self).__name__}(dialect={self._dialect!r}, state={self.state.value})'

    @property
    def dialect(self) -> str:
        if self._dialect is None and self.connection is not None:
            self._dialect = get_dialect_name(self.connection)
        return self._dialect

    @property
    def raw(self) -> Any:
        """The underlying DB-API connection, None until opened."""
        if self.connection is None:
            return None
        return get_raw_connection(self.connection)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def _check_not_closed(self) -> None:
        if self.state is ConnectionState.CLOSED:
            raise ConnectionClosedError('Connection has been closed')


class ConnectionHandle(_HandleBase):
    """Owns zero or one connection created by a connector callable.

    The connector may return a SQLAlchemy connection or a raw DB-API
    connection; commands always go through the raw DB-API connection.
    """

    def open(self) -> Any:
        """Open on first use and return the raw DB-API connection."""
        self._check_not_closed()
        if self.state is ConnectionState.UNOPENED:
            self.connection = self._connector()
            self.state = ConnectionState.OPEN
            logger.debug(f'Opened {self.dialect} connection')
        return self.raw

    def close(self) -> None:
        """Close the connection; closing twice is a no-op."""
        if self.state is ConnectionState.CLOSED:
            return
        connection, self.connection = self.connection, None
        self.state = ConnectionState.CLOSED
        if connection is not None:
            connection.close()
            logger.debug(f'Closed {self._dialect} connection')


class AsyncConnectionHandle(_HandleBase):
    """Connection handle whose connector is a coroutine function.
    """

    def __init__(self, connector: Callable[[], Awaitable[Any]], dialect: str | None = None) -> None:
        super().__init__(connector, dialect)

    @property
    def native(self) -> bool:
        """True when the driver is natively async (psycopg AsyncConnection)."""
        return is_async_driver(self.raw)

    async def open(self) -> Any:
        self._check_not_closed()
        if self.state is ConnectionState.UNOPENED:
            self.connection = await self._connector()
            self.state = ConnectionState.OPEN
            logger.debug(f'Opened async {self.dialect} connection')
        return self.raw

    async def close(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        native = self.native if self.connection is not None else False
        connection, self.connection = self.connection, None
        self.state = ConnectionState.CLOSED
        if connection is not None:
            await call_driver(connection.close, native=native)
            logger.debug(f'Closed async {self._dialect} connection')


def _load_options(options: DatabaseOptions | Mapping[str, Any] | None,
                  **kwargs: Any) -> DatabaseOptions:
    if isinstance(options, DatabaseOptions):
        return dataclasses.replace(options, **kwargs) if kwargs else options
    return DatabaseOptions.from_mapping(options or {}, **kwargs)


def connect(options: DatabaseOptions | Mapping[str, Any] | None = None,
            **kwargs: Any) -> 'ProcedureExecutor':
    """Create a blocking procedure executor.

    The connection is taken from the engine for these options when the first
    command runs.

    Examples
        >>> executor = connect({'drivername': 'postgresql', 'hostname': 'db', ...})
        >>> executor.exec_non_query('DeactivateUser', I('Id', 7))
    """
    from procdb.executor import ProcedureExecutor

    options = _load_options(options, **kwargs)
    engine = get_engine_for_options(options)
    handle = ConnectionHandle(engine.connect, options.drivername)
    return ProcedureExecutor(handle, get_strategy(options.drivername),
                             timeout=options.command_timeout)


def connect_async(options: DatabaseOptions | Mapping[str, Any] | None = None,
                  **kwargs: Any) -> 'AsyncProcedureExecutor':
    """Create an asyncio procedure executor.

    PostgreSQL uses a native psycopg AsyncConnection, SQL Server runs pyodbc
    in worker threads.
    """
    from procdb.executor import AsyncProcedureExecutor

    options = _load_options(options, **kwargs)
    strategy = get_strategy(options.drivername)

    async def connector() -> Any:
        return await strategy.connect_async(options)

    handle = AsyncConnectionHandle(connector, options.drivername)
    return AsyncProcedureExecutor(handle, strategy, timeout=options.command_timeout)
