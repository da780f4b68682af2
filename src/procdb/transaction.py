"""
Transaction handling and auto-commit management for procedure executors.

Connections run in auto-commit mode. A transaction disables auto-commit on
begin and restores it when it ends, by commit or by rollback, on every path.
"""
import logging
from typing import Any

from procdb.exceptions import TransactionStateError
from procdb.utils import call_driver, is_async_driver, set_autocommit

logger = logging.getLogger(__name__)


def enable_auto_commit(strategy: Any, raw_conn: Any) -> None:
    """Enable auto-commit mode through the dialect strategy."""
    strategy.enable_autocommit(raw_conn)


def disable_auto_commit(strategy: Any, raw_conn: Any) -> None:
    """Disable auto-commit mode through the dialect strategy."""
    strategy.disable_autocommit(raw_conn)


class Transaction:
    """Explicit transaction on a raw DB-API connection.

    Nested transactions are not supported: the executor holds at most one.

    Examples
        with Transaction(raw_conn, strategy):
            cursor.execute(...)
    """

    def __init__(self, connection: Any, strategy: Any) -> None:
        self.connection = connection
        self.strategy = strategy
        self.active = False

    def __repr__(self) -> str:
        return f'Transaction(active={self.active})'

    def __enter__(self):
        self.begin()
        return self

    def __exit__(self, exc_type: type | None, value: Exception | None, traceback: Any | None) -> None:
        if not self.active:
            return
        if exc_type is not None:
            logger.debug('Rolling back the current transaction')
            self.rollback()
        else:
            self.commit()

    def begin(self) -> None:
        if self.active:
            raise TransactionStateError('Nested transactions are not supported')
        disable_auto_commit(self.strategy, self.connection)
        self.active = True
        logger.debug(f'Started transaction for connection {id(self.connection)}')

    def _check_active(self) -> None:
        if not self.active:
            raise TransactionStateError('No active transaction')

    def commit(self) -> None:
        self._check_active()
        try:
            self.connection.commit()
            logger.debug(f'Committed transaction for connection {id(self.connection)}')
        finally:
            self._release()

    def rollback(self) -> None:
        self._check_active()
        try:
            self.connection.rollback()
            logger.debug(f'Rolled back transaction for connection {id(self.connection)}')
        finally:
            self._release()

    def _release(self) -> None:
        self.active = False
        enable_auto_commit(self.strategy, self.connection)


class AsyncTransaction:
    """Explicit transaction on a native async or a blocking DB-API connection.
    """

    def __init__(self, connection: Any) -> None:
        self.connection = connection
        self.native = is_async_driver(connection)
        self.active = False

    def __repr__(self) -> str:
        return f'AsyncTransaction(active={self.active})'

    async def __aenter__(self):
        await self.begin()
        return self

    async def __aexit__(self, exc_type: type | None, value: Exception | None, traceback: Any | None) -> None:
        if not self.active:
            return
        if exc_type is not None:
            logger.debug('Rolling back the current transaction')
            await self.rollback()
        else:
            await self.commit()

    async def begin(self) -> None:
        if self.active:
            raise TransactionStateError('Nested transactions are not supported')
        await set_autocommit(self.connection, False)
        self.active = True
        logger.debug(f'Started transaction for connection {id(self.connection)}')

    def _check_active(self) -> None:
        if not self.active:
            raise TransactionStateError('No active transaction')

    async def commit(self) -> None:
        self._check_active()
        try:
            await call_driver(self.connection.commit, native=self.native)
            logger.debug(f'Committed transaction for connection {id(self.connection)}')
        finally:
            await self._release()

    async def rollback(self) -> None:
        self._check_active()
        try:
            await call_driver(self.connection.rollback, native=self.native)
            logger.debug(f'Rolled back transaction for connection {id(self.connection)}')
        finally:
            await self._release()

    async def _release(self) -> None:
        self.active = False
        await set_autocommit(self.connection, True)
