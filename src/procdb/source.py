"""
Data source contract for application code.

Repositories depend on DbSource and build parameters through it:

    class UserRepository:
        def __init__(self, db: DbSource):
            self.db = db

        async def get(self, user_id: int) -> User | None:
            return await self.db.get_record(User, 'GetUser', self.db.I('Id', user_id))
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, TypeVar

from procdb.executor import AsyncProcedureExecutor
from procdb.parameters import Parameter
from procdb.types import coerce_strict

logger = logging.getLogger(__name__)

T = TypeVar('T')


class DbSource(ABC):
    """Stored procedure data source.
    """

    @staticmethod
    def I(name: str | None, value: Any) -> Parameter:  # noqa: E743
        """Input parameter."""
        return Parameter.input(name, value)

    @staticmethod
    def IO(name: str, value: Any, sql_type: str | None = None) -> Parameter:
        """Input/output parameter; the value is replaced after the call."""
        return Parameter.inout(name, value, sql_type)

    @staticmethod
    def O(name: str, sql_type: str | None = None) -> Parameter:  # noqa: E743
        """Output parameter; the value is set after the call."""
        return Parameter.output(name, sql_type)

    @abstractmethod
    async def execute(self, procedure: str, *parameters: Any) -> int:
        """Run a procedure, return the affected row count."""

    @abstractmethod
    async def get_scalar(self, value_type: type[T], procedure: str, *parameters: Any) -> T | None:
        """First column of the first row, or None."""

    @abstractmethod
    async def get_record(self, record_type: type[T], procedure: str, *parameters: Any) -> T | None:
        """First row as a record, or None."""

    @abstractmethod
    async def get_table(self, procedure: str, *parameters: Any) -> list[tuple]:
        """All rows of the first result set."""

    @abstractmethod
    async def get_records(self, record_type: type[T], procedure: str, *parameters: Any) -> list[T]:
        """All rows of the first result set as records."""

    @abstractmethod
    async def get_data(self, procedure: str, *parameters: Any) -> list[list[tuple]]:
        """Every result set."""


class ProcedureSource(DbSource):
    """DbSource over an AsyncProcedureExecutor.

    Record mapping uses the executor's by-name strategy unless another is
    given with ``by``.
    """

    def __init__(self, executor: AsyncProcedureExecutor, by: str = 'name') -> None:
        self.executor = executor
        self.by = by

    async def __aenter__(self) -> 'ProcedureSource':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.executor.close()

    async def execute(self, procedure: str, *parameters: Any) -> int:
        return await self.executor.exec_non_query(procedure, *parameters)

    async def get_scalar(self, value_type: type[T], procedure: str, *parameters: Any) -> T | None:
        stream = await self.executor.query_rows(procedure, *parameters)
        async with stream:
            row = await anext(stream, None)
        if not row:
            return None
        return coerce_strict(row[0], value_type)

    async def get_record(self, record_type: type[T], procedure: str, *parameters: Any) -> T | None:
        stream = await self.executor.query_records(record_type, procedure, *parameters, by=self.by)
        async with stream:
            return await anext(stream, None)

    async def get_table(self, procedure: str, *parameters: Any) -> list[tuple]:
        stream = await self.executor.query_rows(procedure, *parameters)
        async with stream:
            return await stream.fetchall()

    async def get_records(self, record_type: type[T], procedure: str, *parameters: Any) -> list[T]:
        stream = await self.executor.query_records(record_type, procedure, *parameters, by=self.by)
        async with stream:
            records = await stream.fetchall()
        logger.debug(f'{procedure} returned {len(records)} {record_type.__name__} records')
        return records

    async def get_data(self, procedure: str, *parameters: Any) -> list[list[tuple]]:
        return await self.executor.query_data(procedure, *parameters)
