"""
Base strategy interface for stored procedure calls.

Defines the abstract base class that all database-specific strategy
implementations must inherit from. A strategy renders a procedure call into a
DB-API statement for its dialect, adapts parameter values, applies command
timeouts and manages auto-commit, while the executor stays dialect-neutral.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from procdb.parameters import Parameter
from procdb.tabular import Table
from procdb.types import normalize
from procdb.utils import get_raw_connection, set_autocommit

if TYPE_CHECKING:
    from procdb.options import DatabaseOptions

logger = logging.getLogger(__name__)

# Registry of dialect name -> strategy class
# Defined here to avoid circular imports (concrete strategies import from base)
_STRATEGY_REGISTRY: dict[str, type['DatabaseStrategy']] = {}

_SIMPLE_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$#]*$')
_NAME_PART = re.compile(r'\[(?:[^\]]|\]\])+\]|"(?:[^"]|"")+"|[^.\[\]"]+')


def register_strategy(dialect: str):
    """Decorator to register a strategy class for a dialect.

    Usage:
        @register_strategy('postgresql')
        class PostgresStrategy(DatabaseStrategy):
            ...
    """
    def decorator(cls: type['DatabaseStrategy']) -> type['DatabaseStrategy']:
        _STRATEGY_REGISTRY[dialect] = cls
        return cls
    return decorator


@dataclass(frozen=True)
class ProcedureCall:
    """A rendered stored procedure call."""
    procedure: str
    parameters: tuple[Parameter, ...]
    timeout: int
    sql: str
    args: tuple
    returns_rows: bool = False

    @property
    def outputs(self) -> tuple[Parameter, ...]:
        return tuple(p for p in self.parameters if p.is_output)


class DatabaseStrategy(ABC):
    """Base class for database-specific procedure handling.
    """

    @property
    @abstractmethod
    def dialect_name(self) -> str:
        """Return the dialect identifier."""

    @abstractmethod
    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL.

        Args:
            options: Connection options

        Returns
            SQLAlchemy URL object
        """

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Return SQLAlchemy create_engine kwargs for the dialect."""
        return {}

    @abstractmethod
    async def connect_async(self, options: 'DatabaseOptions') -> Any:
        """Open a DBAPI connection usable from async code."""

    @classmethod
    @abstractmethod
    def get_required_options(cls) -> list[str]:
        """Return list of required option field names for this dialect.

        Returns
            List of field names that must have non-None/non-zero values
        """

    @classmethod
    def validate_options(cls, options: 'DatabaseOptions') -> None:
        """Validate options for this dialect.

        Raises
            ValueError: If any required field is None or 0
        """
        for field in cls.get_required_options():
            if not getattr(options, field):
                raise ValueError(f'field {field} cannot be None or 0')

    def configure_connection(self, conn: Any) -> None:
        """Configure a freshly opened connection.

        Commands outside an explicit transaction commit on their own.
        """
        self.enable_autocommit(get_raw_connection(conn))

    async def configure_connection_async(self, conn: Any) -> None:
        await set_autocommit(get_raw_connection(conn), True)

    def enable_autocommit(self, raw_conn: Any) -> None:
        raw_conn.autocommit = True

    def disable_autocommit(self, raw_conn: Any) -> None:
        raw_conn.autocommit = False

    def quote_identifier(self, identifier: str) -> str:
        """Quote a database identifier.

        Default implementation uses standard SQL double-quote escaping.
        """
        return '"' + identifier.replace('"', '""') + '"'

    def format_procedure_name(self, procedure: str) -> str:
        """Validate and quote a possibly schema-qualified procedure name.

        Simple identifiers and already quoted parts are kept as written so
        the server applies its usual case rules; other parts are quoted.
        """
        parts = _NAME_PART.findall(procedure.strip())
        if not parts or '.'.join(parts) != procedure.strip():
            raise ValueError(f'Invalid procedure name: {procedure!r}')
        formatted = []
        for part in parts:
            if part[0] in '["' or _SIMPLE_IDENTIFIER.match(part):
                formatted.append(part)
            else:
                formatted.append(self.quote_identifier(part))
        return '.'.join(formatted)

    def adapt_value(self, value: Any) -> Any:
        """Convert a parameter value to what the driver accepts."""
        if isinstance(value, Table):
            return self.adapt_table(value)
        return normalize(value)

    @abstractmethod
    def adapt_table(self, table: Table) -> Any:
        """Convert a Table to a structured parameter value."""

    @abstractmethod
    def build_call(self, procedure: str, parameters: list[Parameter],
                   timeout: int, returns_rows: bool) -> ProcedureCall:
        """Render a procedure call.

        Args:
            procedure: Stored procedure name
            parameters: Parameters in caller order
            timeout: Command timeout in seconds
            returns_rows: Whether the call is expected to produce a result set

        Returns
            ProcedureCall with SQL and bound arguments
        """

    @abstractmethod
    def prepare_timeout(self, raw_conn: Any, timeout: int) -> str | None:
        """Apply the command timeout.

        Either sets it on the connection directly and returns None, or returns
        a statement that the executor runs before the call.
        """

    def apply_outputs(self, call: ProcedureCall, names: list[str], row: Any) -> None:
        """Write output values from the final result row back to the parameters."""
        if row is None:
            return
        positions = {name.lower(): i for i, name in enumerate(names)}
        for param in call.outputs:
            index = positions.get(param.name.lower())
            if index is not None:
                param.value = normalize(row[index])
        logger.debug(f'Output parameters: {[(p.name, p.value) for p in call.outputs]}')
