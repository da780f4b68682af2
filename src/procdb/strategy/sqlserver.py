"""
SQL Server-specific strategy implementation.

This module implements the DatabaseStrategy interface for SQL Server over pyodbc:
- EXEC with positional ``?`` and named ``@Param = ?`` arguments
- Output parameters declared as variables, passed with OUTPUT and selected
  in a trailing result set
- Table values passed as table-valued parameters
- Proper quoting of identifiers with square brackets
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any

import pyodbc
import sqlalchemy as sa
from procdb.parameters import Direction, Parameter
from procdb.strategy.base import DatabaseStrategy, ProcedureCall
from procdb.strategy.base import register_strategy
from procdb.tabular import Table

if TYPE_CHECKING:
    from procdb.options import DatabaseOptions

logger = logging.getLogger(__name__)


def _odbc_value(value: Any) -> str:
    """Brace-quote a connection string value."""
    return '{' + str(value).replace('}', '}}') + '}'


@register_strategy('mssql')
class SQLServerStrategy(DatabaseStrategy):
    """SQL Server procedure calls over pyodbc"""

    @property
    def dialect_name(self) -> str:
        return 'mssql'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for SQL Server."""
        query = {'driver': options.driver, 'APP': options.appname}
        if options.trust_server_certificate:
            query['TrustServerCertificate'] = 'yes'
        return sa.URL.create(
            drivername='mssql+pyodbc',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port or None,
            database=options.database,
            query=query,
        )

    def get_engine_kwargs(self, options: 'DatabaseOptions') -> dict[str, Any]:
        """Login timeout goes to pyodbc.connect."""
        if options.timeout:
            return {'connect_args': {'timeout': options.timeout}}
        return {}

    def build_odbc_connection_string(self, options: 'DatabaseOptions') -> str:
        server = options.hostname
        if options.port:
            server = f'{server},{options.port}'
        parts = [
            f'DRIVER={_odbc_value(options.driver)}',
            f'SERVER={server}',
            f'DATABASE={_odbc_value(options.database)}',
            f'UID={_odbc_value(options.username)}',
            f'PWD={_odbc_value(options.password)}',
            f'APP={_odbc_value(options.appname)}',
        ]
        if options.trust_server_certificate:
            parts.append('TrustServerCertificate=yes')
        return ';'.join(parts)

    async def connect_async(self, options: 'DatabaseOptions') -> pyodbc.Connection:
        logger.debug(f'Opening pyodbc connection to {options.hostname}/{options.database}')
        return await asyncio.to_thread(
            pyodbc.connect, self.build_odbc_connection_string(options),
            timeout=options.timeout or 0)

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return required options for SQL Server connections."""
        return ['hostname', 'username', 'password', 'database', 'driver']

    def quote_identifier(self, identifier: str) -> str:
        """Quote an identifier for SQL Server"""
        return f"[{identifier.replace(']', ']]')}]"

    def adapt_table(self, table: Table) -> list[tuple]:
        """Table-valued parameter rows; pyodbc matches them to the declared table type."""
        return table.value_rows()

    def build_call(self, procedure: str, parameters: list[Parameter],
                   timeout: int, returns_rows: bool) -> ProcedureCall:
        name = self.format_procedure_name(procedure)
        declares, arguments, selects = [], [], []
        declare_args, args = [], []
        for index, param in enumerate(parameters):
            if not param.is_output:
                arguments.append(f'@{param.name} = ?' if param.name else '?')
                args.append(self.adapt_value(param.value))
                continue
            variable = f'@__p{index}'
            sql_type = param.sql_type or 'sql_variant'
            if param.direction is Direction.INPUT_OUTPUT:
                declares.append(f'DECLARE {variable} {sql_type} = ?;')
                declare_args.append(self.adapt_value(param.value))
            else:
                declares.append(f'DECLARE {variable} {sql_type};')
            arguments.append(f'@{param.name} = {variable} OUTPUT')
            selects.append(f'{variable} AS {self.quote_identifier(param.name)}')

        sql = f'EXEC {name}'
        if arguments:
            sql += ' ' + ', '.join(arguments)
        if selects:
            sql = '\n'.join([
                *declares,
                f'{sql};',
                f'SELECT {", ".join(selects)};',
            ])
        return ProcedureCall(procedure, tuple(parameters), timeout, sql,
                             tuple(declare_args + args), returns_rows)

    def prepare_timeout(self, raw_conn: Any, timeout: int) -> None:
        """pyodbc applies Connection.timeout to every statement, 0 disables it."""
        raw_conn.timeout = timeout
