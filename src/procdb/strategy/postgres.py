"""
PostgreSQL-specific strategy implementation.

Procedures are invoked with CALL, functions returning rows with
SELECT * FROM. Named arguments use the ``name => value`` notation, OUT
arguments of a procedure are passed as NULL and come back as the single row
CALL returns.
"""
import json
import logging
from functools import partial
from typing import TYPE_CHECKING, Any

import psycopg
import sqlalchemy as sa
from procdb.parameters import Direction, Parameter
from procdb.strategy.base import DatabaseStrategy, ProcedureCall
from procdb.strategy.base import register_strategy
from procdb.tabular import Table
from psycopg.types.json import Jsonb

if TYPE_CHECKING:
    from procdb.options import DatabaseOptions

logger = logging.getLogger(__name__)

_json_dumps = partial(json.dumps, default=str)


@register_strategy('postgresql')
class PostgresStrategy(DatabaseStrategy):
    """PostgreSQL procedure calls over psycopg"""

    @property
    def dialect_name(self) -> str:
        return 'postgresql'

    def build_connection_url(self, options: 'DatabaseOptions') -> sa.URL:
        """Build the SQLAlchemy connection URL for PostgreSQL."""
        query = {'application_name': options.appname}
        if options.timeout:
            query['connect_timeout'] = str(options.timeout)
        return sa.URL.create(
            drivername='postgresql+psycopg',
            username=options.username,
            password=options.password,
            host=options.hostname,
            port=options.port,
            database=options.database,
            query=query,
        )

    async def connect_async(self, options: 'DatabaseOptions') -> psycopg.AsyncConnection:
        kwargs = {
            'host': options.hostname,
            'port': options.port,
            'dbname': options.database,
            'user': options.username,
            'password': options.password,
            'application_name': options.appname,
            'connect_timeout': options.timeout,
        }
        kwargs = {k: v for k, v in kwargs.items() if v}
        logger.debug(f'Opening async psycopg connection to {options.hostname}/{options.database}')
        return await psycopg.AsyncConnection.connect(**kwargs)

    @classmethod
    def get_required_options(cls) -> list[str]:
        """Return required options for PostgreSQL connections."""
        return ['hostname', 'username', 'password', 'database', 'port']

    def adapt_table(self, table: Table) -> Jsonb:
        """Pass a table as a jsonb array of row objects.

        The procedure unpacks it with jsonb_to_recordset or jsonb_populate_recordset.
        """
        return Jsonb(table.to_dicts(), dumps=_json_dumps)

    def build_call(self, procedure: str, parameters: list[Parameter],
                   timeout: int, returns_rows: bool) -> ProcedureCall:
        name = self.format_procedure_name(procedure)
        arguments, args = [], []
        for param in parameters:
            if param.is_output and returns_rows:
                raise ValueError(
                    f'Output parameter {param.name} is not supported for row-returning '
                    'functions on postgresql, return it as a column instead')
            if param.direction is Direction.OUTPUT:
                null = f'NULL::{param.sql_type}' if param.sql_type else 'NULL'
                arguments.append(f'{param.name} => {null}')
                continue
            arguments.append(f'{param.name} => %s' if param.name else '%s')
            args.append(self.adapt_value(param.value))

        verb = 'SELECT * FROM' if returns_rows else 'CALL'
        sql = f'{verb} {name}({", ".join(arguments)})'
        return ProcedureCall(procedure, tuple(parameters), timeout, sql, tuple(args), returns_rows)

    def prepare_timeout(self, raw_conn: Any, timeout: int) -> str:
        """Session statement timeout in milliseconds, 0 disables it."""
        return f'SET statement_timeout = {int(timeout * 1000)}'
