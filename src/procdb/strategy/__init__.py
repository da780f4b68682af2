"""
Dialect strategies for rendering and running procedure calls.

    strategy = get_strategy('mssql')
    call = strategy.build_call('GetUser', [I('Id', 7)], timeout=30, returns_rows=True)
"""
from functools import lru_cache

from procdb.strategy.base import _STRATEGY_REGISTRY
from procdb.strategy.base import DatabaseStrategy as DatabaseStrategy
from procdb.strategy.base import ProcedureCall as ProcedureCall
from procdb.strategy.base import register_strategy as register_strategy
from procdb.strategy.postgres import PostgresStrategy as PostgresStrategy
from procdb.strategy.sqlserver import SQLServerStrategy as SQLServerStrategy


def available_dialects() -> list[str]:
    return list(_STRATEGY_REGISTRY)


def get_strategy_class(dialect: str) -> type[DatabaseStrategy]:
    """Registered strategy class for a dialect name.

    Raises
        ValueError: No strategy is registered under that name
    """
    try:
        return _STRATEGY_REGISTRY[dialect]
    except KeyError:
        raise ValueError(f'Unsupported dialect: {dialect}. Available: {available_dialects()}') from None


@lru_cache(maxsize=8)
def get_strategy(dialect: str) -> DatabaseStrategy:
    """Shared strategy instance for a dialect name; strategies hold no state."""
    return get_strategy_class(dialect)()
