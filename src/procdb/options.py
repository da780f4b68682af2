import logging
import os
import pathlib
import sys
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

from dotenv import dotenv_values
from procdb.strategy import available_dialects, get_strategy_class

logger = logging.getLogger(__name__)

__all__ = ['DatabaseOptions']

_TRUE_STRINGS = {'1', 'true', 'yes', 'on'}


def _scriptname() -> str | None:
    """Name of the running script without extension."""
    if sys.argv and sys.argv[0] not in {'', '-c'}:
        return pathlib.Path(sys.argv[0]).stem
    return None


def _field_value(field_type: Any, raw: Any) -> Any:
    """Convert a string setting to the declared field type."""
    if not isinstance(raw, str):
        return raw
    if field_type in {bool, 'bool'}:
        return raw.strip().lower() in _TRUE_STRINGS
    if field_type in {int, 'int'}:
        return int(raw)
    return raw


@dataclass
class DatabaseOptions:
    """Options

    supported driver names: `postgresql`, `mssql`

    Timeouts:
    - timeout: Connect/login timeout in seconds (0 = driver default)
    - command_timeout: Default command timeout for procedure calls (default: 300)

    Connection pooling options:
    - use_pool: Whether to use connection pooling (default: False)
    - pool_max_connections: Maximum connections in pool (default: 5)
    - pool_max_idle_time: Maximum seconds a connection can be idle (default: 300)
    - pool_wait_timeout: Maximum seconds to wait for a connection (default: 30)
    """
    drivername: str = 'postgresql'
    hostname: str = None
    username: str = None
    password: str = None
    database: str = None
    port: int = 0
    timeout: int = 0
    command_timeout: int = 300
    appname: str = None
    # SQL Server only
    driver: str = 'ODBC Driver 18 for SQL Server'
    trust_server_certificate: bool = False
    # Connection pooling parameters
    use_pool: bool = False
    pool_max_connections: int = 5
    pool_max_idle_time: int = 300
    pool_wait_timeout: int = 30

    def __post_init__(self):
        if self.drivername not in available_dialects():
            raise ValueError(f'drivername must be one of: {available_dialects()}')
        if self.command_timeout < 0:
            raise ValueError('command_timeout cannot be negative')
        self.appname = self.appname or _scriptname() or 'python_console'
        strategy_cls = get_strategy_class(self.drivername)
        strategy_cls.validate_options(self)

    def __repr__(self) -> str:
        return (f'DatabaseOptions(drivername={self.drivername!r}, hostname={self.hostname!r}, '
                f'database={self.database!r}, username={self.username!r}, port={self.port})')

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **overrides: Any) -> 'DatabaseOptions':
        """Create options from a mapping, ignoring unknown keys.

        String values are converted to the declared bool/int field types.
        """
        known = {f.name: f.type for f in fields(cls)}
        values = {}
        for key, raw in {**mapping, **overrides}.items():
            name = key.lower()
            if name not in known or raw is None:
                continue
            values[name] = _field_value(known[name], raw)
        return cls(**values)

    @classmethod
    def from_env(cls, prefix: str = 'PROCDB_', env_file: str | os.PathLike | None = None,
                 **overrides: Any) -> 'DatabaseOptions':
        """Create options from environment variables such as PROCDB_HOSTNAME.

        Values from env_file (dotenv format) are read first and are overridden
        by the process environment.
        """
        settings = dict(dotenv_values(env_file)) if env_file is not None else {}
        settings.update(os.environ)
        mapping = {k[len(prefix):]: v for k, v in settings.items()
                   if k.upper().startswith(prefix.upper())}
        logger.debug(f'Loaded {len(mapping)} settings with prefix {prefix}')
        return cls.from_mapping(mapping, **overrides)
