"""
Exception classes for stored procedure access and row mapping.
"""
import re

import psycopg
import pyodbc
import sqlalchemy.exc

RETRYABLE_PATTERNS = [
    # SSL/TLS errors
    r'ssl',
    r'tls',
    # Connection drops
    r'connection.*(closed|reset|refused|lost|terminated|broken)',
    r'server closed',
    r'eof detected',
    r'broken pipe',
    r'communication link failure',
    # Timeouts
    r'timeout',
    r'timed out',
    r'canceling statement due to statement timeout',
    # Network issues
    r'could not connect',
    r'no route to host',
    r'network.*(unreachable|error)',
    # Database unavailable
    r'database.*unavailable',
    r'too many connections',
    r'deadlock',
]

_RETRYABLE_REGEX = re.compile('|'.join(RETRYABLE_PATTERNS), re.IGNORECASE)


def is_retryable_error(exc: BaseException) -> bool:
    """Check if an exception represents a transient error worth retrying.

    The library never retries on its own. This is offered to callers that
    implement their own retry policy around procedure calls.

    :param exc: The exception to check.
    :returns: True if the error is likely transient.
    """
    if isinstance(exc, DatabaseError):
        return False
    return bool(_RETRYABLE_REGEX.search(str(exc)))


class DatabaseError(Exception):
    """Base class for all procdb errors.
    """


class TypeShapeError(DatabaseError, TypeError):
    """Record type is not a valid mapping target or source.

    Raised for value types, arrays and pointer-like types, members without a
    setter, types without a zero-argument constructor, positional member/column
    count mismatches and heterogeneous collections given to the tabular builder.
    """


class ConversionError(DatabaseError, ValueError):
    """Raw value cannot be coerced to a member's declared type.
    """


class TransactionStateError(DatabaseError):
    """Transaction operation issued in the wrong state.
    """


class ConnectionClosedError(DatabaseError):
    """Command issued through an executor that has been closed."""


CommandExecutionError = (
    psycopg.Error,
    pyodbc.Error,
    sqlalchemy.exc.DBAPIError,
    )

ConnectionFailure = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    pyodbc.OperationalError,
    pyodbc.InterfaceError,
    sqlalchemy.exc.OperationalError,
    sqlalchemy.exc.InterfaceError,
    )

IntegrityError = (
    psycopg.IntegrityError,
    pyodbc.IntegrityError,
    sqlalchemy.exc.IntegrityError,
    )
