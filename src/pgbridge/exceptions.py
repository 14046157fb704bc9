"""
Exception classes for the PostgreSQL adapter.

Errors reported by the server are never wrapped: they propagate as the
original psycopg exception and can be caught with the `BackendProtocolError`
group. The classes below are raised only for conditions detected locally.
"""
import asyncio
import re

import psycopg

RETRYABLE_PATTERNS = [
    # SSL/TLS errors
    r'ssl',
    r'tls',
    # Connection drops
    r'connection.*(closed|reset|refused|lost|terminated|broken)',
    r'server closed',
    r'eof detected',
    r'broken pipe',
    r'connection reset',
    # Timeouts
    r'timeout',
    r'timed out',
    # Network issues
    r'could not connect',
    r'no route to host',
    r'network.*(unreachable|error)',
    r'host.*(unreachable|down)',
    # Database unavailable
    r'database.*unavailable',
    r'too many connections',
    r'connection pool',
]

_RETRYABLE_REGEX = re.compile('|'.join(RETRYABLE_PATTERNS), re.IGNORECASE)


def is_retryable_error(exc: BaseException) -> bool:
    """Check if an exception represents a transient error worth retrying.

    Returns True for connection drops, timeouts, network and SSL failures.
    Returns False for syntax errors, constraint violations and anything else
    that will fail the same way again.

    :param exc: The exception to check.
    :returns: True if the error is likely transient and worth retrying.
    """
    error_msg = str(exc).lower()
    return bool(_RETRYABLE_REGEX.search(error_msg))


class DatabaseError(Exception):
    """Base class for all pgbridge errors.
    """


class ConnectionFailure(DatabaseError):
    """Error establishing or maintaining database connection.
    """


class CastError(DatabaseError, TypeError):
    """The executor's connection is not a psycopg connection.
    """


class ConnectionStateError(DatabaseError):
    """Operation invoked against a closed or otherwise unusable object.

    Raised for closed connections, finished transactions, closed transfer
    channels and for beginning a transaction while another one is open.
    """


class CopyModeError(DatabaseError, ValueError):
    """COPY command opened with a channel of the wrong direction or format.
    """


class UnsupportedFeatureError(DatabaseError):
    """The running environment lacks a capability the operation needs.
    """


# Server-side failures keep their psycopg class and diagnostic
BackendProtocolError = (
    psycopg.Error,
    )

CancellationError = asyncio.CancelledError

DbConnectionError = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    ConnectionFailure,
    )

IntegrityError = (
    psycopg.IntegrityError,
    )

ProgrammingError = (
    psycopg.ProgrammingError,
    psycopg.DatabaseError,
    )

UniqueViolation = (
    psycopg.errors.UniqueViolation,
    )
