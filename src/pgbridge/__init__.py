"""
PostgreSQL capability adapter over a generic SQL executor.

The executor (`connect()`, `ConnectionWrapper`) runs plain SQL; the adapter
(`PostgresClient`) adds notices and notifications, COPY channels, explicit
transactions, notification waits and session resets on the same connection.

Operations can be called either as:
- PostgresClient methods: client.begin_transaction()
- Module functions on an executor: pgbridge.begin_transaction(cn)
"""
__version__ = '0.1.0'

from datetime import timedelta
from typing import Any

from pgbridge.client import PostgresClient
from pgbridge.connection import ConnectionWrapper, connect, connect_url
from pgbridge.connection import wrap_connection
from pgbridge.events import EventKind, Subscription
from pgbridge.exceptions import BackendProtocolError, CancellationError
from pgbridge.exceptions import CastError, ConnectionFailure
from pgbridge.exceptions import ConnectionStateError, CopyModeError
from pgbridge.exceptions import DatabaseError, DbConnectionError
from pgbridge.exceptions import IntegrityError, ProgrammingError
from pgbridge.exceptions import UniqueViolation, UnsupportedFeatureError
from pgbridge.features import Features, get_features
from pgbridge.options import DatabaseOptions
from pgbridge.sql import CommandType
from pgbridge.transaction import PostgresTransaction
from pgbridge.transfer import BinaryExporter, BinaryImporter, CopyChannel
from pgbridge.transfer import RawCopyStream, TextExporter, TextImporter
from pgbridge.types import ServerVersion, TypeMapper
from psycopg import IsolationLevel


def execute(cn: ConnectionWrapper, sql: str, *args: Any) -> int:
    """Execute a SQL command and return affected row count.
    """
    return cn.execute(sql, *args)


def select(cn: ConnectionWrapper, sql: str, *args: Any) -> list[dict[str, Any]]:
    """Execute a SELECT query or stored procedure.
    """
    return cn.select(sql, *args)


def select_scalar(cn: ConnectionWrapper, sql: str, *args: Any) -> Any:
    return cn.select_scalar(sql, *args)


def begin_transaction(cn: ConnectionWrapper,
                      isolation_level: IsolationLevel | int | str | None = None) -> PostgresTransaction:
    """Start an explicit transaction on the executor's connection.
    """
    return PostgresClient(cn).begin_transaction(isolation_level)


def wait(cn: ConnectionWrapper, timeout: float | timedelta | None = None) -> bool:
    """Block until a notification arrives on the executor's connection.
    """
    return PostgresClient(cn).wait(timeout)


__all__ = [
    'BackendProtocolError',
    'BinaryExporter',
    'BinaryImporter',
    'CancellationError',
    'CastError',
    'CommandType',
    'ConnectionFailure',
    'ConnectionStateError',
    'ConnectionWrapper',
    'CopyChannel',
    'CopyModeError',
    'DatabaseError',
    'DatabaseOptions',
    'DbConnectionError',
    'EventKind',
    'Features',
    'IntegrityError',
    'IsolationLevel',
    'PostgresClient',
    'PostgresTransaction',
    'ProgrammingError',
    'RawCopyStream',
    'ServerVersion',
    'Subscription',
    'TextExporter',
    'TextImporter',
    'TypeMapper',
    'UniqueViolation',
    'UnsupportedFeatureError',
    'begin_transaction',
    'connect',
    'connect_url',
    'execute',
    'get_features',
    'select',
    'select_scalar',
    'wait',
    'wrap_connection',
]
