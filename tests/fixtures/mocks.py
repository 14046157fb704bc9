"""
Mock psycopg connections and executors for unit tests.

The mocks pass `isinstance(conn, psycopg.Connection)` so they travel through
the same resolution path as real connections, without a server.

Usage:
    def test_something(pg_connection, fake_executor):
        client = PostgresClient(fake_executor)
        pg_connection.info.backend_pid = 4242
        assert client.process_id == 4242
"""
import threading
from unittest.mock import MagicMock

import psycopg
import pytest
from psycopg import pq


def make_pg_connection(**info):
    """Create a MagicMock standing in for an open psycopg connection.

    Keyword arguments are set on `conn.info`. `parameter_status()` answers
    from `info['parameters']`.
    """
    conn = MagicMock(spec=psycopg.Connection)
    conn.closed = False
    conn.broken = False
    conn.autocommit = True
    conn.lock = threading.Lock()

    conn.pgconn = MagicMock()
    # libpq reports the status as a plain int
    conn.pgconn.transaction_status = int(pq.TransactionStatus.IDLE)
    conn.pgconn.notify_handler = None
    conn.pgconn.notifies.return_value = None

    parameters = info.pop('parameters', {})
    conn.info.encoding = 'utf-8'
    conn.info.parameter_status.side_effect = parameters.get
    for name, value in info.items():
        setattr(conn.info, name, value)

    def close():
        conn.closed = True

    conn.close.side_effect = close
    return conn


class FakeExecutor:
    """Minimal executor exposing a connection the way ConnectionWrapper does.
    """

    def __init__(self, connection):
        self.dbapi_connection = connection
        self.closed = False
        self.statements = []

    def execute(self, sql, *args):
        self.statements.append((sql, args))
        return 1

    def select(self, sql, *args):
        self.statements.append((sql, args))
        return [{'value': 1}]

    def close(self):
        # A checked-in pool proxy no longer exposes its connection
        self.dbapi_connection = None
        self.closed = True


def make_copy_cursor(conn, status=pq.ExecStatus.COPY_OUT, binary=False, rowcount=-1):
    """Wire `conn.cursor()` to return a cursor whose `copy()` starts a COPY.

    Returns (cursor, copy_cm, copy): the context manager returned by
    `cursor.copy()` and the Copy object it yields. Like psycopg, entering the
    context takes `conn.lock` and exiting releases it.
    """
    cursor = MagicMock()
    cursor.__enter__.return_value = cursor
    cursor.pgresult.status = status
    cursor.pgresult.binary_tuples = 1 if binary else 0
    cursor.rowcount = rowcount

    copy = MagicMock()
    copy_cm = MagicMock()

    def take_lock():
        if not conn.lock.acquire(timeout=1):
            raise AssertionError('connection lock held by another COPY')
        return copy

    def release_lock(*exc_info):
        conn.lock.release()
        return False

    copy_cm.__enter__.side_effect = take_lock
    copy_cm.__exit__.side_effect = release_lock
    cursor.copy.return_value = copy_cm

    conn.cursor.return_value = cursor
    return cursor, copy_cm, copy


@pytest.fixture
def pg_connection():
    """An open mock psycopg connection."""
    return make_pg_connection(
        host='db.example.com',
        port=5432,
        backend_pid=4242,
        server_version=160002,
        user='app',
        dbname='orders',
        transaction_status=pq.TransactionStatus.IDLE,
        parameters={'TimeZone': 'US/Eastern', 'integer_datetimes': 'on'},
    )


@pytest.fixture
def fake_executor(pg_connection):
    return FakeExecutor(pg_connection)
