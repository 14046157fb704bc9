"""
Explicit transactions on the adapter's connection.

`begin_transaction()` and `begin_transaction_async()` send BEGIN straight
through libpq and return a `PostgresTransaction`. Because psycopg derives its
own state from the server's transaction status, it will not add a BEGIN of
its own to the statements that follow.

Examples
    tx = begin_transaction(conn, IsolationLevel.SERIALIZABLE)
    try:
        conn.execute('update accounts set balance = balance - 10 where id = 1')
        tx.commit()
    except Exception:
        tx.rollback()
        raise

    async with await begin_transaction_async(conn) as tx:
        conn.execute('delete from queue where id = %s', (item_id,))
"""
import logging
from typing import Any, Self

import psycopg
from pgbridge.accessor import ensure_no_copy, ensure_open
from pgbridge.aio import run_command, run_command_async
from pgbridge.exceptions import CancellationError, ConnectionStateError
from pgbridge.features import require
from psycopg import IsolationLevel, pq

__all__ = [
    'PostgresTransaction',
    'begin_statement',
    'begin_transaction',
    'begin_transaction_async',
    'parse_isolation_level',
]

logger = logging.getLogger(__name__)


def parse_isolation_level(value: IsolationLevel | int | str | None) -> IsolationLevel | None:
    """Accept an IsolationLevel, its integer value or a name such as
    'serializable' or 'read committed'.

    >>> parse_isolation_level('read committed')
    <IsolationLevel.READ_COMMITTED: 2>
    >>> parse_isolation_level(None) is None
    True
    """
    if value is None or isinstance(value, IsolationLevel):
        return value
    if isinstance(value, str):
        name = value.strip().upper().replace(' ', '_').replace('-', '_')
        try:
            return IsolationLevel[name]
        except KeyError:
            raise ValueError(f'Unknown isolation level: {value!r}') from None
    return IsolationLevel(value)


def begin_statement(isolation_level: IsolationLevel | None = None) -> bytes:
    """
    >>> begin_statement()
    b'BEGIN'
    >>> begin_statement(IsolationLevel.REPEATABLE_READ)
    b'BEGIN ISOLATION LEVEL REPEATABLE READ'
    """
    if isolation_level is None:
        return b'BEGIN'
    return f"BEGIN ISOLATION LEVEL {isolation_level.name.replace('_', ' ')}".encode()


def _ensure_idle(conn: psycopg.Connection) -> None:
    # libpq reports a plain int
    status = pq.TransactionStatus(conn.pgconn.transaction_status)
    if status != pq.TransactionStatus.IDLE:
        raise ConnectionStateError(
            f'Cannot begin a transaction, connection status is {status.name}')


class PostgresTransaction:
    """Handle on a transaction started with BEGIN.

    Valid until `commit()`, `rollback()` or the connection is closed. Used as
    a context manager it commits on success and rolls back on error.
    """

    def __init__(self, connection: psycopg.Connection,
                 isolation_level: IsolationLevel | None = None) -> None:
        self.connection = connection
        self.isolation_level = isolation_level
        self._completed = False

    def __repr__(self) -> str:
        state = 'active' if self.active else 'finished'
        level = self.isolation_level.name if self.isolation_level else 'DEFAULT'
        return f'<PostgresTransaction {level} {state}>'

    @property
    def active(self) -> bool:
        """True while the server still has this transaction open."""
        if self._completed or self.connection.closed:
            return False
        return self.connection.pgconn.transaction_status in {
            pq.TransactionStatus.INTRANS, pq.TransactionStatus.INERROR}

    def _ensure_active(self) -> None:
        if self._completed:
            raise ConnectionStateError('The transaction has already been committed or rolled back')
        if self.connection.closed:
            raise ConnectionStateError('The connection is closed')

    def _finish(self, command: bytes) -> None:
        self._ensure_active()
        try:
            run_command(self.connection, command)
        finally:
            self._completed = True
        logger.debug(f'{command.decode()} on connection {id(self.connection)}')

    async def _finish_async(self, command: bytes) -> None:
        self._ensure_active()
        try:
            await run_command_async(self.connection, command)
        finally:
            self._completed = True
        logger.debug(f'{command.decode()} on connection {id(self.connection)}')

    def commit(self) -> None:
        self._finish(b'COMMIT')

    def rollback(self) -> None:
        self._finish(b'ROLLBACK')

    async def commit_async(self) -> None:
        await self._finish_async(b'COMMIT')

    async def rollback_async(self) -> None:
        await self._finish_async(b'ROLLBACK')

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any | None) -> None:
        if self._completed or self.connection.closed:
            return
        if exc_type is None:
            self.commit()
        else:
            logger.warning('Rolling back the current transaction')
            self.rollback()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any | None) -> None:
        if self._completed or self.connection.closed:
            return
        if exc_type is None:
            await self.commit_async()
        else:
            logger.warning('Rolling back the current transaction')
            await self.rollback_async()


def begin_transaction(conn: psycopg.Connection,
                      isolation_level: IsolationLevel | int | str | None = None) -> PostgresTransaction:
    """Start a transaction, blocking until the server acknowledges it.

    Without an isolation level the session default applies.
    """
    level = parse_isolation_level(isolation_level)
    ensure_no_copy(ensure_open(conn))
    _ensure_idle(conn)
    run_command(conn, begin_statement(level))
    logger.debug(f'Started transaction on connection {id(conn)}')
    return PostgresTransaction(conn, level)


async def begin_transaction_async(conn: psycopg.Connection,
                                  isolation_level: IsolationLevel | int | str | None = None) -> PostgresTransaction:
    """Start a transaction without blocking the event loop.

    Cancelling the awaiting task before the server acknowledges BEGIN leaves
    no transaction open: the exchange is completed and rolled back before
    CancellationError propagates.
    """
    require('async_io')
    level = parse_isolation_level(isolation_level)
    ensure_no_copy(ensure_open(conn))
    _ensure_idle(conn)
    try:
        await run_command_async(conn, begin_statement(level))
    except CancellationError:
        if not conn.closed and conn.pgconn.transaction_status != pq.TransactionStatus.IDLE:
            run_command(conn, b'ROLLBACK')
        logger.warning(f'Transaction start cancelled on connection {id(conn)}')
        raise
    logger.debug(f'Started transaction on connection {id(conn)}')
    return PostgresTransaction(conn, level)
