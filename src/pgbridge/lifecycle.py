"""
Connection lifecycle: closing, waiting for notifications, resetting
server-side caches.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any

import psycopg
from pgbridge.accessor import connection_state, discard_connection_state
from pgbridge.accessor import ensure_no_copy, ensure_open
from pgbridge.aio import wait_for_notifies, wait_for_notifies_async
from pgbridge.exceptions import ConnectionStateError
from pgbridge.features import require

__all__ = [
    'close',
    'close_async',
    'reload_types',
    'timeout_seconds',
    'unprepare_all',
    'wait',
    'wait_async',
]

logger = logging.getLogger(__name__)


def timeout_seconds(timeout: float | timedelta | None) -> float | None:
    """Normalize a timeout to seconds.

    >>> timeout_seconds(timedelta(milliseconds=250))
    0.25
    >>> timeout_seconds(None) is None
    True
    >>> timeout_seconds(-3)
    0
    """
    if timeout is None:
        return None
    if isinstance(timeout, timedelta):
        timeout = timeout.total_seconds()
    return max(timeout, 0)


def _release(conn: psycopg.Connection, executor: Any | None) -> None:
    if conn.closed:
        raise ConnectionStateError('The connection is already closed')
    discard_connection_state(conn)
    try:
        if executor is not None:
            executor.close()
    finally:
        if not conn.closed:
            conn.close()
    logger.debug(f'Closed connection {id(conn)}')


def close(conn: psycopg.Connection, executor: Any | None = None) -> None:
    """Close the connection, its executor and any open transfer channel.

    Channels opened on the connection are invalid afterwards. Closing twice
    raises ConnectionStateError.
    """
    _release(conn, executor)


async def close_async(conn: psycopg.Connection, executor: Any | None = None) -> None:
    """Same as `close`, awaitable.

    Terminating the session only sends a Terminate message; the coroutine
    yields to the event loop once the session is released.
    """
    require('async_io')
    _release(conn, executor)
    await asyncio.sleep(0)


def wait(conn: psycopg.Connection, timeout: float | timedelta | None = None) -> bool:
    """Block until a notification is received and dispatched.

    `timeout=None` waits indefinitely and `timeout <= 0` only checks for a
    pending notification. Returns False if the timeout expired first.
    """
    ensure_open(conn)
    received = wait_for_notifies(conn, timeout_seconds(timeout))
    if not received:
        logger.debug(f'No notification within {timeout} on connection {id(conn)}')
    return received


async def wait_async(conn: psycopg.Connection, timeout: float | timedelta | None = None) -> bool:
    """Suspend until a notification is received and dispatched.

    Same timeout rules as `wait`.
    """
    require('async_io')
    ensure_open(conn)
    return await wait_for_notifies_async(conn, timeout_seconds(timeout))


def unprepare_all(conn: psycopg.Connection) -> None:
    """Deallocate every prepared statement of this connection.

    Other sessions keep their own prepared statements.
    """
    ensure_no_copy(ensure_open(conn))
    # psycopg executes the statements it prepared by name until its own cache
    # is cleared. Clearing queues a DEALLOCATE ALL that psycopg would only send
    # after the next statement, so the queue is flushed here.
    prepared = conn._prepared
    with conn.lock:
        queued = prepared.clear()
        if queued:
            conn.wait(prepared.maintain_gen(conn))
    if not queued:
        # Only statements prepared with PREPARE, if any
        conn.execute('DEALLOCATE ALL')
    logger.debug(f'Deallocated prepared statements on connection {id(conn)}')


def reload_types(conn: psycopg.Connection) -> list[str]:
    """Refetch the catalog types mapped on this connection only.
    """
    ensure_open(conn)
    return connection_state(conn).type_mapper.reload()
