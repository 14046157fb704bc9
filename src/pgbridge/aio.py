"""
Short command exchanges and notification polling on top of libpq.

psycopg keeps libpq in nonblocking mode, so a command can be sent with
`send_query` and its results collected whenever the socket is readable. The
same loop is driven two ways:

- synchronously, waiting on the socket with `selectors`
- asynchronously, waiting with `loop.add_reader` / `loop.add_writer`, so no
  thread is occupied while the server is working

Notifications found on the way are handed to psycopg's own notify callback,
which forwards them to the handlers registered on the connection.
"""
import asyncio
import logging
import selectors
import time

import psycopg
from pgbridge.accessor import ensure_no_copy
from psycopg import errors as e
from psycopg import pq

__all__ = [
    'deliver_pending_notifies',
    'run_command',
    'run_command_async',
    'wait_for_notifies',
    'wait_for_notifies_async',
    'wait_socket',
    'wait_socket_async',
]

logger = logging.getLogger(__name__)

OK_STATUSES = (pq.ExecStatus.COMMAND_OK, pq.ExecStatus.TUPLES_OK, pq.ExecStatus.EMPTY_QUERY)


def wait_socket(fileno: int, write: bool = False, timeout: float | None = None) -> bool:
    """Block until the socket is ready. Returns False on timeout.
    """
    events = selectors.EVENT_WRITE if write else selectors.EVENT_READ
    with selectors.DefaultSelector() as selector:
        selector.register(fileno, events)
        return bool(selector.select(timeout))


async def wait_socket_async(fileno: int, write: bool = False) -> None:
    """Suspend until the socket is ready.
    """
    loop = asyncio.get_running_loop()
    ready = loop.create_future()

    def wakeup() -> None:
        if not ready.done():
            ready.set_result(None)

    if write:
        loop.add_writer(fileno, wakeup)
    else:
        loop.add_reader(fileno, wakeup)
    try:
        await ready
    finally:
        if write:
            loop.remove_writer(fileno)
        else:
            loop.remove_reader(fileno)


def deliver_pending_notifies(pgconn: pq.abc.PGconn) -> int:
    """Pass notifications already read by libpq to the connection callback.

    Returns how many notifications were delivered.
    """
    count = 0
    while True:
        notify = pgconn.notifies()
        if notify is None:
            return count
        count += 1
        if pgconn.notify_handler is not None:
            pgconn.notify_handler(notify)


def _fetch_ready_results(pgconn: pq.abc.PGconn, results: list) -> bool:
    """Collect the results libpq can return without blocking.

    Returns True once the command is complete.
    """
    pgconn.consume_input()
    while not pgconn.is_busy():
        result = pgconn.get_result()
        if result is None:
            return True
        results.append(result)
    return False


def _check_results(conn: psycopg.Connection, results: list) -> None:
    for result in results:
        if result.status not in OK_STATUSES:
            raise e.error_from_result(result, encoding=conn.info.encoding)


def _complete_blocking(conn: psycopg.Connection, results: list) -> None:
    pgconn = conn.pgconn
    while pgconn.flush():
        wait_socket(pgconn.socket, write=True)
    while not _fetch_ready_results(pgconn, results):
        wait_socket(pgconn.socket)
    deliver_pending_notifies(pgconn)


def run_command(conn: psycopg.Connection, command: bytes) -> None:
    """Run a parameterless command, blocking the calling thread.

    Server errors are raised as the psycopg exception matching the SQLSTATE.
    """
    ensure_no_copy(conn)
    results: list = []
    with conn.lock:
        conn.pgconn.send_query(command)
        _complete_blocking(conn, results)
    _check_results(conn, results)


async def run_command_async(conn: psycopg.Connection, command: bytes) -> None:
    """Run a parameterless command without blocking the event loop.

    If the awaiting task is cancelled after the command was sent, the
    exchange is completed before CancelledError propagates so that the
    connection is left ready for the next command.
    """
    ensure_no_copy(conn)
    pgconn = conn.pgconn
    results: list = []
    pgconn.send_query(command)
    try:
        while pgconn.flush():
            await wait_socket_async(pgconn.socket, write=True)
        while not _fetch_ready_results(pgconn, results):
            await wait_socket_async(pgconn.socket)
    except asyncio.CancelledError:
        logger.warning(f'Cancelled while waiting for {command!r}; completing the exchange')
        _complete_blocking(conn, results)
        raise
    deliver_pending_notifies(pgconn)
    _check_results(conn, results)


def _remaining(deadline: float | None, now: float) -> float | None:
    if deadline is None:
        return None
    return deadline - now


def wait_for_notifies(conn: psycopg.Connection, timeout: float | None = None) -> bool:
    """Block until at least one notification arrives or the timeout expires.

    `timeout=None` waits indefinitely, `timeout <= 0` only checks what is
    already pending. Returns True if notifications were delivered.
    """
    ensure_no_copy(conn)
    pgconn = conn.pgconn
    deadline = None if timeout is None else time.monotonic() + max(timeout, 0)
    with conn.lock:
        while True:
            pgconn.consume_input()
            if deliver_pending_notifies(pgconn):
                return True
            remaining = _remaining(deadline, time.monotonic())
            if remaining is not None and remaining <= 0:
                return False
            wait_socket(pgconn.socket, timeout=remaining)


async def wait_for_notifies_async(conn: psycopg.Connection, timeout: float | None = None) -> bool:
    """Suspend until at least one notification arrives or the timeout expires.

    Same timeout rules as `wait_for_notifies`.
    """
    ensure_no_copy(conn)
    pgconn = conn.pgconn
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + max(timeout, 0)
    while True:
        pgconn.consume_input()
        if deliver_pending_notifies(pgconn):
            return True
        remaining = _remaining(deadline, loop.time())
        if remaining is None:
            await wait_socket_async(pgconn.socket)
            continue
        if remaining <= 0:
            return False
        try:
            await asyncio.wait_for(wait_socket_async(pgconn.socket), remaining)
        except TimeoutError:
            return False
