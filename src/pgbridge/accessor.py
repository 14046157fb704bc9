"""
Resolution of the psycopg connection behind an executor.

Every adapter operation calls `resolve_connection()` so that it always sees
the executor's current connection, including after a reconnect. Per-connection
bookkeeping (subscriptions, mapped types, the open COPY channel) lives in a
side table weakly keyed by the psycopg connection and goes away with it.
"""
import logging
import threading
import weakref
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import psycopg
from pgbridge.exceptions import CastError, ConnectionStateError

if TYPE_CHECKING:
    from pgbridge.events import SubscriptionRegistry
    from pgbridge.transfer import CopyChannel
    from pgbridge.types import TypeMapper

__all__ = [
    'ConnectionState',
    'connection_state',
    'discard_connection_state',
    'ensure_no_copy',
    'ensure_open',
    'executor_resolver',
    'resolve_connection',
]

logger = logging.getLogger(__name__)

_states: 'weakref.WeakKeyDictionary[psycopg.Connection, ConnectionState]' = weakref.WeakKeyDictionary()
_states_lock = threading.Lock()


class ConnectionState:
    """Adapter bookkeeping attached to one psycopg connection.
    """

    def __init__(self, connection: psycopg.Connection) -> None:
        # The state must not keep its connection alive
        self._connection = weakref.ref(connection)
        self.lock = threading.Lock()
        self.channel: 'CopyChannel | None' = None
        self._registry: 'SubscriptionRegistry | None' = None
        self._type_mapper: 'TypeMapper | None' = None

    @property
    def connection(self) -> psycopg.Connection:
        conn = self._connection()
        if conn is None:
            raise ConnectionStateError('The connection no longer exists')
        return conn

    @property
    def registry(self) -> 'SubscriptionRegistry':
        """Subscription registry, created and bridged on first use."""
        from pgbridge.events import SubscriptionRegistry
        with self.lock:
            if self._registry is None:
                self._registry = SubscriptionRegistry(self.connection)
            return self._registry

    @property
    def type_mapper(self) -> 'TypeMapper':
        from pgbridge.types import TypeMapper
        with self.lock:
            if self._type_mapper is None:
                self._type_mapper = TypeMapper(self._connection)
            return self._type_mapper

    def invalidate(self) -> None:
        """Forget everything; used when the connection is closed."""
        with self.lock:
            channel, self.channel = self.channel, None
            registry, self._registry = self._registry, None
            self._type_mapper = None
        if channel is not None:
            channel.invalidate()
        if registry is not None:
            registry.clear()


def executor_resolver(executor: Any) -> Callable[[], Any]:
    """Default resolver: the executor's current DBAPI connection.
    """
    return lambda: executor.dbapi_connection


def resolve_connection(source: Any) -> psycopg.Connection:
    """Return the psycopg connection behind an executor, pool proxy or handle.

    `source` may be an executor (anything with `dbapi_connection`), a
    SQLAlchemy pool proxy (anything with `driver_connection`) or a psycopg
    connection. Raises CastError for anything else, and ConnectionStateError
    when the executor has already given its connection back.
    """
    raw_conn = source
    if hasattr(raw_conn, 'dbapi_connection'):
        raw_conn = raw_conn.dbapi_connection
    if hasattr(raw_conn, 'driver_connection'):
        raw_conn = raw_conn.driver_connection

    # A checked-in pool proxy no longer has a driver connection
    if raw_conn is None:
        raise ConnectionStateError('The executor has no open connection')

    if not isinstance(raw_conn, psycopg.Connection):
        raise CastError(
            f'Expected a psycopg.Connection, got {type(raw_conn).__module__}.{type(raw_conn).__qualname__}')

    return raw_conn


def ensure_open(connection: psycopg.Connection) -> psycopg.Connection:
    """Raise ConnectionStateError unless the connection is usable.
    """
    if connection.closed:
        raise ConnectionStateError('The connection is closed')
    if connection.broken:
        raise ConnectionStateError('The connection is broken')
    return connection


def ensure_no_copy(connection: psycopg.Connection) -> psycopg.Connection:
    """Raise the error libpq reports when the connection is busy with a COPY.

    psycopg holds the connection lock for as long as a COPY is open, so any
    other command sent meanwhile from the same thread would wait forever.
    """
    with _states_lock:
        state = _states.get(connection)
    if state is not None and state.channel is not None:
        raise psycopg.OperationalError('another command is already in progress')
    return connection


def connection_state(connection: psycopg.Connection) -> ConnectionState:
    """Return the bookkeeping object for a connection, creating it if needed.
    """
    with _states_lock:
        state = _states.get(connection)
        if state is None:
            state = ConnectionState(connection)
            _states[connection] = state
            logger.debug(f'Created adapter state for connection {id(connection)}')
        return state


def discard_connection_state(connection: psycopg.Connection) -> None:
    """Invalidate and drop the bookkeeping object for a connection, if any.
    """
    with _states_lock:
        state = _states.pop(connection, None)
    if state is not None:
        state.invalidate()
        logger.debug(f'Discarded adapter state for connection {id(connection)}')
