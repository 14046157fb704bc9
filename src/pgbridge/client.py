"""
PostgreSQL capability adapter over the generic executor.

`PostgresClient` is composed from an executor (anything with `execute`,
`select` and `dbapi_connection`, normally a `ConnectionWrapper`) and a
resolver returning the executor's current connection. It adds what only
PostgreSQL offers: notices and LISTEN/NOTIFY, COPY channels, explicit
transactions with async begin, notification waits and session resets.

Every operation resolves the psycopg connection again, so the client follows
the executor across reconnects and never keeps a connection alive by itself.
Executor verbs (`execute`, `select`, `select_scalar`, ...) are delegated.

Testing notes:

The resolver is the seam for unit tests; pass a fake executor and a
resolver returning a `MagicMock(spec=psycopg.Connection)`:

    client = PostgresClient(FakeExecutor(), resolver=lambda: fake_conn)
"""
import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any, Self

import psycopg
import sqlalchemy as sa
from pgbridge import lifecycle
from pgbridge.accessor import connection_state, ensure_no_copy, ensure_open
from pgbridge.accessor import executor_resolver, resolve_connection
from pgbridge.connection import ConnectionWrapper, connect, connect_url
from pgbridge.connection import wrap_connection
from pgbridge.events import EventKind, Subscription
from pgbridge.exceptions import ConnectionStateError
from pgbridge.features import Features, get_features
from pgbridge.options import DatabaseOptions
from pgbridge.sql import CommandType
from pgbridge.transaction import PostgresTransaction, begin_transaction
from pgbridge.transaction import begin_transaction_async
from pgbridge.transfer import BinaryExporter, BinaryImporter, RawCopyStream
from pgbridge.transfer import TextExporter, TextImporter
from pgbridge.types import ServerVersion, TypeMapper
from psycopg import IsolationLevel, pq
from psycopg import sql as pgsql
from sqlalchemy.engine import Engine

from libb import load_options

__all__ = ['PostgresClient', 'client']

logger = logging.getLogger(__name__)


class PostgresClient:
    """PostgreSQL-specific operations on an executor's connection.
    """

    def __init__(self, executor: Any, resolver: Callable[[], Any] | None = None) -> None:
        """
        Parameters
            executor: The executor running plain SQL; closed by `close()`
            resolver: Returns the executor's current connection (a psycopg
                connection or a SQLAlchemy pool proxy around one). Defaults
                to reading `executor.dbapi_connection`.
        """
        self._executor = executor
        self._resolver = resolver or executor_resolver(executor)

    @classmethod
    def from_connection_string(cls, url: sa.URL | str,
                               command_type: CommandType | str | None = None,
                               engine_factory: Callable[..., Engine] = sa.create_engine,
                               **engine_kwargs: Any) -> Self:
        """Connect with a URL such as `postgresql://user:pw@host/db`.

        `engine_factory` builds the SQLAlchemy engine and is called like
        `sqlalchemy.create_engine`.
        """
        return cls(connect_url(url, command_type, engine_factory, **engine_kwargs))

    @classmethod
    def from_connection(cls, connection: psycopg.Connection,
                        command_type: CommandType | str | None = None) -> Self:
        """Adopt an existing psycopg connection. `close()` closes it."""
        return cls(wrap_connection(connection, command_type))

    def __repr__(self) -> str:
        return f'<{type(self).__name__} executor={type(self._executor).__name__}>'

    def __getattr__(self, name: str) -> Any:
        """Delegate unknown attributes to the executor."""
        if name in {'_executor', '_resolver'}:
            raise AttributeError(name)
        try:
            return getattr(self._executor, name)
        except AttributeError:
            raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'") from None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any | None) -> None:
        if not self.closed:
            self.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any | None) -> None:
        if not self.closed:
            await self.close_async()

    @property
    def executor(self) -> Any:
        return self._executor

    @property
    def connection(self) -> psycopg.Connection:
        """The executor's current psycopg connection.

        Raises CastError if it is not a psycopg connection and
        ConnectionStateError if it is closed.
        """
        return ensure_open(resolve_connection(self._resolver()))

    @property
    def features(self) -> Features:
        return get_features()

    #
    # connection properties
    #

    @property
    def closed(self) -> bool:
        try:
            self.connection
        except ConnectionStateError:
            return True
        return False

    @property
    def host(self) -> str:
        return self.connection.info.host

    @property
    def port(self) -> int:
        return self.connection.info.port

    @property
    def process_id(self) -> int:
        """PID of the server process handling this session."""
        return self.connection.info.backend_pid

    @property
    def server_version(self) -> ServerVersion:
        return ServerVersion.from_int(self.connection.info.server_version)

    @property
    def timezone(self) -> str | None:
        """The session TimeZone reported by the server, e.g. 'Europe/Rome'."""
        return self.connection.info.parameter_status('TimeZone')

    @property
    def has_integer_datetimes(self) -> bool:
        return self.connection.info.parameter_status('integer_datetimes') == 'on'

    @property
    def integrated_security(self) -> bool:
        """True if the session authenticated with GSSAPI.

        libpq before 16 cannot tell; False is reported there.
        """
        conn = self.connection
        if not self.features.gssapi_status:
            return False
        return bool(conn.pgconn.used_gssapi)

    @property
    def user_name(self) -> str:
        return self.connection.info.user

    @property
    def database_name(self) -> str:
        return self.connection.info.dbname

    @property
    def encoding(self) -> str:
        """Python codec name of the client encoding."""
        return self.connection.info.encoding

    @property
    def transaction_status(self) -> pq.TransactionStatus:
        return self.connection.info.transaction_status

    @property
    def type_mapper(self) -> TypeMapper:
        return connection_state(self.connection).type_mapper

    #
    # notices and notifications
    #

    def subscribe(self, kind: EventKind | str, handler: Callable[[Any], Any]) -> Subscription:
        """Call `handler` for every notice or notification on this connection.
        """
        return connection_state(self.connection).registry.subscribe(kind, handler)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return connection_state(self.connection).registry.unsubscribe(subscription)

    def on_notice(self, handler: Callable[[psycopg.errors.Diagnostic], Any]) -> Subscription:
        return self.subscribe(EventKind.NOTICE, handler)

    def on_notification(self, handler: Callable[[psycopg.Notify], Any]) -> Subscription:
        return self.subscribe(EventKind.NOTIFICATION, handler)

    def listen(self, channel: str) -> None:
        """Start receiving notifications sent on `channel`.

        On a connection that is not in autocommit mode LISTEN takes effect
        when the current transaction commits.
        """
        ensure_no_copy(self.connection).execute(pgsql.SQL('LISTEN {}').format(pgsql.Identifier(channel)))
        logger.debug(f'Listening on {channel}')

    def unlisten(self, channel: str | None = None) -> None:
        """Stop listening on `channel`, or on every channel when omitted."""
        if channel is None:
            ensure_no_copy(self.connection).execute('UNLISTEN *')
        else:
            ensure_no_copy(self.connection).execute(pgsql.SQL('UNLISTEN {}').format(pgsql.Identifier(channel)))
        logger.debug(f"Stopped listening on {channel or 'all channels'}")

    def notify(self, channel: str, payload: str | None = None) -> None:
        """Send a notification on `channel` through this connection."""
        ensure_no_copy(self.connection).execute('select pg_notify(%s, %s)', (channel, payload or ''))

    def wait(self, timeout: float | timedelta | None = None) -> bool:
        """Block until a notification arrives; see `lifecycle.wait`."""
        return lifecycle.wait(self.connection, timeout)

    async def wait_async(self, timeout: float | timedelta | None = None) -> bool:
        return await lifecycle.wait_async(self.connection, timeout)

    #
    # transactions
    #

    def begin_transaction(self, isolation_level: IsolationLevel | int | str | None = None) -> PostgresTransaction:
        return begin_transaction(self.connection, isolation_level)

    async def begin_transaction_async(self, isolation_level: IsolationLevel | int | str | None = None) -> PostgresTransaction:
        """Begin without blocking the event loop.

        Cancel the awaiting task to abandon the begin; no transaction is left
        open and CancellationError propagates.
        """
        return await begin_transaction_async(self.connection, isolation_level)

    #
    # COPY
    #

    def get_raw_copy_stream(self, command: str) -> RawCopyStream:
        """Binary COPY as a byte stream; readable for TO STDOUT, writable for FROM STDIN."""
        return RawCopyStream(self.connection, command)

    def get_text_exporter(self, command: str) -> TextExporter:
        return TextExporter(self.connection, command)

    def get_text_importer(self, command: str) -> TextImporter:
        return TextImporter(self.connection, command)

    def get_binary_exporter(self, command: str) -> BinaryExporter:
        return BinaryExporter(self.connection, command)

    def get_binary_importer(self, command: str) -> BinaryImporter:
        return BinaryImporter(self.connection, command)

    #
    # lifecycle
    #

    def close(self) -> None:
        """Close the session. Open COPY channels become invalid.

        Raises ConnectionStateError if already closed.
        """
        lifecycle.close(self.connection, self._executor)

    async def close_async(self) -> None:
        await lifecycle.close_async(self.connection, self._executor)

    def unprepare_all_statements(self) -> None:
        lifecycle.unprepare_all(self.connection)

    def reload_types(self) -> list[str]:
        """Refetch the catalog types mapped on this connection."""
        return lifecycle.reload_types(self.connection)


@load_options(cls=DatabaseOptions)
def client(options: DatabaseOptions | dict[str, Any] | str,
           config: Any | None = None, **kw: Any) -> PostgresClient:
    """Return a PostgresClient over a new executor connection.

    Options are loaded the same way as for `connect()`.
    """
    executor: ConnectionWrapper = connect(options, config, **kw)
    return PostgresClient(executor)
