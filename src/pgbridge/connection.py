"""
The generic executor under the PostgreSQL adapter.

`connect()` (from options), `connect_url()` (from a URL) and
`wrap_connection()` (from an existing psycopg connection) all return a
`ConnectionWrapper`. The wrapper runs SQL through a dictionary cursor and owns
the psycopg connection behind it; the adapter only borrows that connection
through `dbapi_connection`.

SQLAlchemy engines are shared per URL and pool settings, and disposed when the
interpreter exits.
"""
import atexit
import logging
import threading
import time
from collections.abc import Callable, Iterator
from functools import wraps
from typing import Any, Self, TypeVar

import psycopg
import sqlalchemy as sa
from pgbridge.cursor import Cursor, get_dict_cursor
from pgbridge.exceptions import DbConnectionError, is_retryable_error
from pgbridge.options import DatabaseOptions
from pgbridge.sql import CommandType, build_command
from psycopg import pq
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool, StaticPool

from libb import attrdict, load_options

__all__ = [
    'ConnectionWrapper',
    'check_connection',
    'configure_connection',
    'connect',
    'connect_url',
    'create_url_from_options',
    'dispose_all_engines',
    'get_engine_for_url',
    'normalize_url',
    'wrap_connection',
]

logger = logging.getLogger(__name__)

T = TypeVar('T')

_engines: dict[tuple, Engine] = {}
_engines_lock = threading.RLock()


def create_url_from_options(options: DatabaseOptions,
                            url_creator: Callable[..., sa.URL] = sa.URL.create) -> sa.URL:
    """Build the psycopg URL for a set of options.
    """
    query = {'application_name': options.appname}
    if options.timeout:
        query['connect_timeout'] = str(options.timeout)
    return url_creator(
        drivername='postgresql+psycopg',
        username=options.username,
        password=options.password,
        host=options.hostname,
        port=options.port,
        database=options.database,
        query=query,
    )


def normalize_url(url: sa.URL | str) -> sa.URL:
    """Point plain `postgresql://` and `postgres://` URLs at the psycopg driver.

    >>> normalize_url('postgres://me@localhost/app').drivername
    'postgresql+psycopg'
    >>> normalize_url('postgresql+psycopg://me@localhost/app').database
    'app'
    """
    url = sa.make_url(url)
    if url.drivername in {'postgresql', 'postgres'}:
        url = url.set(drivername='postgresql+psycopg')
    return url


def _backoff(first: float, factor: float) -> Iterator[float]:
    delay = first
    while True:
        yield delay
        delay *= factor


def check_connection(func: Callable[..., T] | None = None, *, max_retries: int = 3,
                     retry_delay: float = 1, retry_errors: type | tuple[type, ...] | None = None,
                     retry_backoff: float = 1.5, check_retryable: bool = True,
                     sleep_func: Callable[[float], None] = time.sleep) -> Callable[..., T]:
    """Retry a call that failed because the connection dropped.

    Errors of `retry_errors` (connection errors by default) are retried up to
    `max_retries` attempts in total, sleeping `retry_delay` seconds first and
    `retry_backoff` times longer after each failure. With `check_retryable`
    only errors that look transient (see `is_retryable_error`) are retried.

    Works both as `@check_connection` and `@check_connection(...)`.
    """
    errors = retry_errors or DbConnectionError

    def decorator(f: Callable[..., T]) -> Callable[..., T]:
        @wraps(f)
        def inner(*args: Any, **kwargs: Any) -> T:
            delays = _backoff(retry_delay, retry_backoff)
            for attempt in range(1, max_retries + 1):
                try:
                    return f(*args, **kwargs)
                except errors as err:
                    if check_retryable and not is_retryable_error(err):
                        raise
                    if attempt == max_retries:
                        logger.error(f'Giving up on {f.__name__} after {attempt} attempts: {err}')
                        raise
                    logger.warning(f'{f.__name__} failed (attempt {attempt}/{max_retries}): {err}')
                    sleep_func(next(delays))

        return inner

    return decorator if func is None else decorator(func)


def _pool_arguments(use_pool: bool, pool_size: int, pool_recycle: int,
                    pool_timeout: int) -> dict[str, Any]:
    if not use_pool:
        return {'poolclass': NullPool}
    return {
        'pool_size': pool_size,
        'max_overflow': 10,
        'pool_recycle': pool_recycle,
        'pool_timeout': pool_timeout,
        'pool_pre_ping': True,
        'pool_reset_on_return': 'rollback',
    }


def get_engine_for_url(url: sa.URL | str, use_pool: bool = False,
                       pool_size: int = 5, pool_recycle: int = 300,
                       pool_timeout: int = 30,
                       engine_factory: Callable[..., Engine] = sa.create_engine,
                       **kwargs: Any) -> Engine:
    """Return the shared engine for `url`, creating it with `engine_factory`.

    One engine is kept per URL, pool settings and factory. Extra keyword
    arguments go to the factory when the engine is created.
    """
    url = sa.make_url(url)
    key = (url.render_as_string(hide_password=False), use_pool, pool_size,
           pool_recycle, pool_timeout, engine_factory)
    with _engines_lock:
        engine = _engines.get(key)
        if engine is None:
            arguments = _pool_arguments(use_pool, pool_size, pool_recycle, pool_timeout)
            engine = engine_factory(url, **(arguments | kwargs))
            _engines[key] = engine
            logger.debug(f'Created engine for {url.render_as_string()}')
        return engine


@atexit.register
def dispose_all_engines() -> None:
    """Dispose every shared engine; later connects create new ones.
    """
    with _engines_lock:
        engines = list(_engines.values())
        _engines.clear()
    for engine in engines:
        engine.dispose()
    logger.debug(f'Disposed {len(engines)} engines')


def configure_connection(sa_connection: sa.engine.Connection) -> None:
    """Put a fresh connection in auto-commit mode.

    Explicit transactions are started with BEGIN by the adapter, never
    implicitly by the driver.
    """
    sa_connection.connection.driver_connection.autocommit = True


class ConnectionWrapper:
    """Executor over one SQLAlchemy connection.

    Runs SQL with a dictionary cursor, interpreting the text according to
    `command_type`, and counts the calls made and the time they took.
    Attributes it does not define are looked up on the SQLAlchemy connection,
    then on its DBAPI connection.
    """

    def __init__(self, sa_connection: sa.engine.Connection | None = None,
                 options: DatabaseOptions | None = None,
                 command_type: CommandType | str | None = None) -> None:
        self.sa_connection = sa_connection
        self.engine = sa_connection.engine if sa_connection else None
        self.options = options
        self.dbapi_connection = sa_connection.connection if sa_connection else None
        if command_type is None and options is not None:
            command_type = options.command_type
        self.command_type = CommandType.parse(command_type)
        self.calls = 0
        self.time = 0

    def __repr__(self) -> str:
        state = 'closed' if self.closed else 'open'
        return f'<ConnectionWrapper {state} command_type={self.command_type.value}>'

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None,
                 exc_tb: Any | None) -> None:
        try:
            self.close()
        except Exception as e:
            logger.debug(f'Error closing connection in __exit__: {e}')

    def __getattr__(self, name: str) -> Any:
        if name in {'sa_connection', 'dbapi_connection'}:
            raise AttributeError(name)
        for target in (self.sa_connection, self.dbapi_connection):
            if hasattr(target, name):
                return getattr(target, name)
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    @property
    def closed(self) -> bool:
        """True once the SQLAlchemy connection has been closed."""
        return self.sa_connection is None or self.sa_connection.closed

    def _reconnect(self) -> None:
        self.sa_connection = self.engine.connect()
        self.dbapi_connection = self.sa_connection.connection
        configure_connection(self.sa_connection)
        logger.debug('Reconnected closed connection')

    def cursor(self) -> Cursor:
        """Dictionary cursor on the current connection.

        A closed connection is replaced by a new one from the engine first.
        """
        if self.sa_connection is not None and self.sa_connection.closed:
            self._reconnect()
        return get_dict_cursor(self)

    def addcall(self, elapsed: float) -> None:
        self.calls += 1
        self.time += elapsed

    def commit(self) -> None:
        self.dbapi_connection.commit()

    def rollback(self) -> None:
        self.dbapi_connection.rollback()

    def close(self) -> None:
        """Give the connection back to the engine.

        Only the driver's implicit transaction is committed. A transaction
        opened explicitly with BEGIN on an auto-commit connection is left to
        the server, which rolls it back when the session ends.
        """
        if self.closed:
            return

        raw_conn = self.dbapi_connection.driver_connection
        if not raw_conn.closed and not raw_conn.autocommit:
            try:
                self.commit()
            except psycopg.Error as e:
                logger.debug(f'Could not commit before close: {e}')

        self.sa_connection.close()
        average = self.time / max(1, self.calls)
        logger.debug(f'Connection closed after {self.calls} queries, {self.time:.2f}s ({average:.3f}s each)')

    @check_connection
    def execute(self, sql: str, *args: Any) -> int:
        """Run a command and return the affected row count.
        """
        sql, args = build_command(sql, args, self.command_type)
        with self.cursor() as cursor:
            cursor.execute(sql, *args)
            return cursor.rowcount

    @check_connection
    def select(self, sql: str, *args: Any) -> list[dict[str, Any]]:
        """Run a query or stored procedure and return its rows as dicts.
        """
        sql, args = build_command(sql, args, self.command_type)
        with self.cursor() as cursor:
            cursor.execute(sql, *args)
            result = cursor.fetchall()
        logger.debug(f'Select query returned {len(result)} rows')
        return result

    def select_row(self, sql: str, *args: Any) -> attrdict:
        """Return the only row of a query.

        Raises AssertionError unless exactly one row comes back.
        """
        rows = self.select(sql, *args)
        assert len(rows) == 1, f'Expected one row, got {len(rows)}'
        return attrdict(rows[0])

    def select_scalar(self, sql: str, *args: Any) -> Any:
        """Return the first column of the only row of a query.
        """
        return next(iter(self.select_row(sql, *args).values()))


def _open(engine: Engine, options: DatabaseOptions | None = None,
          command_type: CommandType | str | None = None) -> ConnectionWrapper:
    sa_connection = engine.connect()
    configure_connection(sa_connection)
    return ConnectionWrapper(sa_connection, options, command_type)


def connect_url(url: sa.URL | str, command_type: CommandType | str | None = None,
                engine_factory: Callable[..., Engine] = sa.create_engine,
                **engine_kwargs: Any) -> ConnectionWrapper:
    """Connect with a URL such as `postgresql://user:pw@host/db`.

    `engine_factory` is called like `sqlalchemy.create_engine`, with the URL
    and the engine keyword arguments.
    """
    engine = get_engine_for_url(normalize_url(url), engine_factory=engine_factory, **engine_kwargs)
    return _open(engine, command_type=command_type)


def wrap_connection(connection: psycopg.Connection,
                    command_type: CommandType | str | None = None) -> ConnectionWrapper:
    """Wrap an existing psycopg connection in an executor.

    An idle connection is switched to autocommit, as engine connections are,
    so that statements run through the executor do not leave the implicit
    transaction open that would keep `begin_transaction` from starting one.
    Closing the executor leaves the psycopg connection open.
    """
    if not connection.autocommit:
        status = connection.info.transaction_status
        if status == pq.TransactionStatus.IDLE:
            connection.autocommit = True
        else:
            logger.warning(f'Adopted connection is {status.name}; leaving autocommit off')
    engine = sa.create_engine('postgresql+psycopg://', creator=lambda: connection,
                              poolclass=StaticPool)
    return ConnectionWrapper(engine.connect(), command_type=command_type)


@load_options(cls=DatabaseOptions)
def connect(options: DatabaseOptions | dict[str, Any] | str,
            config: Any | None = None, **kw: Any) -> ConnectionWrapper:
    """Open an executor from connection options.

    `options` is a DatabaseOptions, a dict, or the name of a setting in the
    `config` module; keyword arguments override single options.
    """
    if not isinstance(options, DatabaseOptions):
        options = load_options(cls=DatabaseOptions)(lambda o, c: o)(options, config, **kw)

    engine = get_engine_for_url(create_url_from_options(options),
                                use_pool=options.use_pool,
                                pool_size=options.pool_max_connections,
                                pool_recycle=options.pool_max_idle_time,
                                pool_timeout=options.pool_wait_timeout)
    return _open(engine, options)
