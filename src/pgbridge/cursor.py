"""
Cursor wrapper for the executor.

Implements the parts of Python DB-API 2.0 (PEP-249) the executor needs, on top
of a psycopg cursor returning dictionary rows. Every statement is logged with
its parameters and timed into the owning `ConnectionWrapper`.
"""
import logging
import time
from collections.abc import Iterator
from functools import wraps
from typing import Any

from pgbridge.accessor import ensure_no_copy
from psycopg.rows import dict_row

__all__ = ['Cursor', 'dumpsql', 'get_dict_cursor']

logger = logging.getLogger(__name__)


def dumpsql(func):
    """Log the statement, its outcome and its duration."""
    @wraps(func)
    def wrapper(self, operation: str, *args: Any):
        start = time.time()
        logger.debug(f'SQL:\n{operation}\nargs: {args}')
        try:
            result = func(self, operation, *args)
            logger.debug(f'Query result: {self.dbapi_cursor.statusmessage}')
            return result
        except Exception:
            logger.error(f'Error with query:\nSQL:\n{operation}\nargs: {args}')
            raise
        finally:
            elapsed = time.time() - start
            self.connwrapper.addcall(elapsed)
            logger.debug(f'Query time: {elapsed:.4f}s')
    return wrapper


class Cursor:
    """psycopg cursor bound to the wrapper that records call statistics.
    """

    def __init__(self, cursor: Any, connection_wrapper: Any) -> None:
        self.dbapi_cursor = cursor
        self.connwrapper = connection_wrapper

    def __getattr__(self, name: str) -> Any:
        return getattr(self.dbapi_cursor, name)

    def __iter__(self) -> Iterator[dict]:
        return iter(self.dbapi_cursor)

    def __enter__(self) -> 'Cursor':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def rowcount(self) -> int:
        return self.dbapi_cursor.rowcount

    def close(self) -> None:
        self.dbapi_cursor.close()

    def fetchall(self) -> list[dict]:
        """Remaining rows; empty for statements that return none."""
        if self.dbapi_cursor.description is None:
            return []
        return self.dbapi_cursor.fetchall()

    @dumpsql
    def execute(self, operation: str, *args: Any) -> int:
        """Execute a statement and return its row count.

        Positional arguments may be given spread out or as a single
        list/tuple; a single dict is passed as named parameters.
        """
        if len(args) == 1 and isinstance(args[0], (list, tuple, dict)):
            params = args[0]
        else:
            params = args or None
        self.dbapi_cursor.execute(operation, params)
        return self.dbapi_cursor.rowcount


def get_dict_cursor(cn: Any) -> Cursor:
    """Cursor returning rows as dictionaries on the executor's psycopg connection."""
    raw_conn = ensure_no_copy(cn.dbapi_connection.driver_connection)
    return Cursor(raw_conn.cursor(row_factory=dict_row), cn)
