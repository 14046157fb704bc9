import asyncio

import psycopg
import pytest
from pgbridge.exceptions import BackendProtocolError, CancellationError
from pgbridge.exceptions import CastError, ConnectionStateError, CopyModeError
from pgbridge.exceptions import DatabaseError, DbConnectionError
from pgbridge.exceptions import UnsupportedFeatureError, is_retryable_error


@pytest.mark.parametrize('exc', [
    psycopg.errors.SyntaxError('syntax error at or near "COPYY"'),
    psycopg.errors.UniqueViolation('duplicate key value'),
    psycopg.OperationalError('sending query failed: another command is already in progress'),
], ids=['syntax', 'unique', 'operational'])
def test_backend_errors_caught_unchanged(exc):
    with pytest.raises(BackendProtocolError) as info:
        raise exc
    assert info.value is exc


def test_local_errors_are_not_backend_errors():
    for cls in (CastError, ConnectionStateError, CopyModeError, UnsupportedFeatureError):
        assert issubclass(cls, DatabaseError)
        assert not issubclass(cls, BackendProtocolError)


def test_cast_error_is_type_error():
    assert issubclass(CastError, TypeError)


def test_copy_mode_error_is_value_error():
    assert issubclass(CopyModeError, ValueError)


def test_cancellation_is_asyncio_cancellation():
    assert CancellationError is asyncio.CancelledError


def test_connection_errors_group():
    with pytest.raises(DbConnectionError):
        raise psycopg.OperationalError('server closed the connection unexpectedly')


@pytest.mark.parametrize(('message', 'expected'), [
    ('server closed the connection unexpectedly', True),
    ('SSL SYSCALL error: EOF detected', True),
    ('connection timed out', True),
    ('FATAL: sorry, too many connections for role', True),
    ('syntax error at or near "selec"', False),
    ('duplicate key value violates unique constraint', False),
], ids=['server_closed', 'ssl_eof', 'timeout', 'too_many', 'syntax', 'unique'])
def test_is_retryable_error(message, expected):
    assert is_retryable_error(Exception(message)) is expected
