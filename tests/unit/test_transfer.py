import psycopg
import pytest
from pgbridge.accessor import connection_state
from pgbridge.exceptions import ConnectionStateError, CopyModeError
from pgbridge.transfer import BinaryExporter, BinaryImporter, CopyCancelled
from pgbridge.transfer import CopyDirection, RawCopyStream, TextExporter
from pgbridge.transfer import TextImporter
from psycopg import pq

from tests.fixtures.mocks import make_copy_cursor

COPY_IN = pq.ExecStatus.COPY_IN
COPY_OUT = pq.ExecStatus.COPY_OUT


def exit_reason(copy_cm):
    """The exception type the Copy context was exited with."""
    return copy_cm.__exit__.call_args.args[0]


class TestOpen:

    def test_records_open_channel(self, pg_connection):
        make_copy_cursor(pg_connection, COPY_OUT)
        exporter = TextExporter(pg_connection, 'COPY t TO STDOUT')
        assert connection_state(pg_connection).channel is exporter
        assert exporter.direction is CopyDirection.EXPORT
        assert not exporter.binary
        exporter.cancel()

    def test_backend_error_unchanged(self, pg_connection):
        cursor, copy_cm, _ = make_copy_cursor(pg_connection)
        error = psycopg.errors.SyntaxError('syntax error at or near "COPYY"')
        copy_cm.__enter__.side_effect = error

        with pytest.raises(psycopg.errors.SyntaxError) as info:
            TextExporter(pg_connection, 'COPYY t TO STDOUT')

        assert info.value is error
        cursor.__exit__.assert_called_once()
        assert connection_state(pg_connection).channel is None

    def test_second_channel_refused(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT)
        copy.read.side_effect = [b'1\n', b'']
        first = TextExporter(pg_connection, 'COPY t TO STDOUT')

        with pytest.raises(psycopg.OperationalError, match='another command is already in progress'):
            TextExporter(pg_connection, 'COPY u TO STDOUT')

        pg_connection.cursor.assert_called_once()
        assert connection_state(pg_connection).channel is first
        assert first.read() == '1\n'
        first.close()
        assert not pg_connection.lock.locked()

    def test_new_channel_after_close(self, pg_connection):
        make_copy_cursor(pg_connection, COPY_IN)
        TextImporter(pg_connection, 'COPY t FROM STDIN').close()
        second = TextImporter(pg_connection, 'COPY t FROM STDIN')
        assert connection_state(pg_connection).channel is second
        second.close()

    def test_closed_connection(self, pg_connection):
        pg_connection.close()
        with pytest.raises(ConnectionStateError):
            TextExporter(pg_connection, 'COPY t TO STDOUT')

    @pytest.mark.parametrize(('channel', 'status', 'binary'), [
        (TextExporter, COPY_IN, False),
        (TextExporter, COPY_OUT, True),
        (TextImporter, COPY_OUT, False),
        (TextImporter, COPY_IN, True),
        (BinaryExporter, COPY_OUT, False),
        (BinaryExporter, COPY_IN, True),
        (BinaryImporter, COPY_IN, False),
        (BinaryImporter, COPY_OUT, True),
        (RawCopyStream, COPY_OUT, False),
        (RawCopyStream, COPY_IN, False),
    ])
    def test_mode_mismatch(self, pg_connection, channel, status, binary):
        cursor, copy_cm, _ = make_copy_cursor(pg_connection, status, binary)
        with pytest.raises(CopyModeError):
            channel(pg_connection, 'COPY t ...')
        assert exit_reason(copy_cm) is CopyModeError
        cursor.__exit__.assert_called_once()
        assert connection_state(pg_connection).channel is None

    def test_not_a_copy(self, pg_connection):
        make_copy_cursor(pg_connection, pq.ExecStatus.COPY_BOTH)
        with pytest.raises(CopyModeError, match='did not start'):
            RawCopyStream(pg_connection, 'START_REPLICATION')


class TestTextExporter:

    def test_iterates_lines(self, pg_connection):
        _, copy_cm, copy = make_copy_cursor(pg_connection, COPY_OUT)
        copy.read.side_effect = [b'1\tAlice\n', b'2\tBob\n', b'']

        with TextExporter(pg_connection, 'COPY t TO STDOUT') as exporter:
            assert list(exporter) == ['1\tAlice\n', '2\tBob\n']

        assert exporter.closed
        assert copy_cm.__exit__.call_args.args == (None, None, None)
        assert connection_state(pg_connection).channel is None

    def test_multibyte_split_across_chunks(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT)
        copy.read.side_effect = [b'caf\xc3', b'\xa9\n', b'']
        with TextExporter(pg_connection, 'COPY t TO STDOUT') as exporter:
            assert exporter.readline() == 'café\n'
            assert exporter.readline() == ''

    def test_read_sizes(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT)
        copy.read.side_effect = [b'abc\n', b'def\n', b'']
        with TextExporter(pg_connection, 'COPY t TO STDOUT') as exporter:
            assert exporter.read(2) == 'ab'
            assert exporter.read() == 'c\ndef\n'

    def test_close_before_drained_cancels(self, pg_connection):
        _, copy_cm, copy = make_copy_cursor(pg_connection, COPY_OUT)
        copy.read.side_effect = [b'1\tAlice\n']
        pg_connection.pgconn.transaction_status = int(pq.TransactionStatus.ACTIVE)

        exporter = TextExporter(pg_connection, 'COPY t TO STDOUT')
        exporter.readline()
        exporter.close()

        assert exit_reason(copy_cm) is CopyCancelled
        assert exporter.closed

    def test_use_after_close(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT)
        copy.read.return_value = b''
        exporter = TextExporter(pg_connection, 'COPY t TO STDOUT')
        exporter.close()
        exporter.close()
        with pytest.raises(ConnectionStateError, match='closed'):
            exporter.readline()

    def test_error_inside_block_aborts(self, pg_connection):
        _, copy_cm, _ = make_copy_cursor(pg_connection, COPY_OUT)
        with pytest.raises(KeyError):
            with TextExporter(pg_connection, 'COPY t TO STDOUT'):
                raise KeyError('x')
        assert exit_reason(copy_cm) is KeyError


class TestTextImporter:

    def test_write_encodes(self, pg_connection):
        _, copy_cm, copy = make_copy_cursor(pg_connection, COPY_IN)
        with TextImporter(pg_connection, 'COPY t FROM STDIN') as importer:
            assert importer.write('1\tcafé\n') == 7
            importer.writelines(['2\tBob\n'])
            importer.write_row((3, 'Charlie'))

        assert [c.args[0] for c in copy.write.call_args_list] == [b'1\tcaf\xc3\xa9\n', b'2\tBob\n']
        copy.write_row.assert_called_once_with((3, 'Charlie'))
        assert copy_cm.__exit__.call_args.args == (None, None, None)

    def test_cancel_discards(self, pg_connection):
        _, copy_cm, _ = make_copy_cursor(pg_connection, COPY_IN)
        importer = TextImporter(pg_connection, 'COPY t FROM STDIN')
        importer.cancel()
        assert exit_reason(copy_cm) is CopyCancelled
        with pytest.raises(ConnectionStateError):
            importer.write('x\n')
        with pytest.raises(ConnectionStateError):
            importer.cancel()


class TestBinaryExporter:

    def test_rows(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT, binary=True)
        copy.rows.return_value = iter([(1, 'Alice'), (2, 'Bob')])
        with BinaryExporter(pg_connection, 'COPY t TO STDOUT (FORMAT BINARY)') as exporter:
            exporter.set_types(['int4', 'text'])
            assert list(exporter) == [(1, 'Alice'), (2, 'Bob')]
        copy.set_types.assert_called_once_with(['int4', 'text'])

    def test_read_row(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT, binary=True)
        copy.read_row.side_effect = [(1,), None]
        with BinaryExporter(pg_connection, 'COPY t TO STDOUT (FORMAT BINARY)') as exporter:
            assert exporter.read_row() == (1,)
            assert exporter.read_row() is None


class TestBinaryImporter:

    def test_complete_returns_rowcount(self, pg_connection):
        _, copy_cm, copy = make_copy_cursor(pg_connection, COPY_IN, binary=True, rowcount=2)
        with BinaryImporter(pg_connection, 'COPY t FROM STDIN (FORMAT BINARY)') as importer:
            importer.set_types(['int4', 'text'])
            importer.write_rows([(1, 'Alice'), (2, 'Bob')])
            assert importer.complete() == 2

        assert copy.write_row.call_count == 2
        assert copy_cm.__exit__.call_count == 1
        assert copy_cm.__exit__.call_args.args == (None, None, None)

    def test_close_without_complete_cancels(self, pg_connection):
        _, copy_cm, _ = make_copy_cursor(pg_connection, COPY_IN, binary=True)
        with BinaryImporter(pg_connection, 'COPY t FROM STDIN (FORMAT BINARY)') as importer:
            importer.write_row((1, 'Alice'))
        assert exit_reason(copy_cm) is CopyCancelled
        assert importer.rowcount == -1

    def test_complete_twice(self, pg_connection):
        make_copy_cursor(pg_connection, COPY_IN, binary=True, rowcount=0)
        importer = BinaryImporter(pg_connection, 'COPY t FROM STDIN (FORMAT BINARY)')
        importer.complete()
        with pytest.raises(ConnectionStateError):
            importer.complete()


class TestRawCopyStream:

    def test_buffered_reads(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT, binary=True)
        copy.read.side_effect = [b'abcdef', b'gh', b'']
        with RawCopyStream(pg_connection, 'COPY t TO STDOUT (FORMAT BINARY)') as stream:
            assert stream.readable() and not stream.writable()
            assert stream.read(4) == b'abcd'
            assert stream.read(4) == b'efgh'
            assert stream.read(4) == b''

    def test_read_all(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT, binary=True)
        copy.read.side_effect = [memoryview(b'PGCOPY'), b'\xff\xff', b'']
        with RawCopyStream(pg_connection, 'COPY t TO STDOUT (FORMAT BINARY)') as stream:
            assert stream.read() == b'PGCOPY\xff\xff'

    def test_write_passes_bytes_through(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_IN, binary=True)
        payload = b'PGCOPY\n\xff\r\n\x00'
        with RawCopyStream(pg_connection, 'COPY t FROM STDIN (FORMAT BINARY)') as stream:
            assert stream.write(payload) == len(payload)
            with pytest.raises(ConnectionStateError):
                stream.read()
        copy.write.assert_called_once_with(payload)

    def test_cannot_write_export(self, pg_connection):
        _, _, copy = make_copy_cursor(pg_connection, COPY_OUT, binary=True)
        copy.read.return_value = b''
        with RawCopyStream(pg_connection, 'COPY t TO STDOUT (FORMAT BINARY)') as stream:
            with pytest.raises(ConnectionStateError):
                stream.write(b'x')


def test_invalidate(pg_connection):
    _, copy_cm, copy = make_copy_cursor(pg_connection, COPY_OUT)
    exporter = TextExporter(pg_connection, 'COPY t TO STDOUT')

    exporter.invalidate()

    with pytest.raises(ConnectionStateError, match='invalidated'):
        exporter.readline()
    exporter.close()
    copy_cm.__exit__.assert_not_called()
    copy.read.assert_not_called()
