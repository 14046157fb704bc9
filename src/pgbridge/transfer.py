"""
Bulk import and export through the COPY protocol.

Every channel wraps a psycopg `Copy` opened on its own cursor. The backend
allows a single COPY per connection: while a channel is open the connection
accepts no other command, and trying to open a second channel fails with the
error psycopg reports. Closing a channel returns the connection to
command-ready state:

- importers send the end-of-data marker, committing the rows to the server
  (a `BinaryImporter` only does so after `complete()`)
- exporters that were not read to the end are cancelled and drained

`cancel()` aborts instead: imported rows are discarded, exports are stopped.
Data passes through unchanged; the raw stream never reformats bytes.

Examples
    with client.get_binary_importer('COPY items (id, name) FROM STDIN (FORMAT BINARY)') as importer:
        importer.set_types(['int4', 'text'])
        for row in rows:
            importer.write_row(row)
        importer.complete()

    with client.get_text_exporter('COPY items TO STDOUT (FORMAT CSV)') as exporter:
        for line in exporter:
            ...
"""
import codecs
import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import ExitStack
from enum import Enum
from typing import Any, Self

import psycopg
from pgbridge.accessor import connection_state, ensure_no_copy, ensure_open
from pgbridge.exceptions import ConnectionStateError, CopyModeError
from psycopg import pq

__all__ = [
    'BinaryExporter',
    'BinaryImporter',
    'CopyCancelled',
    'CopyChannel',
    'CopyDirection',
    'RawCopyStream',
    'TextExporter',
    'TextImporter',
]

logger = logging.getLogger(__name__)


class CopyDirection(Enum):
    IMPORT = 'import'
    EXPORT = 'export'


class CopyCancelled(Exception):
    """Reason reported to the server when a channel is cancelled."""


_DIRECTIONS = {
    pq.ExecStatus.COPY_IN: CopyDirection.IMPORT,
    pq.ExecStatus.COPY_OUT: CopyDirection.EXPORT,
}


class CopyChannel:
    """Base of all transfer channels.

    Subclasses set `expected_direction` and `expected_binary`; None accepts
    whatever the server announces.
    """
    expected_direction: CopyDirection | None = None
    expected_binary: bool | None = None

    def __init__(self, connection: psycopg.Connection, command: str) -> None:
        ensure_no_copy(ensure_open(connection))
        self.command = command
        self.rowcount = -1
        self._connection = connection
        self._closed = False
        self._invalidated = False
        self._stack = ExitStack()
        try:
            cursor = self._stack.enter_context(connection.cursor())
            self._stack.callback(self._record_rowcount, cursor)
            self._copy = self._stack.enter_context(cursor.copy(command))
        except BaseException:
            self._closed = True
            self._stack.close()
            raise

        result = cursor.pgresult
        self.direction = _DIRECTIONS.get(result.status)
        self.binary = bool(result.binary_tuples)
        self._check_mode()

        self._state = connection_state(connection)
        self._state.channel = self
        logger.debug(f'Opened {type(self).__name__} ({self._describe()}) on connection {id(connection)}')

    def _describe(self) -> str:
        direction = self.direction.value if self.direction else 'unknown'
        return f"{direction}, {'binary' if self.binary else 'text'}"

    def _check_mode(self) -> None:
        error = None
        if self.direction is None:
            error = CopyModeError(f'{self.command!r} did not start a COPY FROM STDIN or COPY TO STDOUT')
        elif self.expected_direction is not None and self.direction is not self.expected_direction:
            error = CopyModeError(
                f'{type(self).__name__} needs an {self.expected_direction.value} command, '
                f'{self.command!r} started an {self.direction.value}')
        elif self.expected_binary is not None and self.binary is not self.expected_binary:
            wanted = 'binary' if self.expected_binary else 'text'
            error = CopyModeError(f'{type(self).__name__} needs a {wanted} format COPY, got {self._describe()}')
        if error is not None:
            self._abort(error)
            raise error

    def _record_rowcount(self, cursor: psycopg.Cursor) -> None:
        self.rowcount = cursor.rowcount

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any | None) -> None:
        if self._closed:
            return
        if exc_val is not None:
            self._abort(exc_val)
        else:
            self.close()

    def __del__(self) -> None:
        if not getattr(self, '_closed', True):
            logger.warning(f'{type(self).__name__} for {self.command!r} was never closed')

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_import(self) -> bool:
        return self.direction is CopyDirection.IMPORT

    def _ensure_usable(self) -> None:
        if self._invalidated:
            raise ConnectionStateError('The channel was invalidated by closing its connection')
        if self._closed:
            raise ConnectionStateError('The channel is closed')

    def _detach(self) -> None:
        self._closed = True
        if getattr(self, '_state', None) is not None and self._state.channel is self:
            self._state.channel = None

    def _abort(self, reason: BaseException) -> None:
        try:
            self._stack.__exit__(type(reason), reason, reason.__traceback__)
        finally:
            self._detach()
            logger.debug(f'Aborted {type(self).__name__}: {reason}')

    def _in_progress(self) -> bool:
        return self._connection.pgconn.transaction_status == pq.TransactionStatus.ACTIVE

    def close(self) -> None:
        """Finish the transfer and return the connection to command-ready state.
        """
        if self._closed:
            return
        if self._invalidated:
            self._closed = True
            return
        if not self.is_import and self._in_progress():
            self._abort(CopyCancelled('export closed before it was fully read'))
            return
        try:
            self._stack.close()
        finally:
            self._detach()
        logger.debug(f'Closed {type(self).__name__}, rowcount {self.rowcount}')

    def cancel(self) -> None:
        """Abort the transfer. Imported data is discarded by the server.
        """
        self._ensure_usable()
        self._abort(CopyCancelled(f'{type(self).__name__} cancelled by the client'))

    def invalidate(self) -> None:
        """Mark the channel unusable because its connection is going away.
        """
        self._stack.pop_all()
        self._invalidated = True
        self._closed = True
        logger.debug(f'Invalidated {type(self).__name__} for {self.command!r}')


class RawCopyStream(CopyChannel):
    """File-like access to a binary COPY in either direction.

    The direction comes from the command: `FROM STDIN` makes the stream
    writable, `TO STDOUT` readable. Bytes are exchanged exactly as the server
    produces or expects them, binary header and trailer included.
    """
    expected_binary = True

    def __init__(self, connection: psycopg.Connection, command: str) -> None:
        self._buffer = bytearray()
        super().__init__(connection, command)

    def readable(self) -> bool:
        return self.direction is CopyDirection.EXPORT

    def writable(self) -> bool:
        return self.direction is CopyDirection.IMPORT

    def _read_chunk(self) -> bytes:
        return bytes(self._copy.read())

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes, or everything left when `size` is negative.
        """
        self._ensure_usable()
        if not self.readable():
            raise ConnectionStateError('Cannot read from an import stream')
        if size is None or size < 0:
            chunks = [bytes(self._buffer)]
            self._buffer.clear()
            while chunk := self._read_chunk():
                chunks.append(chunk)
            return b''.join(chunks)
        while len(self._buffer) < size:
            chunk = self._read_chunk()
            if not chunk:
                break
            self._buffer += chunk
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def __iter__(self) -> Iterator[bytes]:
        """Yield the data blocks as the server sends them."""
        self._ensure_usable()
        if self._buffer:
            yield bytes(self._buffer)
            self._buffer.clear()
        while chunk := self._read_chunk():
            yield chunk

    def write(self, data: bytes) -> int:
        self._ensure_usable()
        if not self.writable():
            raise ConnectionStateError('Cannot write to an export stream')
        self._copy.write(data)
        return len(data)


class TextExporter(CopyChannel):
    """Reads a text or CSV `COPY ... TO STDOUT` as decoded strings.
    """
    expected_direction = CopyDirection.EXPORT
    expected_binary = False

    def __init__(self, connection: psycopg.Connection, command: str) -> None:
        super().__init__(connection, command)
        self._decoder = codecs.getincrementaldecoder(connection.info.encoding)()
        self._text = ''
        self._eof = False

    def _fill(self) -> bool:
        if self._eof:
            return False
        chunk = self._copy.read()
        if not chunk:
            self._eof = True
            self._text += self._decoder.decode(b'', final=True)
            return False
        self._text += self._decoder.decode(bytes(chunk))
        return True

    def read(self, size: int = -1) -> str:
        self._ensure_usable()
        if size is None or size < 0:
            while self._fill():
                pass
            data, self._text = self._text, ''
            return data
        while len(self._text) < size and self._fill():
            pass
        data, self._text = self._text[:size], self._text[size:]
        return data

    def readline(self) -> str:
        """Return the next line including its newline, '' at the end."""
        self._ensure_usable()
        while '\n' not in self._text and self._fill():
            pass
        line, sep, rest = self._text.partition('\n')
        self._text = rest
        return line + sep

    def __iter__(self) -> Iterator[str]:
        while line := self.readline():
            yield line


class TextImporter(CopyChannel):
    """Writes text or CSV data to a `COPY ... FROM STDIN`.

    Closing sends the end-of-data marker and commits the rows.
    """
    expected_direction = CopyDirection.IMPORT
    expected_binary = False

    def write(self, text: str) -> int:
        """Write text already formatted for the COPY format in use."""
        self._ensure_usable()
        self._copy.write(text.encode(self._connection.info.encoding))
        return len(text)

    def writelines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.write(line)

    def write_row(self, row: Sequence[Any]) -> None:
        """Write one row, letting psycopg format and escape the values."""
        self._ensure_usable()
        self._copy.write_row(row)


class BinaryExporter(CopyChannel):
    """Reads rows from a binary `COPY ... TO STDOUT`.

    Call `set_types()` with the column types to get Python values; otherwise
    each field is returned as bytes.
    """
    expected_direction = CopyDirection.EXPORT
    expected_binary = True

    def set_types(self, types: Sequence[int | str]) -> None:
        self._ensure_usable()
        self._copy.set_types(types)

    def read_row(self) -> tuple[Any, ...] | None:
        """Return the next row, or None when the export is complete."""
        self._ensure_usable()
        return self._copy.read_row()

    def rows(self) -> Iterator[tuple[Any, ...]]:
        self._ensure_usable()
        yield from self._copy.rows()

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        return self.rows()


class BinaryImporter(CopyChannel):
    """Writes rows to a binary `COPY ... FROM STDIN`.

    Rows are only kept if `complete()` is called; closing the importer
    without it cancels the import and the server discards every row.
    """
    expected_direction = CopyDirection.IMPORT
    expected_binary = True

    def set_types(self, types: Sequence[int | str]) -> None:
        self._ensure_usable()
        self._copy.set_types(types)

    def write_row(self, row: Sequence[Any]) -> None:
        self._ensure_usable()
        self._copy.write_row(row)

    def write_rows(self, rows: Iterable[Sequence[Any]]) -> None:
        for row in rows:
            self.write_row(row)

    def complete(self) -> int:
        """Commit the import and return the number of rows imported.
        """
        self._ensure_usable()
        super().close()
        return self.rowcount

    def close(self) -> None:
        if self._closed:
            return
        if self._invalidated:
            self._closed = True
            return
        self._abort(CopyCancelled('binary import closed without complete()'))
