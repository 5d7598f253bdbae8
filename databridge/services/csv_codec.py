"""CSV codec: mapping rows to BOM-framed CSV and CSV bytes back to cell lists.

Files are UTF-8 with a leading byte-order mark (spreadsheet tools need it to
pick the right encoding), comma-delimited, CRLF-terminated, with standard
double-quote escaping.
"""

import csv
import io
import json
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, TextIO

from databridge.services.dataset_types import get_dataset_type
from databridge.services.errors import EmptyInputError, InputTooLargeError, MalformedInputError

UTF8_BOM = b"\xef\xbb\xbf"
DEFAULT_MAX_ROWS = 50_000

Row = Mapping[str, object]
CsvSource = BinaryIO | bytes | bytearray | str | Path


# ------------------------------------------------------------------
# Encoding
# ------------------------------------------------------------------


def encode_header(export_type: str, sample_row: Row) -> list[str]:
    """Header labels: the fixed template for registered types, else the row's key order."""
    dataset_type = get_dataset_type(export_type)
    if dataset_type is not None and dataset_type.fixed_header:
        return dataset_type.headers
    return [str(key) for key in sample_row.keys()]


def column_keys(export_type: str, sample_row: Row) -> list[str]:
    """Row keys read for each header position."""
    dataset_type = get_dataset_type(export_type)
    if dataset_type is not None and dataset_type.fixed_header:
        return dataset_type.field_names
    return [str(key) for key in sample_row.keys()]


def encode_value(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return str(value)


def encode_row(row: Row, column_order: Sequence[str]) -> list[str]:
    """Exactly one cell per column, in column order; missing keys render empty."""
    return [encode_value(row.get(key)) for key in column_order]


class CsvWriter:
    """Writes one CSV file: BOM, then header once, then rows.

    The handle must be a text stream opened with ``encoding="utf-8"`` and
    ``newline=""``. The column order is fixed by the first row written.
    """

    def __init__(self, handle: TextIO, export_type: str):
        self._handle = handle
        self._writer = csv.writer(handle)
        self.export_type = export_type
        self.columns: list[str] | None = None
        self.rows_written = 0
        self._bom_written = False

    @property
    def header_written(self) -> bool:
        return self.columns is not None

    def write_bom(self) -> None:
        if not self._bom_written:
            self._handle.write(UTF8_BOM.decode("utf-8"))
            self._bom_written = True

    def write_header(self, sample_row: Row) -> None:
        if self.columns is not None:
            return
        self.write_bom()
        self._writer.writerow(encode_header(self.export_type, sample_row))
        self.columns = column_keys(self.export_type, sample_row)

    def write_row(self, row: Row) -> None:
        if self.columns is None:
            self.write_header(row)
        self._writer.writerow(encode_row(row, self.columns or []))
        self.rows_written += 1

    def write_rows(self, rows: Iterable[Row]) -> None:
        for row in rows:
            self.write_row(row)


def render_csv(rows: Iterable[Row], export_type: str) -> bytes:
    """Encode a whole dataset in memory. Meant for small datasets."""
    buf = io.StringIO(newline="")
    writer = CsvWriter(buf, export_type)
    writer.write_rows(rows)
    if not writer.header_written:
        raise EmptyInputError("No data provided for export.")
    return buf.getvalue().encode("utf-8")


# ------------------------------------------------------------------
# Decoding
# ------------------------------------------------------------------


class _PushbackReader(io.RawIOBase):
    """Replays already-read bytes before continuing with the wrapped stream."""

    def __init__(self, prefix: bytes, stream: BinaryIO):
        self._prefix = prefix
        self._stream = stream

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:  # type: ignore[no-untyped-def]
        if self._prefix:
            n = min(len(b), len(self._prefix))
            b[:n] = self._prefix[:n]
            self._prefix = self._prefix[n:]
            return n
        data: bytes = self._stream.read(len(b)) or b""
        n = len(data)
        b[:n] = data
        return n


@contextmanager
def _binary_stream(source: CsvSource) -> Iterator[BinaryIO]:
    if isinstance(source, (bytes, bytearray)):
        yield io.BytesIO(bytes(source))
    elif isinstance(source, (str, Path)):
        with open(source, "rb") as fh:
            yield fh
    else:
        yield source


def _text_reader(stream: BinaryIO) -> TextIO:
    head: bytes = stream.read(len(UTF8_BOM)) or b""
    if head == UTF8_BOM:
        head = b""
    raw = io.BufferedReader(_PushbackReader(head, stream))
    return io.TextIOWrapper(raw, encoding="utf-8", errors="replace", newline="")


def iter_rows(source: CsvSource, max_rows: int = DEFAULT_MAX_ROWS) -> Iterator[list[str]]:
    """Yield each CSV record as a list of cells.

    Blank lines are ignored. Fails with MalformedInputError on an unclosed
    quoted field, and with InputTooLargeError as soon as more than
    ``max_rows`` records have been seen (the rest of the stream is not read).
    """
    with _binary_stream(source) as stream:
        reader = csv.reader(_text_reader(stream), strict=True)
        count = 0
        try:
            for cells in reader:
                if not cells:
                    continue
                count += 1
                if count > max_rows:
                    raise InputTooLargeError(max_rows)
                yield cells
        except csv.Error as exc:
            raise MalformedInputError(
                f"CSV parse error near line {reader.line_num}: {exc}"
            ) from exc


def decode(source: CsvSource, max_rows: int = DEFAULT_MAX_ROWS) -> list[list[str]]:
    return list(iter_rows(source, max_rows))
