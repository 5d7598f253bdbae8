"""Export service: chunked CSV generation, multi-dataset exports and streaming."""

import os
from collections.abc import Callable, Generator, Iterable, Iterator, Mapping, Sequence
from itertools import chain, islice
from pathlib import Path
from typing import BinaryIO, Optional

import structlog

from config import Settings
from databridge.services._helpers import file_timestamp, sanitize_filename
from databridge.services.collaborators import RecordSource, Row
from databridge.services.csv_codec import CsvWriter
from databridge.services.dataset_types import get_dataset_type
from databridge.services.errors import DirectoryUnwritableError, EmptyInputError, NotFoundError
from databridge.services.schemas.results import GeneratedFile

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_STREAM_CHUNK_SIZE = 8192

Checkpoint = Callable[[], None]


def _no_checkpoint() -> None:
    return None


def ensure_writable_dir(path: Path) -> Path:
    """Create ``path`` if needed; fail with DirectoryUnwritableError otherwise."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DirectoryUnwritableError(path) from exc
    if not os.access(path, os.W_OK):
        raise DirectoryUnwritableError(path)
    return path


def iter_file_chunks(
    path: Path,
    chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE,
    should_stop: Optional[Callable[[], bool]] = None,
) -> Generator[bytes, None, None]:
    """Yield a file in fixed-size chunks.

    ``should_stop`` is checked before every chunk (client disconnect). The
    handle is released when the file is exhausted, when streaming stops, and
    when the consumer closes the generator early.
    """
    with open(path, "rb") as fh:
        while True:
            if should_stop is not None and should_stop():
                logger.info("Stream stopped early", path=str(path))
                return
            chunk: bytes = fh.read(chunk_size)
            if not chunk:
                return
            yield chunk


def _batches(rows: Iterable[Row], size: int) -> Iterator[list[Row]]:
    it = iter(rows)
    while batch := list(islice(it, size)):
        yield batch


class ExportService:
    """Writes row data to CSV files under a storage root and streams them back."""

    def __init__(
        self,
        storage_dir: Path | str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        stream_chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE,
        filename_prefix: str = "databridge",
        site_tag: Optional[str] = None,
        checkpoint: Optional[Checkpoint] = None,
    ):
        if chunk_size <= 0 or stream_chunk_size <= 0:
            raise ValueError("chunk sizes must be positive")
        self.storage_dir = ensure_writable_dir(Path(storage_dir))
        self.chunk_size = chunk_size
        self.stream_chunk_size = stream_chunk_size
        self.filename_prefix = filename_prefix
        self.site_tag = site_tag
        self.checkpoint: Checkpoint = checkpoint or _no_checkpoint

    @classmethod
    def from_settings(cls, settings: Settings, checkpoint: Optional[Checkpoint] = None) -> "ExportService":
        return cls(
            settings.storage_dir,
            chunk_size=settings.export.chunk_size,
            stream_chunk_size=settings.export.stream_chunk_size,
            filename_prefix=settings.export.filename_prefix,
            site_tag=settings.export.site_tag,
            checkpoint=checkpoint,
        )

    # ------------------------------------------------------------------
    # CSV generation
    # ------------------------------------------------------------------

    def generate_filename(self, export_type: str) -> str:
        parts: list[str] = [self.filename_prefix]
        if self.site_tag:
            parts.append(sanitize_filename(self.site_tag))
        parts += [export_type, file_timestamp()]
        return sanitize_filename("_".join(parts) + ".csv")

    def generate(
        self,
        rows: Iterable[Row],
        export_type: str,
        filename: Optional[str] = None,
    ) -> GeneratedFile:
        """Write ``rows`` to a new CSV file in batches of ``chunk_size``.

        The file is either complete or absent: any failure while writing
        removes the partial file before the error propagates.
        """
        it = iter(rows)
        first: Row | None = next(it, None)
        if first is None:
            raise EmptyInputError("No data provided for export.")

        safe_name: str = sanitize_filename(filename) if filename else ""
        if not safe_name:
            safe_name = self.generate_filename(export_type)
        output_path: Path = self.storage_dir / safe_name

        logger.info("Starting CSV export", export_type=export_type, filename=safe_name)

        try:
            fh = open(output_path, "w", encoding="utf-8", newline="")
        except OSError as exc:
            logger.error("Could not create CSV file", path=str(output_path), error=str(exc))
            raise DirectoryUnwritableError(self.storage_dir) from exc

        batches = 0
        try:
            with fh:
                writer = CsvWriter(fh, export_type)
                for batch in _batches(chain([first], it), self.chunk_size):
                    if not writer.header_written:
                        writer.write_header(batch[0])
                    writer.write_rows(batch)
                    fh.flush()
                    batches += 1
                    self.checkpoint()
        except BaseException:
            output_path.unlink(missing_ok=True)
            logger.warning("Removed partial export file", path=str(output_path))
            raise

        result = GeneratedFile(
            path=output_path,
            filename=safe_name,
            export_type=export_type,
            size_bytes=output_path.stat().st_size,
            row_count=writer.rows_written,
            batches=batches,
        )
        logger.info(
            "Completed CSV export",
            export_type=export_type,
            output_path=str(output_path),
            row_count=result.row_count,
            batches=batches,
        )
        return result

    def generate_many(
        self,
        datasets: Mapping[str, Iterable[Row]],
        base_filename: Optional[str] = None,
    ) -> dict[str, GeneratedFile]:
        """One file per non-empty dataset. A failing dataset is logged and left out."""
        generated: dict[str, GeneratedFile] = {}
        for export_type, rows in datasets.items():
            if not rows:
                continue
            filename: Optional[str] = None
            if base_filename:
                filename = f"{Path(base_filename).stem}_{export_type}.csv"
            try:
                generated[export_type] = self.generate(rows, export_type, filename)
            except EmptyInputError:
                logger.info("Nothing to export", export_type=export_type)
            except Exception:
                logger.exception("Failed to generate CSV", export_type=export_type)
        return generated

    def export_from_source(
        self,
        source: RecordSource,
        kinds: Sequence[str],
        filters: Optional[Mapping[str, object]] = None,
        base_filename: Optional[str] = None,
    ) -> dict[str, GeneratedFile]:
        datasets: dict[str, Sequence[Row]] = {}
        for kind in kinds:
            try:
                datasets[kind] = source.fetch_rows(kind, filters or {})
            except Exception:
                logger.exception("Failed to fetch rows", kind=kind)
        return self.generate_many(datasets, base_filename)

    @staticmethod
    def validate_rows(rows: Sequence[Row], export_type: str) -> list[str]:
        """Check rows carry the fields a registered type needs. Empty list means OK."""
        if not rows:
            return ["No data to export."]
        dataset_type = get_dataset_type(export_type)
        required: tuple[str, ...] = dataset_type.required_fields if dataset_type else ()

        errors: list[str] = []
        for index, row in enumerate(rows, start=1):
            if not isinstance(row, Mapping):
                errors.append(f"Row {index} is not a mapping.")
                continue
            for name in required:
                if name not in row:
                    errors.append(f"Row {index} is missing required field: {name}")
        return errors

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream(
        self,
        file: GeneratedFile | Path,
        channel: BinaryIO,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Copy a generated file to ``channel``, flushing after every chunk.

        The file stays on disk; the retention sweep removes it later.
        """
        path: Path = file.path if isinstance(file, GeneratedFile) else Path(file)
        if not path.is_file():
            raise NotFoundError()

        written = 0
        for chunk in iter_file_chunks(path, self.stream_chunk_size, should_stop):
            channel.write(chunk)
            channel.flush()
            written += len(chunk)
        return written
