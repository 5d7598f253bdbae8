"""Import service: parse, detect, validate and commit CSV uploads.

A job moves through PARSING -> TYPE_DETECTION -> STRUCTURE_VALIDATION ->
COMMITTING -> FINALIZED. Failures before COMMITTING abort the whole job;
once committing, every row ends up Committed, Skipped or Errored and the job
always finishes.
"""

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Optional

import structlog

from config import Settings
from databridge.services._helpers import new_id, now_iso
from databridge.services._types import ImportLogEntry
from databridge.services.collaborators import JobLogStore, Record, RecordSink
from databridge.services.csv_codec import DEFAULT_MAX_ROWS, CsvSource, decode, iter_rows
from databridge.services.dataset_types import DatasetType, detect_import_type, get_dataset_type
from databridge.services.errors import CommitFailedError, DataBridgeError, EmptyInputError, MissingFieldsError
from databridge.services.schemas.results import (
    Committed,
    Errored,
    ImportReport,
    ImportResult,
    PreviewResult,
    RowOutcome,
    Skipped,
    ValidationReport,
)
from db.enums import DuplicateHandling, ImportStage, MissingTypeAction, SideEffect

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_PREVIEW_ROWS = 5

DEFAULT_SIDE_EFFECTS: dict[str, bool] = {
    SideEffect.MEDIA.value: False,
    SideEffect.TAXONOMIES.value: True,
    SideEffect.CUSTOM_FIELDS.value: True,
    SideEffect.USER_META.value: True,
}


@dataclass(frozen=True)
class ImportOptions:
    """Per-job import settings. Invalid values raise ValueError."""

    target_collection_id: object | None = None
    duplicate_handling: DuplicateHandling = DuplicateHandling.SKIP
    missing_type_action: MissingTypeAction = MissingTypeAction.SKIP
    batch_size: int = DEFAULT_BATCH_SIZE
    default_sub_type: str = "post"
    commit_side_effects: Mapping[str, bool] = field(default_factory=dict)
    match_fields: Optional[tuple[str, ...]] = None
    # False turns the job into update-only: rows with no existing match are skipped
    create_missing: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "duplicate_handling", DuplicateHandling(self.duplicate_handling))
        object.__setattr__(self, "missing_type_action", MissingTypeAction(self.missing_type_action))
        if isinstance(self.batch_size, bool) or not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if not self.default_sub_type:
            raise ValueError("default_sub_type must not be empty")
        object.__setattr__(
            self,
            "commit_side_effects",
            {SideEffect(k).value: bool(v) for k, v in self.commit_side_effects.items()},
        )
        if self.match_fields is not None:
            if not self.match_fields:
                raise ValueError("match_fields must name at least one field")
            object.__setattr__(self, "match_fields", tuple(self.match_fields))

    def wants(self, effect: SideEffect) -> bool:
        return self.commit_side_effects.get(effect.value, DEFAULT_SIDE_EFFECTS[effect.value])

    def to_dict(self) -> dict[str, object]:
        return {
            "target_collection_id": self.target_collection_id,
            "duplicate_handling": self.duplicate_handling.value,
            "missing_type_action": self.missing_type_action.value,
            "batch_size": self.batch_size,
            "default_sub_type": self.default_sub_type,
            "commit_side_effects": {e.value: self.wants(e) for e in SideEffect},
            "match_fields": list(self.match_fields) if self.match_fields else None,
            "create_missing": self.create_missing,
        }


@dataclass
class ImportJob:
    options: ImportOptions
    job_id: str = field(default_factory=new_id)
    stage: ImportStage = ImportStage.PARSING
    import_type: str = ""

    def advance(self, stage: ImportStage) -> None:
        logger.debug("Import stage", job_id=self.job_id, stage=stage.value)
        self.stage = stage


def _noun(kind: str) -> str:
    return kind[:-1] if kind.endswith("s") else kind


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class ImportService:
    """Imports CSV uploads into a record sink and keeps a job history."""

    def __init__(
        self,
        sink: Optional[RecordSink] = None,
        log_store: Optional[JobLogStore] = None,
        max_rows: int = DEFAULT_MAX_ROWS,
        preview_rows: int = DEFAULT_PREVIEW_ROWS,
        checkpoint: Optional[Callable[[], None]] = None,
    ):
        self.sink = sink
        self.log_store = log_store
        self.max_rows = max_rows
        self.preview_rows = preview_rows
        self.checkpoint = checkpoint

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        sink: Optional[RecordSink] = None,
        log_store: Optional[JobLogStore] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> "ImportService":
        return cls(
            sink,
            log_store,
            max_rows=settings.imports.max_rows,
            preview_rows=settings.imports.preview_rows,
            checkpoint=checkpoint,
        )

    def options_from_settings(self, settings: Settings, **overrides: object) -> ImportOptions:
        values: dict[str, object] = {
            "batch_size": settings.imports.batch_size,
            "default_sub_type": settings.imports.default_sub_type,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ImportOptions(**values)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Structural steps
    # ------------------------------------------------------------------

    def _parse(self, source: CsvSource) -> list[list[str]]:
        rows: list[list[str]] = decode(source, self.max_rows)
        if not rows:
            raise EmptyInputError("CSV file is empty or could not be parsed.")
        return rows

    @staticmethod
    def _detect(raw_headers: Sequence[str]) -> DatasetType:
        name: str = detect_import_type(raw_headers)
        dataset_type = get_dataset_type(name)
        if dataset_type is None:
            raise DataBridgeError(f"Unsupported import type: {name}")
        return dataset_type

    @staticmethod
    def _validate_structure(dataset_type: DatasetType, headers: Sequence[str]) -> None:
        missing: list[str] = dataset_type.missing_headers(headers)
        if missing:
            raise MissingFieldsError(missing)

    # ------------------------------------------------------------------
    # Import run
    # ------------------------------------------------------------------

    def run(self, source: CsvSource, options: Optional[ImportOptions] = None) -> ImportResult:
        sink: Optional[RecordSink] = self.sink
        if sink is None:
            raise ValueError("ImportService.run needs a record sink")
        options = options or ImportOptions()
        job = ImportJob(options)
        logger.info("Starting import", job_id=job.job_id, options=options.to_dict())

        try:
            rows = self._parse(source)

            job.advance(ImportStage.TYPE_DETECTION)
            dataset_type = self._detect(rows[0])
            headers: list[str] = dataset_type.normalize_headers(rows[0])
            job.import_type = dataset_type.name

            job.advance(ImportStage.STRUCTURE_VALIDATION)
            self._validate_structure(dataset_type, headers)

            job.advance(ImportStage.COMMITTING)
            report = ImportReport(import_type=dataset_type.name)
            self._commit_rows(sink, dataset_type, headers, rows[1:], options, report)
        except Exception as exc:
            logger.error(
                "Import failed",
                job_id=job.job_id,
                stage=job.stage.value,
                error=str(exc),
                code=getattr(exc, "code", type(exc).__name__),
            )
            job.advance(ImportStage.FAILED)
            raise

        result: ImportResult = report.finalize()
        job.advance(ImportStage.FINALIZED)
        self._log_job(result, options)

        logger.info(
            "Completed import",
            job_id=job.job_id,
            import_type=result.import_type,
            success=result.success,
            skipped=result.skipped,
            errors=result.errors,
        )
        return result

    def _commit_rows(
        self,
        sink: RecordSink,
        dataset_type: DatasetType,
        headers: list[str],
        rows: list[list[str]],
        options: ImportOptions,
        report: ImportReport,
    ) -> None:
        for start in range(0, len(rows), options.batch_size):
            batch = rows[start:start + options.batch_size]
            for offset, cells in enumerate(batch):
                row_number: int = start + offset + 2  # line 1 is the header
                outcome: RowOutcome = self._process_row(
                    sink, dataset_type, headers, cells, row_number, options, report,
                )
                report.record(row_number, outcome)
            if self.checkpoint is not None:
                self.checkpoint()

    def _process_row(
        self,
        sink: RecordSink,
        dataset_type: DatasetType,
        headers: list[str],
        cells: list[str],
        row_number: int,
        options: ImportOptions,
        report: ImportReport,
    ) -> RowOutcome:
        try:
            return self._import_row(sink, dataset_type, headers, cells, row_number, options, report)
        except Exception as exc:
            logger.warning("Row import failed", row=row_number, error=str(exc))
            return Errored(f"Row {row_number}: {_describe(exc)}")

    def _import_row(
        self,
        sink: RecordSink,
        dataset_type: DatasetType,
        headers: list[str],
        cells: list[str],
        row_number: int,
        options: ImportOptions,
        report: ImportReport,
    ) -> RowOutcome:
        noun: str = _noun(dataset_type.name)

        if not any(cell.strip() for cell in cells):
            return Skipped(f"Skipped row {row_number}: row is empty.")

        mapped = dataset_type.to_record(dict(zip(headers, cells)))
        effects: dict[str, SideEffect] = dataset_type.side_effects
        record = Record(
            kind=dataset_type.name,
            fields=dict(mapped.fields),
            metadata={k: v for k, v in mapped.metadata.items() if options.wants(effects[k])},
            target_collection_id=options.target_collection_id,
            row_number=row_number,
            sub_type_field=dataset_type.sub_type_field,
        )
        label: str = dataset_type.label(record.fields) or f"row {row_number}"

        # 1. Sub-type must exist in the target
        type_field = dataset_type.sub_type_field
        if type_field is not None:
            sub_type: str = record.fields.setdefault(type_field, options.default_sub_type)
            if not sink.type_exists(sub_type):
                type_label: str = type_field.replace("_", " ")
                action = options.missing_type_action
                if action is MissingTypeAction.SKIP:
                    return Skipped(f'Skipped {noun} "{label}" - {type_label} "{sub_type}" does not exist.')
                if action is MissingTypeAction.REJECT:
                    return Errored(
                        f'{type_label.capitalize()} "{sub_type}" does not exist for {noun} "{label}". '
                        "Please install the plugin or theme that provides it."
                    )
                record.fields[type_field] = options.default_sub_type
                report.add_message(
                    f'Converted {noun} "{label}" from {type_label} "{sub_type}" to "{options.default_sub_type}".'
                )

        # 2. Duplicates
        match_fields: Sequence[str] = options.match_fields or dataset_type.match_fields
        existing: object | None = sink.find_duplicate(record, match_fields) if match_fields else None
        if existing is not None:
            if options.duplicate_handling is DuplicateHandling.SKIP:
                return Skipped(f'Skipped duplicate {noun}: "{label}"')
            if options.duplicate_handling is DuplicateHandling.UPDATE:
                record.identity = existing
        elif not options.create_missing:
            return Skipped(f'Skipped {noun} "{label}" - no existing {noun} matches and creating new ones is disabled.')

        # 3. Commit
        try:
            identity: object = sink.commit(record)
        except CommitFailedError as exc:
            return Errored(f'Failed to import {noun} "{label}": {exc.reason}')
        except Exception as exc:
            logger.warning("Commit raised", row=row_number, error=str(exc))
            return Errored(f'Failed to import {noun} "{label}": {_describe(exc)}')

        # 4. Secondary metadata never revokes the primary success
        if record.metadata:
            try:
                sink.attach_metadata(record, identity, record.metadata)
            except Exception as exc:
                logger.warning("Metadata import failed", row=row_number, identity=str(identity), error=str(exc))
                report.add_message(f'Imported {noun} "{label}" but its metadata could not be saved: {_describe(exc)}')

        return Committed(identity=identity, updated=record.is_update)

    def _log_job(self, result: ImportResult, options: ImportOptions) -> None:
        if self.log_store is None:
            return
        entry: ImportLogEntry = {
            "timestamp": now_iso(),
            "import_type": result.import_type,
            "results": result.to_dict(),
            "options": options.to_dict(),
        }
        try:
            self.log_store.append_job_log(entry)
        except Exception:
            logger.exception("Failed to write import log")

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------

    def preview(self, source: CsvSource, rows: Optional[int] = None) -> PreviewResult:
        """Header plus the first few rows. Touches nothing in the target."""
        limit: int = rows or self.preview_rows
        headers: list[str] | None = None
        sample: list[list[str]] = []
        total = 0
        for cells in iter_rows(source, self.max_rows):
            if headers is None:
                headers = cells
                continue
            total += 1
            if len(sample) < limit:
                sample.append(cells)
        if headers is None:
            raise EmptyInputError("CSV file is empty or could not be parsed.")
        return PreviewResult(
            import_type=detect_import_type(headers),
            headers=headers,
            rows=sample,
            total_rows=total,
        )

    def validate(self, source: CsvSource) -> ValidationReport:
        """Check structure and report sub-types the target does not know."""
        rows = self._parse(source)
        dataset_type = self._detect(rows[0])
        headers = dataset_type.normalize_headers(rows[0])
        self._validate_structure(dataset_type, headers)

        missing: list[str] = []
        type_header = dataset_type.sub_type_header
        if self.sink is not None and type_header is not None and type_header in headers:
            index: int = headers.index(type_header)
            seen: set[str] = set()
            for cells in rows[1:]:
                value: str = cells[index].strip() if index < len(cells) else ""
                if not value or value in seen:
                    continue
                seen.add(value)
                if not self.sink.type_exists(value):
                    missing.append(value)

        return ValidationReport(
            import_type=dataset_type.name,
            headers=headers,
            total_records=len(rows) - 1,
            missing_sub_types=missing,
        )

    def history(self) -> list[dict[str, object]]:
        if self.log_store is None:
            return []
        return self.log_store.get_job_log_history()
