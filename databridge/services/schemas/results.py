"""Result dataclasses returned by service operations."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from urllib.parse import urlencode

from databridge.services._helpers import now_iso
from db.enums import ImportStage


@dataclass(frozen=True)
class GeneratedFile:
    path: Path
    filename: str
    export_type: str
    size_bytes: int
    row_count: int
    batches: int


@dataclass(frozen=True)
class DownloadToken:
    token: str
    filename: str
    expires_at: int
    path: Path

    def query_params(self) -> dict[str, str]:
        return {"token": self.token, "expires": str(self.expires_at), "filename": self.filename}

    def url(self, base: str) -> str:
        return f"{base}?{urlencode(self.query_params())}"


# -- Import ----------------------------------------------------------------


@dataclass(frozen=True)
class Committed:
    identity: object
    updated: bool = False


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Errored:
    reason: str


RowOutcome = Committed | Skipped | Errored


@dataclass(frozen=True)
class ImportResult:
    import_type: str
    total_rows: int
    success: int
    skipped: int
    errors: int
    messages: tuple[str, ...]
    error_details: tuple[dict[str, object], ...]
    stage: ImportStage = ImportStage.FINALIZED
    finished_at: str = ""

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = asdict(self)
        data["messages"] = list(self.messages)
        data["error_details"] = [dict(e) for e in self.error_details]
        data["stage"] = self.stage.value
        return data


@dataclass
class ImportReport:
    """Mutable tally for a running import; ``finalize`` freezes it."""

    import_type: str = ""
    total_rows: int = 0
    success: int = 0
    skipped: int = 0
    errors: int = 0
    messages: list[str] = field(default_factory=list)
    error_details: list[dict[str, object]] = field(default_factory=list)

    def add_message(self, message: str) -> None:
        self.messages.append(message)

    def add_error(self, row: int, reason: str) -> None:
        self.errors += 1
        self.error_details.append({"row": row, "reason": reason})

    def record(self, row: int, outcome: RowOutcome) -> None:
        self.total_rows += 1
        if isinstance(outcome, Committed):
            self.success += 1
        elif isinstance(outcome, Skipped):
            self.skipped += 1
            self.messages.append(outcome.reason)
        else:
            self.add_error(row, outcome.reason)

    def finalize(self) -> ImportResult:
        return ImportResult(
            import_type=self.import_type,
            total_rows=self.total_rows,
            success=self.success,
            skipped=self.skipped,
            errors=self.errors,
            messages=tuple(self.messages),
            error_details=tuple(dict(e) for e in self.error_details),
            finished_at=now_iso(),
        )


@dataclass(frozen=True)
class PreviewResult:
    import_type: str
    headers: list[str]
    rows: list[list[str]]
    total_rows: int


@dataclass(frozen=True)
class ValidationReport:
    import_type: str
    headers: list[str]
    total_records: int
    missing_sub_types: list[str]

    @property
    def has_warnings(self) -> bool:
        return bool(self.missing_sub_types)
