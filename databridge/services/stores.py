"""SQLAlchemy-backed collaborators: record store, delivery secret, import log."""

import secrets
from collections.abc import Collection, Mapping, Sequence
from datetime import date, timedelta

import structlog
from sqlalchemy import and_, delete, func, select
from sqlalchemy.orm import Session, aliased

from databridge.services._helpers import JsonDict, dump_json, load_json, new_id, now_iso
from databridge.services._types import RecordDict
from databridge.services.collaborators import Record, Row
from databridge.services.dataset_types import DatasetType, get_dataset_type
from databridge.services.errors import CommitFailedError
from db.models import AppSecrets, ImportLogs, RecordFieldValues, Records

logger = structlog.get_logger(__name__)

DOWNLOAD_SECRET_NAME = "download_secret"
DEFAULT_LOG_KEEP = 10

# export columns filled from record timestamps
_TIMESTAMP_COLUMNS: dict[str, str] = {
    "post_modified": "updated_at",
    "registration_date": "created_at",
}


def _end_of_day(raw: str) -> str:
    """Exclusive upper bound for a date filter ("2024-01-31" covers the whole day)."""
    try:
        day: date = date.fromisoformat(raw)
    except ValueError:
        return raw
    return (day + timedelta(days=1)).isoformat()


# ── Record store ──────────────────────────────────────────────────────────────


class DbRecordStore:
    """Record source and sink over the ``records`` table."""

    def __init__(
        self,
        session: Session,
        known_sub_types: Collection[str] = ("post", "page"),
        site_id: int = 1,
        site_name: str = "",
    ):
        self.session = session
        self.known_sub_types = set(known_sub_types)
        self.site_id = site_id
        self.site_name = site_name

    # -- RecordSink --------------------------------------------------------

    def type_exists(self, sub_type: str) -> bool:
        return sub_type in self.known_sub_types

    def find_duplicate(self, record: Record, match_fields: Sequence[str]) -> str | None:
        values: list[str] = [record.fields.get(name, "") for name in match_fields]
        if not match_fields or not all(values):
            return None

        stmt = select(Records.id).where(Records.kind == record.kind)
        for name, value in zip(match_fields, values):
            fv = aliased(RecordFieldValues)
            stmt = stmt.join(fv, and_(fv.record_id == Records.id, fv.name == name, fv.value == value))
        stmt = stmt.order_by(Records.created_at, Records.id).limit(1)
        return self.session.scalars(stmt).first()

    def commit(self, record: Record) -> str:
        dataset_type: DatasetType | None = get_dataset_type(record.kind)
        if dataset_type is None:
            raise CommitFailedError(f"Unknown record kind: {record.kind}")

        now: str = now_iso()
        if record.is_update:
            row: Records | None = self.session.get(Records, str(record.identity))
            if row is None:
                raise CommitFailedError(f"Record {record.identity} no longer exists.")
            fields: JsonDict = load_json(row.fields) or {}
            fields.update(record.fields)
        else:
            row = Records(id=new_id(), kind=record.kind, created_at=now)
            fields = dict(record.fields)

        missing: list[str] = [
            dataset_type.record_fields[header]
            for header in dataset_type.required_headers
            if header in dataset_type.record_fields and not fields.get(dataset_type.record_fields[header])
        ]
        if missing:
            raise CommitFailedError(f"Missing value for {', '.join(missing)}.")

        # one savepoint per record: a failed write leaves earlier rows and the session usable
        with self.session.begin_nested():
            row.fields = dump_json(fields)
            row.sub_type = record.sub_type
            if record.target_collection_id is not None:
                row.target_collection_id = str(record.target_collection_id)
            row.updated_at = now
            if not record.is_update:
                self.session.add(row)
            existing: dict[str, RecordFieldValues] = {fv.name: fv for fv in row.field_values}
            for name, value in fields.items():
                if name in existing:
                    existing[name].value = str(value)
                else:
                    row.field_values.append(RecordFieldValues(name=name, value=str(value)))

        logger.debug("Committed record", kind=record.kind, id=row.id, updated=record.is_update)
        return row.id

    def attach_metadata(self, record: Record, identity: object, metadata: Mapping[str, object]) -> None:
        row: Records | None = self.session.get(Records, str(identity))
        if row is None:
            raise CommitFailedError(f"Record {identity} no longer exists.")
        meta: JsonDict = load_json(row.meta) or {}
        meta.update(metadata)
        with self.session.begin_nested():
            row.meta = dump_json(meta)

    # -- RecordSource ------------------------------------------------------

    def fetch_rows(self, dataset_kind: str, filters: Mapping[str, object]) -> list[Row]:
        dataset_type: DatasetType | None = get_dataset_type(dataset_kind)
        if dataset_type is None:
            raise ValueError(f"Unknown dataset kind: {dataset_kind}")

        stmt = select(Records).where(Records.kind == dataset_kind)
        sub_types = filters.get("sub_types")
        if sub_types:
            stmt = stmt.where(Records.sub_type.in_(list(sub_types)))  # type: ignore[call-overload]
        target = filters.get("target_collection_id")
        if target is not None:
            stmt = stmt.where(Records.target_collection_id == str(target))
        start = filters.get("date_start")
        if start:
            stmt = stmt.where(Records.created_at >= str(start))
        end = filters.get("date_end")
        if end:
            stmt = stmt.where(Records.created_at < _end_of_day(str(end)))
        stmt = stmt.order_by(Records.created_at, Records.id)

        return [self._export_row(dataset_type, row) for row in self.session.scalars(stmt)]

    def _export_row(self, dataset_type: DatasetType, row: Records) -> dict[str, object]:
        fields: JsonDict = load_json(row.fields) or {}
        meta: JsonDict = load_json(row.meta) or {}
        out: dict[str, object] = {}
        for column in dataset_type.columns:
            value: object
            if column.field == dataset_type.id_field:
                value = row.id
            elif column.field == "site_id":
                value = self.site_id
            elif column.field == "site_name":
                value = self.site_name
            elif column.header in dataset_type.record_fields:
                value = fields.get(dataset_type.record_fields[column.header])
            elif column.field in meta:
                value = meta[column.field]
                if isinstance(value, list):
                    value = ", ".join(str(v) for v in value)
            elif column.field in _TIMESTAMP_COLUMNS:
                value = getattr(row, _TIMESTAMP_COLUMNS[column.field])
            else:
                value = fields.get(column.field)
            out[column.field] = value
        return out

    def get_record(self, identity: str) -> RecordDict | None:
        row: Records | None = self.session.get(Records, identity)
        if row is None:
            return None
        return RecordDict(
            id=row.id,
            kind=row.kind,
            sub_type=row.sub_type,
            fields=load_json(row.fields) or {},
            metadata=load_json(row.meta) or {},
            target_collection_id=row.target_collection_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def count(self, kind: str | None = None) -> int:
        stmt = select(func.count()).select_from(Records)
        if kind is not None:
            stmt = stmt.where(Records.kind == kind)
        return self.session.scalar(stmt) or 0


# ── Secret store ──────────────────────────────────────────────────────────────


class DbSecretStore:
    """Signing secret, created on first use and persisted in ``app_secrets``."""

    def __init__(self, session: Session, name: str = DOWNLOAD_SECRET_NAME):
        self.session = session
        self.name = name

    def get_or_create_secret(self) -> bytes:
        row: AppSecrets | None = self.session.get(AppSecrets, self.name)
        if row is None:
            row = AppSecrets(name=self.name, value=secrets.token_urlsafe(48), created_at=now_iso())
            self.session.add(row)
            self.session.flush()
            logger.info("Created signing secret", name=self.name)
        return row.value.encode("utf-8")


# ── Job log store ─────────────────────────────────────────────────────────────


class DbJobLogStore:
    """Import history; only the newest ``keep`` entries survive."""

    def __init__(self, session: Session, keep: int = DEFAULT_LOG_KEEP):
        self.session = session
        self.keep = keep

    def append_job_log(self, entry: Mapping[str, object]) -> None:
        self.session.add(
            ImportLogs(
                timestamp=str(entry.get("timestamp") or now_iso()),
                import_type=str(entry.get("import_type", "")),
                results=dump_json(dict(entry.get("results") or {})),  # type: ignore[call-overload]
                options=dump_json(dict(entry.get("options") or {})),  # type: ignore[call-overload]
            )
        )
        self.session.flush()

        keep_ids = select(ImportLogs.id).order_by(ImportLogs.id.desc()).limit(self.keep)
        self.session.execute(
            delete(ImportLogs).where(ImportLogs.id.not_in(keep_ids)).execution_options(synchronize_session=False)
        )

    def get_job_log_history(self) -> list[dict[str, object]]:
        """Oldest first, as the entries were appended."""
        rows = self.session.scalars(select(ImportLogs).order_by(ImportLogs.id)).all()
        return [
            {
                "timestamp": row.timestamp,
                "import_type": row.import_type,
                "results": load_json(row.results) or {},
                "options": load_json(row.options) or {},
            }
            for row in rows
        ]
