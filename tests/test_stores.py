"""Tests for the SQLAlchemy-backed collaborators in databridge.services.stores."""

from pathlib import Path

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from databridge.services.collaborators import Record, RecordSink, RecordSource, SecretStore
from databridge.services.csv_codec import decode
from databridge.services.errors import CommitFailedError
from databridge.services.export import ExportService
from databridge.services.importer import ImportOptions, ImportService
from databridge.services.schemas import GeneratedFile, ImportResult
from databridge.services.stores import DbJobLogStore, DbRecordStore, DbSecretStore
from db.models import AppSecrets, ImportLogs, Records

REJECT_BOOM: str = (
    "CREATE TRIGGER reject_boom BEFORE INSERT ON record_field_values "
    "WHEN NEW.value = 'Boom' BEGIN SELECT RAISE(ABORT, 'rejected by db'); END"
)


def _post(title: str, post_type: str = "post", **extra: str) -> Record:
    return Record(
        kind="posts",
        fields={"post_title": title, "post_type": post_type, **extra},
        sub_type_field="post_type",
    )


class TestDbRecordStore:
    def test_satisfies_protocols(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        assert isinstance(store, RecordSink)
        assert isinstance(store, RecordSource)

    def test_type_exists(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session, known_sub_types=("post", "product"))
        assert store.type_exists("product")
        assert not store.type_exists("page")

    def test_commit_creates(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        identity: str = store.commit(_post("Hello"))
        record = store.get_record(identity)
        assert record is not None
        assert record["kind"] == "posts"
        assert record["sub_type"] == "post"
        assert record["fields"] == {"post_title": "Hello", "post_type": "post"}
        assert store.count("posts") == 1

    def test_commit_missing_required_value(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        with pytest.raises(CommitFailedError) as exc_info:
            store.commit(Record(kind="posts", fields={"post_type": "post"}, sub_type_field="post_type"))
        assert "post_title" in str(exc_info.value)
        assert store.count() == 0

    def test_commit_unknown_kind(self, session: Session) -> None:
        with pytest.raises(CommitFailedError):
            DbRecordStore(session).commit(Record(kind="orders", fields={"id": "1"}))

    def test_find_duplicate(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        identity: str = store.commit(_post("Hello"))
        assert store.find_duplicate(_post("Hello"), ("post_title", "post_type")) == identity
        assert store.find_duplicate(_post("Hello", "page"), ("post_title", "post_type")) is None
        assert store.find_duplicate(_post("Hello", "page"), ("post_title",)) == identity

    def test_find_duplicate_needs_every_value(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        store.commit(_post("Hello"))
        record: Record = Record(kind="posts", fields={"post_title": "Hello"}, sub_type_field="post_type")
        assert store.find_duplicate(record, ("post_title", "post_type")) is None

    def test_find_duplicate_scoped_to_kind(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        store.commit(Record(kind="users", fields={"user_login": "a", "user_email": "a@x.io"}))
        record: Record = Record(kind="posts", fields={"user_email": "a@x.io"})
        assert store.find_duplicate(record, ("user_email",)) is None

    def test_update_merges_fields(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        identity: str = store.commit(_post("Hello", post_content="v1"))
        update: Record = _post("Hello", post_content="v2")
        update.identity = identity
        assert store.commit(update) == identity

        record = store.get_record(identity)
        assert record is not None
        assert record["fields"]["post_content"] == "v2"
        assert store.count() == 1
        assert store.find_duplicate(_post("Hello", post_content="v1"), ("post_title", "post_content")) is None
        assert store.find_duplicate(_post("Hello", post_content="v2"), ("post_title", "post_content")) == identity

    def test_update_vanished_record(self, session: Session) -> None:
        update: Record = _post("Hello")
        update.identity = "missing"
        with pytest.raises(CommitFailedError):
            DbRecordStore(session).commit(update)

    def test_failed_write_keeps_session_usable(self, session: Session) -> None:
        session.execute(text(REJECT_BOOM))
        session.commit()
        store: DbRecordStore = DbRecordStore(session)
        first: str = store.commit(_post("First"))
        with pytest.raises(DBAPIError, match="rejected by db"):
            store.commit(_post("Boom"))
        third: str = store.commit(_post("Third"))
        session.commit()

        assert store.count("posts") == 2
        assert store.find_duplicate(_post("Boom"), ("post_title",)) is None
        assert {store.find_duplicate(_post(t), ("post_title",)) for t in ("First", "Third")} == {first, third}

    def test_attach_metadata(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        record: Record = _post("Hello")
        identity: str = store.commit(record)
        store.attach_metadata(record, identity, {"categories": ["News"]})
        store.attach_metadata(record, identity, {"tags": ["a"]})
        stored = store.get_record(identity)
        assert stored is not None
        assert stored["metadata"] == {"categories": ["News"], "tags": ["a"]}

    def test_fetch_rows_maps_export_columns(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session, site_id=3, site_name="Main")
        record: Record = _post("Hello", post_author="7")
        identity: str = store.commit(record)
        store.attach_metadata(record, identity, {"categories": ["News", "Events"], "custom_fields": {"k": "v"}})

        rows = store.fetch_rows("posts", {})
        assert len(rows) == 1
        row = rows[0]
        assert row["site_id"] == 3
        assert row["site_name"] == "Main"
        assert row["post_id"] == identity
        assert row["post_title"] == "Hello"
        assert row["post_author_id"] == "7"
        assert row["categories"] == "News, Events"
        assert row["custom_fields"] == {"k": "v"}
        assert row["post_modified"]

    def test_fetch_rows_filters(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        store.commit(_post("A"))
        store.commit(_post("B", "page"))
        collected: Record = _post("C")
        collected.target_collection_id = 9
        store.commit(collected)

        assert {r["post_title"] for r in store.fetch_rows("posts", {"sub_types": ["page"]})} == {"B"}
        assert {r["post_title"] for r in store.fetch_rows("posts", {"target_collection_id": 9})} == {"C"}
        assert store.fetch_rows("posts", {"date_start": "2999-01-01"}) == []
        assert len(store.fetch_rows("posts", {"date_end": "2999-01-01"})) == 3
        assert store.fetch_rows("users", {}) == []

    def test_date_end_includes_whole_day(self, session: Session) -> None:
        store: DbRecordStore = DbRecordStore(session)
        identity: str = store.commit(_post("A"))
        row: Records | None = session.get(Records, identity)
        assert row is not None
        row.created_at = "2024-01-31T18:30:00+00:00"
        session.flush()

        assert len(store.fetch_rows("posts", {"date_start": "2024-01-31", "date_end": "2024-01-31"})) == 1
        assert store.fetch_rows("posts", {"date_end": "2024-01-30"}) == []

    def test_fetch_rows_unknown_kind(self, session: Session) -> None:
        with pytest.raises(ValueError):
            DbRecordStore(session).fetch_rows("orders", {})


class TestDbSecretStore:
    def test_created_once(self, session: Session) -> None:
        store: DbSecretStore = DbSecretStore(session)
        assert isinstance(store, SecretStore)
        first: bytes = store.get_or_create_secret()
        assert len(first) >= 32
        assert DbSecretStore(session).get_or_create_secret() == first
        assert len(session.scalars(select(AppSecrets)).all()) == 1

    def test_named_secrets_independent(self, session: Session) -> None:
        a: bytes = DbSecretStore(session, name="a").get_or_create_secret()
        b: bytes = DbSecretStore(session, name="b").get_or_create_secret()
        assert a != b


class TestDbJobLogStore:
    def test_append_and_history(self, session: Session) -> None:
        store: DbJobLogStore = DbJobLogStore(session)
        store.append_job_log({
            "timestamp": "2026-01-01T00:00:00+00:00",
            "import_type": "posts",
            "results": {"success": 2},
            "options": {"batch_size": 50},
        })
        history: list[dict[str, object]] = store.get_job_log_history()
        assert history == [{
            "timestamp": "2026-01-01T00:00:00+00:00",
            "import_type": "posts",
            "results": {"success": 2},
            "options": {"batch_size": 50},
        }]

    def test_keeps_newest(self, session: Session) -> None:
        store: DbJobLogStore = DbJobLogStore(session, keep=10)
        for i in range(12):
            store.append_job_log({"import_type": "posts", "results": {"run": i}, "options": {}})
        history: list[dict[str, object]] = store.get_job_log_history()
        assert len(history) == 10
        assert [h["results"]["run"] for h in history] == list(range(2, 12))  # type: ignore[index]
        assert len(session.scalars(select(ImportLogs)).all()) == 10


class TestImportExportOverDb:
    def test_import_then_export(self, session: Session, storage_dir: Path) -> None:
        store: DbRecordStore = DbRecordStore(session, site_name="Main")
        importer: ImportService = ImportService(store, DbJobLogStore(session))
        data: bytes = (
            b"Site ID,Post Title,Post Type,Categories\r\n"
            b'1,First,post,"News, Events"\r\n'
            b"1,Product,product,\r\n"
            b"1,About,page,\r\n"
        )
        result: ImportResult = importer.run(data, ImportOptions(missing_type_action="skip"))
        assert (result.success, result.skipped, result.errors) == (2, 1, 0)

        again: ImportResult = importer.run(data)
        assert again.skipped == 3
        assert store.count("posts") == 2
        assert len(importer.history()) == 2

        exporter: ExportService = ExportService(storage_dir)
        files: dict[str, GeneratedFile] = exporter.export_from_source(store, ["posts"], {"sub_types": ["post"]})
        rows: list[list[str]] = decode(files["posts"].path)
        by_header: dict[str, str] = dict(zip(rows[0], rows[1]))
        assert len(rows) == 2
        assert by_header["Post Title"] == "First"
        assert by_header["Site Name"] == "Main"
        assert by_header["Categories"] == "News, Events"

    def test_rejected_row_does_not_poison_later_rows(self, session: Session) -> None:
        session.execute(text(REJECT_BOOM))
        session.commit()
        store: DbRecordStore = DbRecordStore(session)
        importer: ImportService = ImportService(store, DbJobLogStore(session))
        data: bytes = (
            b"Site ID,Post Title,Post Type\r\n"
            b"1,First,post\r\n"
            b"1,Boom,post\r\n"
            b"1,Third,post\r\n"
            b"1,Fourth,post\r\n"
        )
        result: ImportResult = importer.run(data)
        assert (result.success, result.errors) == (3, 1)
        assert result.error_details[0]["row"] == 3
        assert 'Failed to import post "Boom"' in str(result.error_details[0]["reason"])

        session.commit()
        assert store.count("posts") == 3
        assert len(importer.history()) == 1
