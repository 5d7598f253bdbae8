"""Tests for all API routes via FastAPI TestClient."""

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.dependencies import get_app_settings
from app.main import register_error_handlers
from app.routes import downloads, exports, imports
from config import Settings
from databridge.services.csv_codec import UTF8_BOM, decode
from databridge.services.stores import DbRecordStore
from db.connection import get_db
from db.models import Base

POSTS_CSV: bytes = (
    b"Site ID,Post Title,Post Type,Categories\r\n"
    b'1,First,post,"News, Events"\r\n'
    b"1,Product,product,\r\n"
    b"1,About,page,\r\n"
)


def _create_test_app() -> FastAPI:
    """Minimal app without lifespan (no migrations)."""
    test_app: FastAPI = FastAPI()
    register_error_handlers(test_app)

    @test_app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    test_app.include_router(exports.router)
    test_app.include_router(downloads.router)
    test_app.include_router(imports.router)
    return test_app


_test_app: FastAPI = _create_test_app()


@pytest.fixture()
def _route_engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine with check_same_thread=False for TestClient."""
    eng: Engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def _route_session(_route_engine: Engine) -> Generator[Session, None, None]:
    factory: sessionmaker[Session] = sessionmaker(
        bind=_route_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    sess: Session = factory()
    yield sess
    sess.rollback()
    sess.close()


def _client(session: Session, settings: Settings) -> Generator[TestClient, None, None]:
    def _override_db() -> Generator[Session, None, None]:
        yield session

    _test_app.dependency_overrides[get_db] = _override_db
    _test_app.dependency_overrides[get_app_settings] = lambda: settings
    with TestClient(_test_app, raise_server_exceptions=True) as c:
        yield c
    _test_app.dependency_overrides.clear()


@pytest.fixture()
def client(_route_session: Session, settings: Settings) -> Generator[TestClient, None, None]:
    """TestClient with DB and settings dependencies overridden."""
    yield from _client(_route_session, settings)


@pytest.fixture()
def keyed_client(_route_session: Session, settings: Settings) -> Generator[TestClient, None, None]:
    keyed: Settings = settings.model_copy(update={"api_key": "s3cret"})
    yield from _client(_route_session, keyed)


@pytest.fixture()
def session(_route_session: Session) -> Session:
    """Alias so seed helpers can use the same session as the client."""
    return _route_session


def _upload(data: bytes, name: str = "posts.csv") -> dict[str, tuple[str, bytes, str]]:
    return {"file": (name, data, "text/csv")}


def _import(client: TestClient, data: bytes = POSTS_CSV, **form: str) -> dict[str, object]:
    resp = client.post("/api/imports", files=_upload(data), data=form)
    assert resp.status_code == 200, resp.text
    return resp.json()


# ---------- health ----------


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ---------- imports ----------


class TestImportRoutes:
    def test_import_skips_unknown_type(self, client: TestClient, session: Session) -> None:
        body: dict[str, object] = _import(client, missing_type_action="skip")
        assert body["importType"] == "posts"
        assert (body["success"], body["skipped"], body["errors"]) == (2, 1, 0)
        assert body["stage"] == "finalized"
        assert DbRecordStore(session).count("posts") == 2

    def test_import_reject_reports_row(self, client: TestClient) -> None:
        body: dict[str, object] = _import(client, missing_type_action="reject")
        assert body["errors"] == 1
        assert body["errorDetails"][0]["row"] == 3  # type: ignore[index]

    def test_duplicates_skipped_on_reimport(self, client: TestClient) -> None:
        _import(client)
        body: dict[str, object] = _import(client)
        assert body["skipped"] == 3

    def test_invalid_option_rejected(self, client: TestClient) -> None:
        resp = client.post("/api/imports", files=_upload(POSTS_CSV), data={"duplicate_handling": "merge"})
        assert resp.status_code == 422

    def test_invalid_batch_size(self, client: TestClient) -> None:
        resp = client.post("/api/imports", files=_upload(POSTS_CSV), data={"batch_size": "0"})
        assert resp.status_code == 422

    def test_missing_headers(self, client: TestClient) -> None:
        resp = client.post("/api/imports", files=_upload(b"Post Title\r\nHello\r\n"))
        assert resp.status_code == 422
        body: dict[str, object] = resp.json()
        assert body["type"] == "missing_fields"
        assert body["fields"] == ["Site ID", "Post Type"]

    def test_empty_upload(self, client: TestClient) -> None:
        resp = client.post("/api/imports", files=_upload(b""))
        assert resp.status_code == 400
        assert resp.json()["type"] == "empty_input"

    def test_upload_too_large(self, _route_session: Session, settings: Settings) -> None:
        small: Settings = settings.model_copy(
            update={"imports": settings.imports.model_copy(update={"max_upload_bytes": 10})}
        )
        for c in _client(_route_session, small):
            resp = c.post("/api/imports", files=_upload(POSTS_CSV))
            assert resp.status_code == 413

    def test_preview(self, client: TestClient) -> None:
        resp = client.post("/api/imports/preview", files=_upload(POSTS_CSV))
        assert resp.status_code == 200
        body: dict[str, object] = resp.json()
        assert body["headers"] == ["Site ID", "Post Title", "Post Type", "Categories"]
        assert body["totalRows"] == 3
        assert len(body["rows"]) == 3  # type: ignore[arg-type]

    def test_validate(self, client: TestClient, session: Session) -> None:
        resp = client.post("/api/imports/validate", files=_upload(POSTS_CSV))
        assert resp.status_code == 200
        body: dict[str, object] = resp.json()
        assert body["missingSubTypes"] == ["product"]
        assert body["hasWarnings"] is True
        assert DbRecordStore(session).count() == 0

    def test_history(self, client: TestClient) -> None:
        _import(client)
        resp = client.get("/api/imports/history")
        assert resp.status_code == 200
        entries: list[dict[str, object]] = resp.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["importType"] == "posts"
        assert entries[0]["results"]["success"] == 2  # type: ignore[index]


# ---------- exports and downloads ----------


class TestExportRoutes:
    def test_export_then_download(self, client: TestClient) -> None:
        _import(client)
        resp = client.post("/api/exports", json={"kinds": ["posts"], "subTypes": ["post"]})
        assert resp.status_code == 200, resp.text
        files: list[dict[str, object]] = resp.json()["files"]
        assert len(files) == 1
        link: dict[str, object] = files[0]
        assert link["exportType"] == "posts"
        assert link["rowCount"] == 1
        url: str = str(link["downloadUrl"])
        assert url.startswith("http://testserver/api/downloads?")

        download = client.get(url)
        assert download.status_code == 200
        assert download.headers["content-type"] == "text/csv; charset=utf-8"
        assert download.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert f'filename="{link["filename"]}"' in download.headers["content-disposition"]
        assert download.content.startswith(UTF8_BOM)
        rows: list[list[str]] = decode(download.content)
        assert rows[1][3] == "First"

    def test_download_reads_file_in_threadpool(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        wrapped: list[object] = []
        real = downloads.iterate_in_threadpool

        def _spy(iterator):
            wrapped.append(iterator)
            return real(iterator)

        monkeypatch.setattr(downloads, "iterate_in_threadpool", _spy)
        _import(client)
        link: dict[str, object] = client.post("/api/exports", json={}).json()["files"][0]
        download = client.get(str(link["downloadUrl"]))
        assert download.status_code == 200
        assert len(download.content) == link["sizeBytes"]
        assert len(wrapped) == 1

    def test_download_twice_allowed(self, client: TestClient) -> None:
        _import(client)
        url: str = client.post("/api/exports", json={}).json()["files"][0]["downloadUrl"]
        assert client.get(url).status_code == 200
        assert client.get(url).status_code == 200

    def test_tampered_token_is_generic_denial(self, client: TestClient) -> None:
        _import(client)
        link: dict[str, object] = client.post("/api/exports", json={}).json()["files"][0]
        params: dict[str, object] = {
            "token": "0" * 64,
            "expires": link["expiresAt"],
            "filename": link["filename"],
        }
        resp = client.get("/api/downloads", params=params)
        assert resp.status_code == 403
        assert resp.json() == {"detail": "Download link is invalid or has expired.", "type": "download_denied"}

    def test_expired_link(self, client: TestClient) -> None:
        resp = client.get("/api/downloads", params={"token": "abc", "expires": 1, "filename": "x.csv"})
        assert resp.status_code == 403
        assert resp.json()["type"] == "download_denied"

    def test_traversal_denied(self, client: TestClient) -> None:
        resp = client.get(
            "/api/downloads",
            params={"token": "abc", "expires": 4_102_444_800, "filename": "../../etc/passwd"},
        )
        assert resp.status_code == 403

    @pytest.mark.parametrize(
        "params",
        [
            {"token": "abc", "expires": 4_102_444_800, "filename": "a\x00b.csv"},
            {"token": "abc", "expires": "soon", "filename": "a.csv"},
            {"token": "é" * 64, "expires": 4_102_444_800, "filename": "a.csv"},
        ],
        ids=["nul-filename", "non-numeric-expiry", "non-ascii-token"],
    )
    def test_malformed_link_is_generic_denial(self, client: TestClient, params: dict[str, object]) -> None:
        resp = client.get("/api/downloads", params=params)
        assert resp.status_code == 403
        assert resp.json() == {"detail": "Download link is invalid or has expired.", "type": "download_denied"}

    def test_export_archive(self, client: TestClient) -> None:
        _import(client)
        _import(client, b"Site ID,Username,Email\r\n1,ann,ann@example.com\r\n")
        resp = client.post("/api/exports", json={"kinds": ["posts", "users"], "archive": True, "filename": "site.csv"})
        assert resp.status_code == 200, resp.text
        files: list[dict[str, object]] = resp.json()["files"]
        assert len(files) == 1
        assert files[0]["filename"] == "site.zip"
        assert files[0]["exportType"] == "posts+users"

        download = client.get(str(files[0]["downloadUrl"]))
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/zip"

    def test_export_nothing(self, client: TestClient) -> None:
        resp = client.post("/api/exports", json={"kinds": ["users"]})
        assert resp.status_code == 400
        assert resp.json()["type"] == "empty_input"

    def test_unknown_kind(self, client: TestClient) -> None:
        resp = client.post("/api/exports", json={"kinds": ["orders"]})
        assert resp.status_code == 422

    def test_list_files(self, client: TestClient, storage_dir: Path) -> None:
        (storage_dir / "a.csv").write_text("abc")
        resp = client.get("/api/exports/files")
        assert resp.status_code == 200
        body: dict[str, object] = resp.json()
        assert [f["name"] for f in body["files"]] == ["a.csv"]  # type: ignore[union-attr]
        assert body["totalSize"] == 3

    def test_cleanup(self, client: TestClient, storage_dir: Path) -> None:
        (storage_dir / "fresh.csv").write_text("x")
        resp = client.post("/api/exports/cleanup")
        assert resp.status_code == 200
        assert resp.json() == {"deleted": 0}
        assert (storage_dir / "fresh.csv").exists()


# ---------- auth ----------


class TestApiKey:
    def test_mutations_need_key(self, keyed_client: TestClient) -> None:
        assert keyed_client.post("/api/imports", files=_upload(POSTS_CSV)).status_code == 401
        assert keyed_client.post("/api/exports", json={}).status_code == 401
        assert keyed_client.post("/api/exports/cleanup").status_code == 401

    def test_key_accepted(self, keyed_client: TestClient) -> None:
        resp = keyed_client.post("/api/imports", files=_upload(POSTS_CSV), headers={"X-API-Key": "s3cret"})
        assert resp.status_code == 200

    def test_reads_need_no_key(self, keyed_client: TestClient) -> None:
        assert keyed_client.get("/api/exports/files").status_code == 200
        assert keyed_client.get("/api/imports/history").status_code == 200
