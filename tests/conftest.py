"""Shared fixtures: in-memory SQLite DB with all tables, temp storage, fake collaborators."""

from collections.abc import Generator, Mapping, Sequence
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from databridge.services.collaborators import Record
from databridge.services.errors import CommitFailedError
from db.models import Base


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    eng: Engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine: Engine) -> Generator[Session, None, None]:
    factory: sessionmaker[Session] = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    sess: Session = factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture()
def storage_dir(tmp_path: Path) -> Path:
    path: Path = tmp_path / "exports"
    path.mkdir()
    return path


@pytest.fixture()
def settings(tmp_path: Path, storage_dir: Path) -> Settings:
    return Settings(
        data_dir=tmp_path / "data",
        storage_dir=storage_dir,
        api_key=None,
        public_base_url="http://testserver",
    )


# ---------- fake collaborators ----------


class FakeSink:
    """In-memory record sink. ``fail_on`` labels make commit raise CommitFailedError."""

    def __init__(
        self,
        known_types: Sequence[str] = ("post", "page"),
        fail_on: Sequence[str] = (),
        fail_metadata: bool = False,
    ):
        self.known_types = set(known_types)
        self.fail_on = set(fail_on)
        self.fail_metadata = fail_metadata
        self.records: dict[int, Record] = {}
        self.metadata: dict[int, dict[str, object]] = {}
        self.commits: list[Record] = []
        self._next_id = 1

    def type_exists(self, sub_type: str) -> bool:
        return sub_type in self.known_types

    def find_duplicate(self, record: Record, match_fields: Sequence[str]) -> int | None:
        for identity, existing in self.records.items():
            if existing.kind != record.kind:
                continue
            if all(existing.fields.get(f) == record.fields.get(f) for f in match_fields):
                return identity
        return None

    def commit(self, record: Record) -> int:
        if set(record.fields.values()) & self.fail_on:
            raise CommitFailedError("rejected by target")
        self.commits.append(record)
        if record.identity is not None:
            self.records[int(record.identity)] = record  # type: ignore[call-overload]
            return int(record.identity)  # type: ignore[call-overload]
        identity: int = self._next_id
        self._next_id += 1
        self.records[identity] = record
        return identity

    def attach_metadata(self, record: Record, identity: object, metadata: Mapping[str, object]) -> None:
        if self.fail_metadata:
            raise RuntimeError("media download failed")
        self.metadata.setdefault(int(identity), {}).update(metadata)  # type: ignore[call-overload]


class MemoryLogStore:
    def __init__(self, keep: int = 10):
        self.keep = keep
        self.entries: list[dict[str, object]] = []

    def append_job_log(self, entry: Mapping[str, object]) -> None:
        self.entries.append(dict(entry))
        self.entries = self.entries[-self.keep:]

    def get_job_log_history(self) -> list[dict[str, object]]:
        return list(self.entries)


class StaticSecretStore:
    def __init__(self, secret: bytes = b"test-secret"):
        self.secret = secret
        self.calls = 0

    def get_or_create_secret(self) -> bytes:
        self.calls += 1
        return self.secret


@pytest.fixture()
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture()
def log_store() -> MemoryLogStore:
    return MemoryLogStore()


@pytest.fixture()
def secret_store() -> StaticSecretStore:
    return StaticSecretStore()


@pytest.fixture()
def make_sink() -> type[FakeSink]:
    return FakeSink
