"""Interfaces the pipeline expects from its host.

The host passes concrete objects into each service; nothing here reaches for
global state. ``databridge.services.stores`` has SQL-backed implementations.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

Row = Mapping[str, object]


@dataclass
class Record:
    """One import row, mapped onto the target's field names."""

    kind: str
    fields: dict[str, str]
    metadata: dict[str, object] = field(default_factory=dict)
    identity: object | None = None  # set when the commit should update an existing record
    target_collection_id: object | None = None
    row_number: int = 0
    sub_type_field: str | None = None

    @property
    def sub_type(self) -> str | None:
        if self.sub_type_field is None:
            return None
        return self.fields.get(self.sub_type_field)

    @property
    def is_update(self) -> bool:
        return self.identity is not None


@runtime_checkable
class RecordSource(Protocol):
    def fetch_rows(self, dataset_kind: str, filters: Mapping[str, object]) -> Sequence[Row]: ...


@runtime_checkable
class RecordSink(Protocol):
    def type_exists(self, sub_type: str) -> bool: ...

    def find_duplicate(self, record: Record, match_fields: Sequence[str]) -> object | None: ...

    def commit(self, record: Record) -> object:
        """Create or update ``record``; return its identity or raise CommitFailedError."""
        ...

    def attach_metadata(self, record: Record, identity: object, metadata: Mapping[str, object]) -> None: ...


@runtime_checkable
class SecretStore(Protocol):
    def get_or_create_secret(self) -> bytes: ...


@runtime_checkable
class JobLogStore(Protocol):
    def append_job_log(self, entry: Mapping[str, object]) -> None: ...

    def get_job_log_history(self) -> list[dict[str, object]]: ...
