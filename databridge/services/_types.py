"""Typed dicts for service-layer return values.

Keeps route-facing methods explicit about their shape instead of returning bare dicts.
"""

import sys

if sys.version_info >= (3, 12):
    from typing import TypedDict
else:
    from typing_extensions import TypedDict

from databridge.services._helpers import JsonDict

# -- File Delivery ---------------------------------------------------------


class FileInfoDict(TypedDict):
    name: str
    size: int
    created: int
    age_hours: float


class DownloadLinkDict(TypedDict):
    export_type: str
    filename: str
    row_count: int
    size_bytes: int
    download_url: str
    expires_at: int


# -- Import ----------------------------------------------------------------


class ImportLogEntry(TypedDict):
    timestamp: str
    import_type: str
    results: JsonDict
    options: JsonDict


# -- Stores ----------------------------------------------------------------


class RecordDict(TypedDict):
    id: str
    kind: str
    sub_type: str | None
    fields: JsonDict
    metadata: JsonDict
    target_collection_id: str | None
    created_at: str
    updated_at: str


# -- Health ----------------------------------------------------------------


class DbInfoDict(TypedDict, total=False):
    backend_type: str
    database_url_or_path: str | None
    tables_present: list[str]
    tables_missing: list[str]
    schema_initialized: bool
    pid: int
    error: str
