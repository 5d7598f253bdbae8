"""Shared utilities for the service layer."""

import json
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from uuid import uuid4

# JSON column type: every JSON TEXT column in this DB stores a dict.
JsonDict = dict[str, object]
Serializable = Mapping[str, object] | list[Mapping[str, object]]

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def new_id() -> str:
    return str(uuid4())


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def file_timestamp() -> str:
    """Timestamp fragment used in generated filenames."""
    return datetime.now(UTC).strftime("%Y-%m-%d_%H-%M-%S")


def load_json(raw: str | None) -> JsonDict | None:
    """Deserialize a JSON TEXT column. Always a dict or None in this codebase."""
    if not raw:
        return None
    result: object = json.loads(raw)
    if isinstance(result, dict):
        return dict(result)
    return None


def dump_json(obj: Serializable) -> str:
    return json.dumps(obj, default=str)


def sanitize_filename(name: str) -> str:
    """Reduce a filename to a safe basename: no directories, no odd characters."""
    base: str = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned: str = _UNSAFE_FILENAME_CHARS.sub("-", base).strip(".-")
    return cleaned


def split_list(raw: str | None, sep: str = ",") -> list[str]:
    """Split a comma list cell ("News, Events") into trimmed, non-empty items."""
    if not raw:
        return []
    return [part.strip() for part in raw.split(sep) if part.strip()]
