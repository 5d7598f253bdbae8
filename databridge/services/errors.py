"""Shared exception hierarchy for data bridge services.

Every error carries a human-readable message (``str(exc)``) and a stable
``code`` for automated handling. ``status_code`` is what the HTTP binding
answers with.
"""

from collections.abc import Sequence
from pathlib import Path


class DataBridgeError(Exception):
    """Base exception for all pipeline errors."""

    code: str = "databridge_error"
    status_code: int = 500
    default_message: str = "Data bridge operation failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, object]:
        return {"detail": self.message, "type": self.code}


# ── Input ─────────────────────────────────────────────────────────────────────


class EmptyInputError(DataBridgeError):
    """No rows to export, or an upload that decodes to nothing."""

    code = "empty_input"
    status_code = 400
    default_message = "No data provided."


class CodecError(DataBridgeError):
    """Base exception for CSV decoding errors."""

    status_code = 400


class MalformedInputError(CodecError):
    """CSV content could not be parsed."""

    code = "malformed_input"
    default_message = "CSV file could not be parsed."


class InputTooLargeError(CodecError):
    """Decoded row count exceeded the configured ceiling."""

    code = "input_too_large"
    status_code = 413

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"CSV file too large (more than {limit} rows). Please split it into smaller files."
        )


class MissingFieldsError(DataBridgeError):
    """Header row lacks one or more required columns."""

    code = "missing_fields"
    status_code = 422

    def __init__(self, fields: Sequence[str]):
        self.fields = list(fields)
        super().__init__(f"Missing required fields: {', '.join(self.fields)}")

    def to_dict(self) -> dict[str, object]:
        return {**super().to_dict(), "fields": self.fields}


# ── Storage ───────────────────────────────────────────────────────────────────


class DirectoryUnwritableError(DataBridgeError):
    """Storage root cannot be created or written to."""

    code = "directory_unwritable"

    def __init__(self, path: Path | str):
        self.path = Path(path)
        super().__init__(f"Storage directory is not writable: {self.path}")


# ── Delivery ──────────────────────────────────────────────────────────────────


class DeliveryError(DataBridgeError):
    """Base exception for download failures.

    Clients only ever see ``client_message``; the specific reason stays in
    server-side logs.
    """

    status_code = 403
    client_message = "Download link is invalid or has expired."

    def to_dict(self) -> dict[str, object]:
        return {"detail": self.client_message, "type": "download_denied"}


class DownloadExpiredError(DeliveryError):
    code = "expired"
    default_message = "Download link has expired."


class InvalidTokenError(DeliveryError):
    code = "invalid_token"
    default_message = "Invalid download token."


class NotFoundError(DeliveryError):
    code = "not_found"
    default_message = "File not found."


# ── Commit ────────────────────────────────────────────────────────────────────


class CommitFailedError(DataBridgeError):
    """Raised by a record sink when a record cannot be written."""

    code = "commit_failed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
