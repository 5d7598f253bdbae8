"""Shared dataclasses for data bridge services."""

from databridge.services.schemas.results import (
    Committed,
    DownloadToken,
    Errored,
    GeneratedFile,
    ImportReport,
    ImportResult,
    PreviewResult,
    RowOutcome,
    Skipped,
    ValidationReport,
)

__all__ = [
    # Export / delivery
    "DownloadToken",
    "GeneratedFile",
    # Import
    "Committed",
    "Errored",
    "ImportReport",
    "ImportResult",
    "PreviewResult",
    "RowOutcome",
    "Skipped",
    "ValidationReport",
]
