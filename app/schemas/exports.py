"""Export request/response schemas."""

from pydantic import Field

from app.schemas.common import CamelModel


class ExportRequest(CamelModel):
    kinds: list[str] = Field(default_factory=lambda: ["posts"], description="Dataset types to export")
    sub_types: list[str] | None = Field(None, description="Restrict posts to these post types")
    target_collection_id: str | None = None
    date_start: str | None = Field(None, description="ISO date, inclusive")
    date_end: str | None = Field(None, description="ISO date, inclusive")
    filename: str | None = Field(None, description="Base filename; each type gets a _<type> suffix")
    archive: bool = Field(False, description="Bundle all files into one zip archive")


class DownloadLinkResponse(CamelModel):
    export_type: str
    filename: str
    row_count: int
    size_bytes: int
    download_url: str
    expires_at: int


class ExportResponse(CamelModel):
    files: list[DownloadLinkResponse]


class FileInfoResponse(CamelModel):
    name: str
    size: int
    created: int
    age_hours: float


class FileListResponse(CamelModel):
    files: list[FileInfoResponse]
    total_size: int


class CleanupResponse(CamelModel):
    deleted: int
