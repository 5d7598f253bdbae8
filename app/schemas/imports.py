"""Import response schemas. Requests are multipart forms, see routes/imports.py."""

from app.schemas.common import CamelModel


class RowErrorResponse(CamelModel):
    row: int
    reason: str


class ImportResultResponse(CamelModel):
    import_type: str
    total_rows: int
    success: int
    skipped: int
    errors: int
    messages: list[str]
    error_details: list[RowErrorResponse]
    stage: str
    finished_at: str


class PreviewResponse(CamelModel):
    import_type: str
    headers: list[str]
    rows: list[list[str]]
    total_rows: int


class ValidationResponse(CamelModel):
    import_type: str
    headers: list[str]
    total_records: int
    missing_sub_types: list[str]
    has_warnings: bool


class ImportLogResponse(CamelModel):
    timestamp: str
    import_type: str
    results: dict[str, object]
    options: dict[str, object]


class ImportHistoryResponse(CamelModel):
    entries: list[ImportLogResponse]
