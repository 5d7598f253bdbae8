"""Export endpoints: thin routes, logic in services."""

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies import (
    get_api_key,
    get_app_settings,
    get_delivery_service,
    get_export_service,
    get_record_store,
)
from app.schemas.exports import CleanupResponse, ExportRequest, ExportResponse, FileListResponse
from config import Settings
from databridge.services._helpers import file_timestamp
from databridge.services._types import DownloadLinkDict
from databridge.services.dataset_types import registered_types
from databridge.services.errors import EmptyInputError
from databridge.services.export import ExportService
from databridge.services.file_delivery import FileDeliveryService
from databridge.services.schemas import DownloadToken, GeneratedFile
from databridge.services.stores import DbRecordStore

router: APIRouter = APIRouter(prefix="/api", tags=["exports"])


def _link(token: DownloadToken, settings: Settings) -> str:
    return token.url(f"{settings.public_base_url.rstrip('/')}/api/downloads")


@router.post("/exports", response_model=ExportResponse)
def create_export(
    body: ExportRequest,
    store: DbRecordStore = Depends(get_record_store),
    svc: ExportService = Depends(get_export_service),
    delivery: FileDeliveryService = Depends(get_delivery_service),
    settings: Settings = Depends(get_app_settings),
    _key: str = Depends(get_api_key),
) -> dict[str, list[DownloadLinkDict]]:
    unknown: list[str] = [k for k in body.kinds if k not in registered_types()]
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown export types: {', '.join(unknown)}")

    filters: dict[str, object] = body.model_dump(
        include={"sub_types", "target_collection_id", "date_start", "date_end"},
        exclude_none=True,
    )
    generated: dict[str, GeneratedFile] = svc.export_from_source(store, body.kinds, filters, body.filename)
    if not generated:
        raise EmptyInputError("No data found for export.")

    links: list[DownloadLinkDict] = []
    if body.archive and len(generated) > 1:
        stem: str = body.filename.rsplit(".", 1)[0] if body.filename else f"{svc.filename_prefix}_{file_timestamp()}"
        archive = delivery.create_zip_archive([f.path for f in generated.values()], f"{stem}.zip")
        if archive is not None:
            token: DownloadToken = delivery.issue_token(archive)
            links.append(DownloadLinkDict(
                export_type="+".join(generated),
                filename=token.filename,
                row_count=sum(f.row_count for f in generated.values()),
                size_bytes=archive.stat().st_size,
                download_url=_link(token, settings),
                expires_at=token.expires_at,
            ))
            return {"files": links}

    for export_type, file in generated.items():
        token = delivery.issue_token(file.path)
        links.append(DownloadLinkDict(
            export_type=export_type,
            filename=file.filename,
            row_count=file.row_count,
            size_bytes=file.size_bytes,
            download_url=_link(token, settings),
            expires_at=token.expires_at,
        ))
    return {"files": links}


@router.get("/exports/files", response_model=FileListResponse)
def list_files(delivery: FileDeliveryService = Depends(get_delivery_service)) -> dict[str, object]:
    return {"files": delivery.list_files(), "total_size": delivery.directory_size()}


@router.post("/exports/cleanup", response_model=CleanupResponse)
def cleanup_files(
    max_age_hours: float | None = Query(None, gt=0),
    delivery: FileDeliveryService = Depends(get_delivery_service),
    settings: Settings = Depends(get_app_settings),
    _key: str = Depends(get_api_key),
) -> dict[str, int]:
    hours: float = max_age_hours or settings.delivery.retention_hours
    return {"deleted": delivery.cleanup_expired(int(hours * 3600))}
