"""Import endpoints: multipart CSV uploads."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from app.dependencies import get_api_key, get_app_settings, get_import_service
from app.schemas.imports import (
    ImportHistoryResponse,
    ImportResultResponse,
    PreviewResponse,
    ValidationResponse,
)
from config import Settings
from databridge.services.importer import ImportOptions, ImportService
from databridge.services.schemas import ImportResult, PreviewResult, ValidationReport
from db.enums import DuplicateHandling, MissingTypeAction, SideEffect

router: APIRouter = APIRouter(prefix="/api", tags=["imports"])


def _read_upload(upload: UploadFile, settings: Settings) -> bytes:
    limit: int = settings.imports.max_upload_bytes
    data: bytes = upload.file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=413, detail=f"Upload exceeds {limit} bytes")
    return data


@router.post("/imports", response_model=ImportResultResponse)
def run_import(
    file: UploadFile = File(...),
    duplicate_handling: DuplicateHandling = Form(DuplicateHandling.SKIP),
    missing_type_action: MissingTypeAction = Form(MissingTypeAction.SKIP),
    batch_size: int | None = Form(None),
    default_sub_type: str | None = Form(None),
    target_collection_id: str | None = Form(None),
    import_images: bool = Form(False),
    import_taxonomies: bool = Form(True),
    import_custom_fields: bool = Form(True),
    import_user_meta: bool = Form(True),
    create_missing: bool = Form(True),
    svc: ImportService = Depends(get_import_service),
    settings: Settings = Depends(get_app_settings),
    _key: str = Depends(get_api_key),
) -> dict[str, object]:
    try:
        options: ImportOptions = svc.options_from_settings(
            settings,
            duplicate_handling=duplicate_handling,
            missing_type_action=missing_type_action,
            batch_size=batch_size,
            default_sub_type=default_sub_type,
            target_collection_id=target_collection_id,
            create_missing=create_missing,
            commit_side_effects={
                SideEffect.MEDIA: import_images,
                SideEffect.TAXONOMIES: import_taxonomies,
                SideEffect.CUSTOM_FIELDS: import_custom_fields,
                SideEffect.USER_META: import_user_meta,
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    result: ImportResult = svc.run(_read_upload(file, settings), options)
    return result.to_dict()


@router.post("/imports/preview", response_model=PreviewResponse)
def preview_import(
    file: UploadFile = File(...),
    svc: ImportService = Depends(get_import_service),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, object]:
    preview: PreviewResult = svc.preview(_read_upload(file, settings))
    return asdict(preview)


@router.post("/imports/validate", response_model=ValidationResponse)
def validate_import(
    file: UploadFile = File(...),
    svc: ImportService = Depends(get_import_service),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, object]:
    report: ValidationReport = svc.validate(_read_upload(file, settings))
    return {**asdict(report), "has_warnings": report.has_warnings}


@router.get("/imports/history", response_model=ImportHistoryResponse)
def import_history(svc: ImportService = Depends(get_import_service)) -> dict[str, object]:
    return {"entries": svc.history()}
