"""FastAPI dependencies: settings, DB sessions, auth and service factories."""

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from config import Settings, get_settings
from databridge.services.export import ExportService
from databridge.services.file_delivery import FileDeliveryService
from databridge.services.importer import ImportService
from databridge.services.stores import DbJobLogStore, DbRecordStore, DbSecretStore
from db.connection import get_db as get_db  # noqa: F401 (re-exported for routes)


def get_app_settings() -> Settings:
    """Settings dependency; tests override it to point at a temp storage root."""
    return get_settings()


def get_api_key(
    x_api_key: str = Header(default=""),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """Validate API key on mutation endpoints."""
    expected: str | None = settings.api_key
    if not expected:
        return ""  # auth disabled when no key configured
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return x_api_key


def get_record_store(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> DbRecordStore:
    return DbRecordStore(db, known_sub_types=settings.imports.known_sub_types)


def get_export_service(settings: Settings = Depends(get_app_settings)) -> ExportService:
    return ExportService.from_settings(settings)


def get_delivery_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> FileDeliveryService:
    return FileDeliveryService.from_settings(settings, DbSecretStore(db))


def get_import_service(
    db: Session = Depends(get_db),
    store: DbRecordStore = Depends(get_record_store),
    settings: Settings = Depends(get_app_settings),
) -> ImportService:
    return ImportService.from_settings(settings, store, DbJobLogStore(db))
