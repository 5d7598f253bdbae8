"""FastAPI application: entry point."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.dependencies import get_api_key
from app.routes import downloads, exports, imports
from app.routes.health import get_db_info
from app.schemas.common import HealthResponse
from config import Settings, get_settings
from databridge.services._types import DbInfoDict
from databridge.services.errors import DataBridgeError, DeliveryError
from db.connection import init_db
from migrations.migrate import migrate

logger: logging.Logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = get_settings()
    logger.info("DB: %s", settings.database.db_info_for_logging())
    logger.info("Storage: %s", settings.storage_dir.resolve())

    if settings.database._use_postgres():
        init_db()
    else:
        migrate()
    yield


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DataBridgeError)
    async def _on_databridge_error(request: Request, exc: DataBridgeError) -> JSONResponse:
        if isinstance(exc, DeliveryError):
            # reason already logged by the delivery service
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
        logger.warning("%s %s failed: [%s] %s", request.method, request.url.path, exc.code, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def _on_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__},
        )


def create_app() -> FastAPI:
    app: FastAPI = FastAPI(
        title="Data Bridge",
        version="0.1.0",
        lifespan=_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )
    register_error_handlers(app)

    @app.get("/health", response_model=HealthResponse)
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/db", dependencies=[Depends(get_api_key)])
    def health_db() -> DbInfoDict:
        return get_db_info()

    app.include_router(exports.router)
    app.include_router(downloads.router)
    app.include_router(imports.router)

    return app


app: FastAPI = create_app()


def start() -> None:
    """Entry point for databridge-api."""
    project_root: Path = Path(__file__).resolve().parent.parent
    os.chdir(project_root)

    for candidate in (project_root / ".env", project_root.parent / ".env"):
        if candidate.exists():
            load_dotenv(candidate, override=False)

    reload: bool = os.environ.get("DATABRIDGE_RELOAD", "false").lower() in ("1", "true", "yes")
    uvicorn.run(
        "app.main:app",
        host=os.environ.get("DATABRIDGE_HOST", "127.0.0.1"),
        port=int(os.environ.get("DATABRIDGE_PORT", "8000")),
        reload=reload,
    )
