"""Application settings, Pydantic-based.

DB selection:
  - DATABASE_URL set and non-empty -> PostgreSQL
  - DATABASE_URL absent/empty -> SQLite (DB_SQLITE_PATH, default data/databridge.db)

Generated CSV files live under DATABRIDGE_STORAGE_DIR (default exports/).
"""

import re
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _project_root() -> Path:
    """Project root. config.py lives at the repository root."""
    return Path(__file__).resolve().parent


def _ensure_env_loaded() -> None:
    """Load .env from the project root (then its parent). Idempotent."""
    root: Path = _project_root()
    for candidate in (root / ".env", root.parent / ".env"):
        if candidate.exists():
            load_dotenv(candidate, override=False)


_ensure_env_loaded()


class DatabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=(str(_project_root() / ".env"), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str | None = Field(
        default=None,
        description="PostgreSQL DSN; when set, uses Postgres.",
        validation_alias="DATABASE_URL",
    )
    sqlite_path: str | None = Field(default="data/databridge.db")
    pool_size: int = Field(default=5)
    pool_timeout: int = Field(default=30)
    pool_recycle: int = Field(default=1800)

    def _use_postgres(self) -> bool:
        return bool((self.database_url or "").strip())

    def _resolved_sqlite_path(self) -> Path:
        raw: str = (self.sqlite_path or "data/databridge.db").strip()
        path: Path = Path(raw)
        if not path.is_absolute():
            path = (_project_root() / path).resolve()
        return path

    def _redacted_postgres_dsn(self) -> str:
        url: str = (self.database_url or "").strip()
        return re.sub(r":([^:@]+)@", r":***@", url) if url else ""

    @property
    def url(self) -> str:
        if self._use_postgres():
            return (self.database_url or "").strip()
        path = self._resolved_sqlite_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{path.as_posix()}"

    def db_info_for_logging(self) -> str:
        if self._use_postgres():
            return f"PostgreSQL @ {self._redacted_postgres_dsn()}"
        return f"SQLite @ {self._resolved_sqlite_path().as_posix()}"


class ExportSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EXPORT_",
        env_file=(str(_project_root() / ".env"), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    chunk_size: int = Field(default=1000, gt=0, description="Rows written per flush cycle")
    stream_chunk_size: int = Field(default=8192, gt=0, description="Bytes per download chunk")
    filename_prefix: str = Field(default="databridge")
    site_tag: str | None = Field(default=None, description="Optional site tag for generated filenames")


class ImportSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="IMPORT_",
        env_file=(str(_project_root() / ".env"), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_rows: int = Field(default=50_000, gt=0, description="Row ceiling for a decoded upload")
    batch_size: int = Field(default=50, gt=0)
    preview_rows: int = Field(default=5, gt=0)
    default_sub_type: str = Field(default="post")
    known_sub_types: list[str] = Field(default_factory=lambda: ["post", "page"])
    max_upload_bytes: int = Field(default=100 * 1024 * 1024)


class DeliverySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DOWNLOAD_",
        env_file=(str(_project_root() / ".env"), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ttl_seconds: int = Field(default=3600, gt=0, description="Lifetime of a download link")
    retention_hours: int = Field(default=24, gt=0, description="Age after which the sweep deletes files")
    allowed_extensions: list[str] = Field(default_factory=lambda: ["csv", "txt", "json", "zip"])
    max_file_size: int = Field(default=100 * 1024 * 1024)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DATABRIDGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    api_key: str | None = Field(default=None, description="API key for mutation endpoints")
    data_dir: Path = Field(default=Path("data"))
    storage_dir: Path = Field(default=Path("exports"), description="Root directory for generated files")
    public_base_url: str = Field(default="", description="Prefix for download links handed to clients")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    export: ExportSettings = Field(default_factory=ExportSettings)
    imports: ImportSettings = Field(default_factory=ImportSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)

    def model_post_init(self, _context: object) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.storage_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    return Settings()
