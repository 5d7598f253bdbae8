"""Signed, expiring download links and retention for generated files.

A token is HMAC-SHA256 over ``"<path>|<filename>|<expires>"`` keyed with a
secret the host persists. Any failed check answers the client with the same
generic denial; the real reason goes to the server log only.
"""

import hashlib
import hmac
import os
import time
import zipfile
from collections.abc import Callable, Generator, Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from config import Settings
from databridge.services._types import FileInfoDict
from databridge.services.collaborators import SecretStore
from databridge.services.errors import DeliveryError, DownloadExpiredError, InvalidTokenError, NotFoundError
from databridge.services.export import DEFAULT_STREAM_CHUNK_SIZE, ensure_writable_dir, iter_file_chunks
from databridge.services.schemas.results import DownloadToken

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 3600
DEFAULT_RETENTION_SECONDS = 24 * 3600
DEFAULT_ALLOWED_EXTENSIONS = ("csv", "txt", "json", "zip")
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024

MIME_TYPES: dict[str, str] = {
    "csv": "text/csv; charset=utf-8",
    "txt": "text/plain",
    "json": "application/json",
    "xml": "text/xml",
    "zip": "application/zip",
}


def mime_type_for(filename: str) -> str:
    extension: str = Path(filename).suffix.lstrip(".").lower()
    return MIME_TYPES.get(extension, "application/octet-stream")


def download_headers(filename: str, size: int) -> dict[str, str]:
    safe_name: str = filename.replace('"', "")
    return {
        "Content-Type": mime_type_for(filename),
        "Content-Disposition": f'attachment; filename="{safe_name}"',
        "Content-Length": str(size),
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }


@dataclass
class FileDownload:
    """A verified download, ready to hand to a transport."""

    path: Path
    filename: str
    size: int
    headers: dict[str, str]
    chunks: Generator[bytes, None, None]


class FileDeliveryService:
    def __init__(
        self,
        storage_dir: Path | str,
        secret_store: SecretStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE,
        clock: Callable[[], float] = time.time,
        allowed_extensions: Sequence[str] = DEFAULT_ALLOWED_EXTENSIONS,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ):
        self.storage_dir = ensure_writable_dir(Path(storage_dir))
        self.root: Path = self.storage_dir.resolve()
        self.secret_store = secret_store
        self.ttl_seconds = ttl_seconds
        self.chunk_size = chunk_size
        self.clock = clock
        self.allowed_extensions = {ext.lower().lstrip(".") for ext in allowed_extensions}
        self.max_file_size = max_file_size

    @classmethod
    def from_settings(cls, settings: Settings, secret_store: SecretStore) -> "FileDeliveryService":
        return cls(
            settings.storage_dir,
            secret_store,
            ttl_seconds=settings.delivery.ttl_seconds,
            chunk_size=settings.export.stream_chunk_size,
            allowed_extensions=settings.delivery.allowed_extensions,
            max_file_size=settings.delivery.max_file_size,
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _now(self) -> int:
        return int(self.clock())

    def _candidate(self, filename: str) -> Path:
        return (self.root / filename).resolve()

    def _sign(self, path: Path, filename: str, expires_at: int) -> str:
        secret: bytes = self.secret_store.get_or_create_secret()
        message: str = f"{path}|{filename}|{expires_at}"
        return hmac.new(secret, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def _inside_root(self, path: Path) -> bool:
        return path != self.root and path.is_relative_to(self.root)

    def issue_token(
        self,
        file_path: Path | str,
        filename: Optional[str] = None,
        ttl: Optional[int] = None,
    ) -> DownloadToken:
        """Sign a download link for a file under the storage root."""
        path: Path = Path(file_path).resolve()
        if not path.is_file() or not self._inside_root(path):
            logger.warning("Refusing to sign download", path=str(path))
            raise NotFoundError("File does not exist.")

        name: str = filename or path.relative_to(self.root).as_posix()
        if self._candidate(name) != path:
            raise ValueError(f"filename {name!r} does not name {path}")

        expires_at: int = self._now() + (ttl if ttl is not None else self.ttl_seconds)
        token: str = self._sign(path, name, expires_at)
        return DownloadToken(token=token, filename=name, expires_at=expires_at, path=path)

    def resolve(self, token: str, filename: str, expires_at: int | str) -> Path:
        """Verify a presented link and return the file it names.

        Checks run in order: expiry, signature, containment, existence.
        """
        try:
            try:
                expires: int = int(expires_at)
            except (TypeError, ValueError) as exc:
                raise InvalidTokenError(f"Unreadable expiry: {expires_at!r}") from exc
            if self._now() > expires:
                raise DownloadExpiredError()

            try:
                path: Path = self._candidate(filename)
            except (OSError, ValueError) as exc:
                raise NotFoundError(f"Unresolvable filename: {exc}") from exc
            expected: str = self._sign(path, filename, expires)
            if not hmac.compare_digest(expected.encode("ascii"), str(token).encode("utf-8")):
                raise InvalidTokenError()

            if not self._inside_root(path):
                raise NotFoundError("File is outside the storage directory.")
            if not path.is_file():
                raise NotFoundError()
        except DeliveryError as exc:
            logger.warning("Download denied", reason=exc.code, detail=str(exc), filename=filename)
            raise
        return path

    def verify_and_stream(
        self,
        token: str,
        filename: str,
        expires_at: int | str,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> FileDownload:
        path: Path = self.resolve(token, filename, expires_at)
        size: int = path.stat().st_size
        logger.info("Serving download", filename=filename, size=size)
        return FileDownload(
            path=path,
            filename=path.name,
            size=size,
            headers=download_headers(path.name, size),
            chunks=iter_file_chunks(path, self.chunk_size, should_stop),
        )

    @staticmethod
    def download_headers(filename: str, size: int) -> dict[str, str]:
        return download_headers(filename, size)

    # ------------------------------------------------------------------
    # Retention and housekeeping
    # ------------------------------------------------------------------

    def _files(self) -> Iterator[Path]:
        for entry in self.storage_dir.iterdir():
            if entry.is_file():
                yield entry

    def cleanup_expired(self, max_age_seconds: int = DEFAULT_RETENTION_SECONDS) -> int:
        """Delete files older than ``max_age_seconds``. Returns the count removed."""
        now: float = self.clock()
        deleted = 0
        for path in self._files():
            try:
                age: float = now - path.stat().st_mtime
                if age > max_age_seconds:
                    path.unlink()
                    deleted += 1
            except OSError as exc:
                logger.warning("Could not remove file", path=str(path), error=str(exc))
        logger.info("Retention sweep finished", deleted=deleted, max_age_seconds=max_age_seconds)
        return deleted

    def list_files(self) -> list[FileInfoDict]:
        now: float = self.clock()
        files: list[FileInfoDict] = []
        for path in self._files():
            stat = path.stat()
            files.append({
                "name": path.name,
                "size": stat.st_size,
                "created": int(stat.st_mtime),
                "age_hours": round((now - stat.st_mtime) / 3600, 1),
            })
        files.sort(key=lambda f: f["created"], reverse=True)
        return files

    def directory_size(self) -> int:
        return sum(path.stat().st_size for path in self._files())

    def validate_file_security(self, file_path: Path | str) -> list[str]:
        """Problems that forbid serving ``file_path``. Empty list means OK."""
        path = Path(file_path)
        if not path.is_file():
            return ["File does not exist."]

        issues: list[str] = []
        if not self._inside_root(path.resolve()):
            issues.append("File is outside allowed directory.")
        if path.suffix.lstrip(".").lower() not in self.allowed_extensions:
            issues.append("File type not allowed.")
        if path.stat().st_size > self.max_file_size:
            issues.append("File size exceeds maximum allowed size.")
        return issues

    def create_zip_archive(self, file_paths: Iterable[Path | str], zip_filename: str) -> Optional[Path]:
        """Bundle files into one archive in the storage root; the originals are removed."""
        existing: list[Path] = [Path(p) for p in file_paths if Path(p).is_file()]
        if not existing:
            return None

        zip_path: Path = self.storage_dir / os.path.basename(zip_filename)
        try:
            with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for path in existing:
                    archive.write(path, arcname=path.name)
        except OSError as exc:
            logger.error("Could not create zip archive", path=str(zip_path), error=str(exc))
            zip_path.unlink(missing_ok=True)
            return None

        for path in existing:
            path.unlink(missing_ok=True)
        logger.info("Created zip archive", path=str(zip_path), files=len(existing))
        return zip_path
