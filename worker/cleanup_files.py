"""Worker: delete generated files past the retention window.

Meant for the host's scheduler (cron, systemd timer) to run periodically.

Usage:
    python -m worker.cleanup_files
    python -m worker.cleanup_files --max-age-hours 6
"""

import argparse

import structlog

from config import Settings, get_settings
from databridge.services.file_delivery import FileDeliveryService
from databridge.services.stores import DbSecretStore
from db.connection import get_session

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Delete generated files older than the retention window",
    )
    parser.add_argument(
        "--max-age-hours",
        type=float,
        default=None,
        help="Override DOWNLOAD_RETENTION_HOURS",
    )
    args: argparse.Namespace = parser.parse_args(argv)

    settings: Settings = get_settings()
    hours: float = args.max_age_hours or settings.delivery.retention_hours
    logger.info("Starting retention sweep", storage_dir=str(settings.storage_dir), max_age_hours=hours)

    with get_session() as session:
        delivery: FileDeliveryService = FileDeliveryService.from_settings(settings, DbSecretStore(session))
        deleted: int = delivery.cleanup_expired(int(hours * 3600))
        remaining: int = delivery.directory_size()

    logger.info("Sweep complete", deleted=deleted, remaining_bytes=remaining)
    return deleted


if __name__ == "__main__":
    main()
