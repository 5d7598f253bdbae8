"""Worker: export stored records to CSV files.

Usage:
    python -m worker.export_records --kind posts --kind users
    python -m worker.export_records --kind posts --sub-type page \
        --start 2026-01-01 --end 2026-01-31 -o january.csv
"""

import argparse
from datetime import date

import structlog

from config import Settings, get_settings
from databridge.services.dataset_types import registered_types
from databridge.services.export import ExportService
from databridge.services.schemas import GeneratedFile
from databridge.services.stores import DbRecordStore
from db.connection import get_session

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> dict[str, GeneratedFile]:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Export stored records to CSV",
    )
    parser.add_argument(
        "--kind",
        "-k",
        action="append",
        choices=registered_types(),
        help="Dataset type to export (repeatable, default: posts)",
    )
    parser.add_argument(
        "--sub-type",
        action="append",
        default=None,
        help="Restrict posts to this post type (repeatable)",
    )
    parser.add_argument(
        "--start",
        "-s",
        type=date.fromisoformat,
        default=None,
        help="Created on/after (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--end",
        "-e",
        type=date.fromisoformat,
        default=None,
        help="Created on/before (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--output",
        "-o",
        default=None,
        help="Base filename (auto-generated if omitted)",
    )
    args: argparse.Namespace = parser.parse_args(argv)

    kinds: list[str] = args.kind or ["posts"]
    filters: dict[str, object] = {}
    if args.sub_type:
        filters["sub_types"] = args.sub_type
    if args.start:
        filters["date_start"] = args.start.isoformat()
    if args.end:
        filters["date_end"] = args.end.isoformat()

    logger.info("Starting record export", kinds=kinds, filters=filters)

    settings: Settings = get_settings()
    with get_session() as session:
        store: DbRecordStore = DbRecordStore(session, known_sub_types=settings.imports.known_sub_types)
        service: ExportService = ExportService.from_settings(settings)
        generated: dict[str, GeneratedFile] = service.export_from_source(store, kinds, filters, args.output)

    for export_type, file in generated.items():
        logger.info(
            "Export complete",
            export_type=export_type,
            output=str(file.path),
            rows=file.row_count,
            batches=file.batches,
        )

    missing: set[str] = set(kinds) - set(generated)
    for kind in sorted(missing):
        logger.warning("export_warning", detail=f"No {kind} exported")
    return generated


if __name__ == "__main__":
    main()
