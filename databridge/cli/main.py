"""Main CLI entry point."""

from pathlib import Path
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.table import Table

from config import get_settings
from databridge.services.errors import DataBridgeError

app = typer.Typer(
    name="databridge",
    help="CSV import/export pipeline with signed downloads",
    add_completion=False,
)

console = Console()
logger = structlog.get_logger(__name__)


def _fail(exc: DataBridgeError) -> typer.Exit:
    logger.error("Command failed", code=exc.code, error=str(exc))
    console.print(f"[red]{exc}[/red]")
    return typer.Exit(code=1)


def _read_csv(path: Path) -> bytes:
    if not path.is_file():
        raise typer.BadParameter(f"File not found: {path}")
    return path.read_bytes()


@app.command("init-db")
def init_db(
    force: bool = typer.Option(False, "--force", "-f", help="Drop and recreate tables"),
):
    """Initialize the database schema."""
    from db.connection import get_engine
    from db.connection import init_db as create_tables
    from db.models import Base
    from migrations.migrate import migrate

    settings = get_settings()
    with console.status("Initializing database..."):
        if force:
            Base.metadata.drop_all(get_engine())
            console.print("[yellow]Dropped existing tables[/yellow]")
            create_tables()
        elif settings.database._use_postgres():
            create_tables()
        else:
            migrate()

    console.print(f"[green]Database ready:[/green] {settings.database.db_info_for_logging()}")


@app.command()
def export(
    kinds: list[str] = typer.Option(["posts"], "--kind", "-k", help="Dataset type to export (repeatable)"),
    sub_types: Optional[list[str]] = typer.Option(None, "--sub-type", "-s", help="Restrict posts to a post type"),
    date_start: Optional[str] = typer.Option(None, "--from", help="Created on/after (YYYY-MM-DD)"),
    date_end: Optional[str] = typer.Option(None, "--to", help="Created on/before (YYYY-MM-DD)"),
    filename: Optional[str] = typer.Option(None, "--filename", help="Base filename"),
    link: bool = typer.Option(False, "--link", help="Print a signed download link per file"),
):
    """Export stored records to CSV files under the storage root."""
    from databridge.services.export import ExportService
    from databridge.services.file_delivery import FileDeliveryService
    from databridge.services.stores import DbRecordStore, DbSecretStore
    from db.connection import get_session

    settings = get_settings()
    filters: dict[str, object] = {
        k: v
        for k, v in {"sub_types": sub_types, "date_start": date_start, "date_end": date_end}.items()
        if v
    }

    with get_session() as session:
        store = DbRecordStore(session, known_sub_types=settings.imports.known_sub_types)
        service = ExportService.from_settings(settings)
        with console.status("Exporting..."):
            generated = service.export_from_source(store, kinds, filters, filename)

        if not generated:
            console.print("[yellow]No data found for export[/yellow]")
            raise typer.Exit(code=1)

        delivery = FileDeliveryService.from_settings(settings, DbSecretStore(session)) if link else None

        table = Table(title="Export Results")
        table.add_column("Type", style="cyan")
        table.add_column("File", style="green")
        table.add_column("Rows", justify="right")
        table.add_column("Bytes", justify="right")
        if delivery is not None:
            table.add_column("Download")

        for export_type, file in generated.items():
            row = [export_type, file.filename, str(file.row_count), str(file.size_bytes)]
            if delivery is not None:
                token = delivery.issue_token(file.path)
                row.append(token.url(f"{settings.public_base_url.rstrip('/')}/api/downloads"))
            table.add_row(*row)

    console.print(table)


@app.command("import")
def import_csv(
    path: Path = typer.Argument(..., help="CSV file to import"),
    duplicates: str = typer.Option("skip", "--duplicates", "-d", help="skip | update | create_new"),
    missing_type: str = typer.Option("skip", "--missing-type", help="skip | convert_to_default | reject"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Rows per batch"),
    target: Optional[str] = typer.Option(None, "--target", help="Target collection id"),
    images: bool = typer.Option(False, "--images/--no-images", help="Attach featured images"),
    taxonomies: bool = typer.Option(True, "--taxonomies/--no-taxonomies", help="Attach categories and tags"),
    custom_fields: bool = typer.Option(True, "--custom-fields/--no-custom-fields", help="Attach custom fields"),
    user_meta: bool = typer.Option(True, "--user-meta/--no-user-meta", help="Attach user meta"),
    create_missing: bool = typer.Option(True, "--create-missing/--update-only", help="Create rows with no match"),
):
    """Import a CSV file into the record store."""
    from databridge.services.importer import ImportService
    from databridge.services.stores import DbJobLogStore, DbRecordStore
    from db.connection import get_session

    settings = get_settings()
    data: bytes = _read_csv(path)

    with get_session() as session:
        service = ImportService.from_settings(
            settings,
            DbRecordStore(session, known_sub_types=settings.imports.known_sub_types),
            DbJobLogStore(session),
        )
        try:
            options = service.options_from_settings(
                settings,
                duplicate_handling=duplicates,
                missing_type_action=missing_type,
                batch_size=batch_size,
                target_collection_id=target,
                create_missing=create_missing,
                commit_side_effects={
                    "media": images,
                    "taxonomies": taxonomies,
                    "custom_fields": custom_fields,
                    "user_meta": user_meta,
                },
            )
        except ValueError as e:
            raise typer.BadParameter(str(e))

        try:
            with console.status(f"Importing {path.name}..."):
                result = service.run(data, options)
        except DataBridgeError as exc:
            raise _fail(exc)

    table = Table(title=f"Import Results ({result.import_type})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Rows", str(result.total_rows))
    table.add_row("Imported", str(result.success))
    table.add_row("Skipped", str(result.skipped))
    table.add_row("Errors", str(result.errors))
    console.print(table)

    if result.messages:
        console.print("\n[yellow]Messages:[/yellow]")
        for message in result.messages[:10]:
            console.print(f"  {message}")
        if len(result.messages) > 10:
            console.print(f"  ... and {len(result.messages) - 10} more")

    if result.error_details:
        console.print("\n[red]Errors:[/red]")
        for err in result.error_details[:5]:
            console.print(f"  Row {err['row']}: {err['reason']}")
        if len(result.error_details) > 5:
            console.print(f"  ... and {len(result.error_details) - 5} more")


@app.command()
def preview(
    path: Path = typer.Argument(..., help="CSV file to preview"),
    rows: int = typer.Option(5, "--rows", "-n", min=1, help="Rows to show"),
):
    """Show the header and first rows of a CSV file."""
    from databridge.services.importer import ImportService

    settings = get_settings()
    try:
        result = ImportService(max_rows=settings.imports.max_rows).preview(_read_csv(path), rows)
    except DataBridgeError as exc:
        raise _fail(exc)

    table = Table(title=f"{path.name}: {result.import_type}, {result.total_rows} rows")
    for header in result.headers:
        table.add_column(header, overflow="fold")
    for cells in result.rows:
        table.add_row(*cells[: len(result.headers)])
    console.print(table)


@app.command()
def validate(path: Path = typer.Argument(..., help="CSV file to check")):
    """Check a CSV file's structure and report unknown post types."""
    from databridge.services.importer import ImportService
    from databridge.services.stores import DbRecordStore
    from db.connection import get_session

    settings = get_settings()
    data: bytes = _read_csv(path)
    with get_session() as session:
        service = ImportService.from_settings(
            settings, DbRecordStore(session, known_sub_types=settings.imports.known_sub_types)
        )
        try:
            report = service.validate(data)
        except DataBridgeError as exc:
            raise _fail(exc)

    console.print(f"[green]Valid {report.import_type} file[/green] with {report.total_records} records")
    if report.has_warnings:
        console.print(
            f"[yellow]Unknown post types:[/yellow] {', '.join(report.missing_sub_types)}"
        )


@app.command()
def files():
    """List generated files under the storage root."""
    from databridge.services.file_delivery import FileDeliveryService
    from databridge.services.stores import DbSecretStore
    from db.connection import get_session

    settings = get_settings()
    with get_session() as session:
        delivery = FileDeliveryService.from_settings(settings, DbSecretStore(session))
        listing = delivery.list_files()
        total: int = delivery.directory_size()

    if not listing:
        console.print("[yellow]No files found[/yellow]")
        return

    table = Table(title=f"Files in {settings.storage_dir}")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Age (h)", justify="right")
    for info in listing:
        table.add_row(info["name"], str(info["size"]), f"{info['age_hours']:.1f}")
    console.print(table)
    console.print(f"\n[bold]Total size:[/bold] {total} bytes")


@app.command()
def cleanup(
    max_age_hours: Optional[float] = typer.Option(None, "--max-age-hours", help="Delete files older than this"),
):
    """Delete generated files past the retention window."""
    from databridge.services.file_delivery import FileDeliveryService
    from databridge.services.stores import DbSecretStore
    from db.connection import get_session

    settings = get_settings()
    hours: float = max_age_hours or settings.delivery.retention_hours
    with get_session() as session:
        delivery = FileDeliveryService.from_settings(settings, DbSecretStore(session))
        deleted: int = delivery.cleanup_expired(int(hours * 3600))

    console.print(f"[green]Deleted {deleted} file(s) older than {hours:g}h[/green]")


@app.command()
def history():
    """Show the most recent import jobs."""
    from databridge.services.stores import DbJobLogStore
    from db.connection import get_session

    with get_session() as session:
        entries = DbJobLogStore(session).get_job_log_history()

    if not entries:
        console.print("[yellow]No imports recorded[/yellow]")
        return

    table = Table(title="Import History")
    table.add_column("When", style="cyan")
    table.add_column("Type", style="blue")
    table.add_column("Imported", justify="right", style="green")
    table.add_column("Skipped", justify="right")
    table.add_column("Errors", justify="right", style="red")
    for entry in entries:
        results: dict = entry["results"]  # type: ignore[assignment]
        table.add_row(
            str(entry["timestamp"]),
            str(entry["import_type"]),
            str(results.get("success", 0)),
            str(results.get("skipped", 0)),
            str(results.get("errors", 0)),
        )
    console.print(table)


if __name__ == "__main__":
    app()
