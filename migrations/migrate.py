"""SQL migration runner for the SQLite record store.

Applies migrations/*.sql in lexicographic order and records each one in a
_migrations table so reruns only apply what is new. PostgreSQL deployments
manage their schema outside this runner.

Usage:
    python -m migrations.migrate                # apply pending migrations
    python -m migrations.migrate --dry-run      # show what would be applied
    python -m migrations.migrate --status       # show migration status
"""

import argparse
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from config import DatabaseSettings, get_settings

logger: logging.Logger = logging.getLogger(__name__)

MIGRATIONS_DIR: Path = Path(__file__).resolve().parent


def _sqlite_path(db: DatabaseSettings) -> Path | None:
    if db._use_postgres():
        return None
    path: Path = db._resolved_sqlite_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _ensure_tracking_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS _migrations ("
        "  filename TEXT PRIMARY KEY,"
        "  applied_at TEXT NOT NULL"
        ")"
    )
    conn.commit()


def _get_applied(conn: sqlite3.Connection) -> set[str]:
    rows: list[tuple[str, ...]] = conn.execute("SELECT filename FROM _migrations").fetchall()
    return {r[0] for r in rows}


def pending_migrations(applied: set[str]) -> list[Path]:
    return [f for f in sorted(MIGRATIONS_DIR.glob("*.sql")) if f.name not in applied]


def apply_migrations(conn: sqlite3.Connection, dry_run: bool = False) -> list[str]:
    """Apply pending migrations on an open connection. Returns the names applied."""
    _ensure_tracking_table(conn)
    done: list[str] = []
    for migration in pending_migrations(_get_applied(conn)):
        logger.info("%sApplying %s", "[DRY RUN] " if dry_run else "", migration.name)
        if dry_run:
            continue
        conn.executescript(migration.read_text(encoding="utf-8"))
        conn.execute(
            "INSERT INTO _migrations (filename, applied_at) VALUES (?, ?)",
            (migration.name, datetime.now(UTC).isoformat()),
        )
        conn.commit()
        done.append(migration.name)
    return done


def migrate(dry_run: bool = False) -> list[str]:
    db_path: Path | None = _sqlite_path(get_settings().database)
    if db_path is None:
        logger.info("PostgreSQL configured; skipping SQLite migrations")
        return []

    logger.info("Migrating %s", db_path)
    conn: sqlite3.Connection = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        applied: list[str] = apply_migrations(conn, dry_run=dry_run)
    finally:
        conn.close()

    if not applied and not dry_run:
        logger.info("No pending migrations.")
    return applied


def status() -> None:
    db_path: Path | None = _sqlite_path(get_settings().database)
    if db_path is None:
        print("PostgreSQL configured; migrations are not tracked here.")
        return

    conn: sqlite3.Connection = sqlite3.connect(db_path)
    try:
        _ensure_tracking_table(conn)
        applied: set[str] = _get_applied(conn)
        pending: list[Path] = pending_migrations(applied)
    finally:
        conn.close()

    print(f"Database: {db_path}")
    print(f"Applied:  {len(applied)}")
    for name in sorted(applied):
        print(f"  [x] {name}")
    print(f"Pending:  {len(pending)}")
    for p in pending:
        print(f"  [ ] {p.name}")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    parser: argparse.ArgumentParser = argparse.ArgumentParser(description="SQL migration runner")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be applied")
    parser.add_argument("--status", action="store_true", help="Show migration status")
    args: argparse.Namespace = parser.parse_args()

    if args.status:
        status()
    else:
        migrate(dry_run=args.dry_run)


if __name__ == "__main__":
    main()
