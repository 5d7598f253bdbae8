"""Database engine, session management, and FastAPI dependency."""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import DatabaseSettings, get_settings
from db.models import Base

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_pragmas(engine: Engine, *, in_memory: bool) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=30000")
            cur.execute("PRAGMA synchronous=NORMAL")
        cur.close()


def build_engine(db: DatabaseSettings, *, echo: bool = False, url: str | None = None) -> Engine:
    """Engine for ``url`` (default: the configured database).

    ``sqlite://`` gives a single shared in-memory connection, used by tests.
    """
    url = url or db.url
    if url == "sqlite://":
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        _sqlite_pragmas(engine, in_memory=True)
        return engine

    if db._use_postgres() and not url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            pool_size=db.pool_size,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=True,
        )

    engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    _sqlite_pragmas(engine, in_memory=False)
    return engine


def get_engine() -> Engine:
    """Get or create the shared database engine."""
    global _engine

    if _engine is None:
        settings = get_settings()
        logger.info("Connecting to %s", settings.database.db_info_for_logging())
        _engine = build_engine(settings.database, echo=settings.debug)
    return _engine


def init_db(engine: Engine | None = None) -> None:
    """Create any missing tables from the ORM models."""
    Base.metadata.create_all(engine or get_engine())


def get_session_factory() -> sessionmaker[Session]:
    """Get or create the session factory."""
    global _session_factory

    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
    return _session_factory


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Context-managed session with commit/rollback."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with get_session() as session:
        yield session
