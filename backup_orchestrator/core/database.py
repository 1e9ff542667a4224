"""Database configuration and session management.

Job definitions, runs, heartbeats and alerts live in a single SQLAlchemy
database (SQLite by default).
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backup_orchestrator.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

engine_args: dict[str, Any] = {}

if settings.database_url.startswith("sqlite"):
    db_path = settings.database_url.replace("sqlite:///", "")
    if db_path and db_path != settings.database_url and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    engine_args["connect_args"] = {"check_same_thread": False}  # Needed for SQLite
else:
    engine_args.update({
        "pool_pre_ping": True,  # Verify connections before using
        "pool_recycle": 3600,
    })

engine = create_engine(settings.database_url, **engine_args)


if settings.database_url.startswith("sqlite"):

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Enable WAL so inbound heartbeats do not block run persistence."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency for database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context(
    session_factory: Callable[[], Session] | None = None,
) -> Generator[Session, None, None]:
    """Transactional session for stores and background work; commits on success."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables."""
    # Import models to register them with Base
    from backup_orchestrator import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def check_db_connection(db: Session) -> bool:
    """Run a trivial query; used by the detailed health check."""
    try:
        db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
