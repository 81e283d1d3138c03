"""Database connection management for the segment engine.

Provides synchronous database access using SQLAlchemy. Supports SQLite
for development with a PostgreSQL migration path for production.

Usage:
    from src.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from src.db.models import Base

logger = logging.getLogger(__name__)


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. SEGMENTS_DB_PATH (file path, converted to sqlite URL)
    3. sqlite:///<data dir>/segments.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("SEGMENTS_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from src.utils.paths import ensure_dirs_exist, get_default_db_path
    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


# Engine creation
DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False}
    if DATABASE_URL.startswith("sqlite")
    else {},
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers with a single writer, so history
      queries do not block the executor's per-batch commits.
    - synchronous=NORMAL: Commits are durable after WAL fsync.
    """
    if DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.close()


# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


# Dependency functions for FastAPI


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for synchronous operations.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Usage:
        @app.get("/segment-jobs")
        def list_jobs(db: Session = Depends(get_db)):
            return db.query(SegmentJob).all()

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            job = db.query(SegmentJob).first()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Initialization functions


def _ensure_columns_exist(conn: Any) -> None:
    """Add columns introduced after the first release (SQLite only).

    Uses PRAGMA table_info to introspect columns and ALTER TABLE to add
    missing ones. Idempotent, safe to call on every startup.

    Args:
        conn: SQLAlchemy Connection.

    Raises:
        OperationalError: For non-duplicate-column DDL failures.
    """
    from sqlalchemy.exc import OperationalError

    if conn.dialect.name != "sqlite":
        return

    result = conn.execute(text("PRAGMA table_info(segment_jobs)"))
    existing = {row[1] for row in result.fetchall()}
    if not existing:
        return

    migrations: list[tuple[str, str]] = [
        (
            "retry_count",
            "ALTER TABLE segment_jobs ADD COLUMN retry_count INTEGER NOT NULL DEFAULT 0",
        ),
        ("started_at", "ALTER TABLE segment_jobs ADD COLUMN started_at VARCHAR(50)"),
    ]
    for col_name, ddl in migrations:
        if col_name in existing:
            continue
        try:
            conn.execute(text(ddl))
            logger.info("Added column segment_jobs.%s", col_name)
        except OperationalError as e:
            if "duplicate column" in str(e).lower():
                logger.debug("Column %s already exists (concurrent add).", col_name)
            else:
                logger.error("Failed to add column %s: %s", col_name, e)
                raise


def init_db() -> None:
    """Create all database tables synchronously.

    Safe to call multiple times - will not recreate existing tables.
    Runs column migration for new columns on existing tables.
    """
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        _ensure_columns_exist(conn)
