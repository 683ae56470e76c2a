"""Engine and session wiring shared by the API, the expiry sweeper and the outbox relay."""

from collections.abc import Generator
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from marketplace.core.config import get_settings


def _sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def build_engine(database_url: str) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    # Sync handlers run in FastAPI's threadpool, so sqlite connections must cross threads.
    connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
    db_engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    if is_sqlite:
        event.listen(db_engine, "connect", _sqlite_pragmas)
    return db_engine


_database_url = get_settings().database_url
engine: Optional[Engine] = build_engine(_database_url) if _database_url else None
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False) if engine is not None else None


def get_session_factory() -> sessionmaker:
    """Factory for components that open their own short transactions."""
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
