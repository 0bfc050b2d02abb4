"""
Database engine and session management.

SQLite (the default, stored in the app data directory) and PostgreSQL are
both supported; the engine options are picked from the URL scheme.
"""
import logging
import os
from typing import Any, Callable, Dict, Generator, Tuple

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from config.settings import get_settings

logger = logging.getLogger(__name__)

# Applied on every new SQLite connection. WAL lets the API read while a
# workflow run commits from a worker thread.
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
)

POSTGRES_POOL = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
}


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for `url` with per-backend connection settings."""
    kwargs: Dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if is_sqlite(url):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(POSTGRES_POOL)
    db_engine = create_engine(url, **kwargs)

    if is_sqlite(url):
        @event.listens_for(db_engine, "connect")
        def _apply_pragmas(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            for pragma in SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.close()

    return db_engine


DATABASE_URL = get_settings().database_url
engine = build_engine(DATABASE_URL, echo=os.getenv("SQL_ECHO", "false").lower() == "true")
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency yielding a session that is closed after the request.

    Usage:
        @router.get("/workflows")
        def list_workflows(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create any missing tables for the registered models."""
    from storage import models  # noqa: F401  # registers the mappers
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ensured for %d table(s)", len(Base.metadata.tables))


def check_db_connection(session_factory: Callable[[], Session] = SessionLocal) -> Tuple[bool, str]:
    """
    Run a trivial query through `session_factory`.

    Returns:
        (reachable, error text or "")
    """
    db = None
    try:
        db = session_factory()
        db.execute(text("SELECT 1"))
        return True, ""
    except Exception as exc:
        logger.warning("Database connectivity check failed: %s", exc)
        return False, str(exc)[:200]
    finally:
        if db is not None:
            db.close()


def check_integrity() -> Tuple[bool, str]:
    """
    Run PRAGMA integrity_check on SQLite databases.

    Returns:
        (ok, result text); other backends report (True, "not sqlite")
    """
    if not is_sqlite(DATABASE_URL):
        return True, "not sqlite"
    try:
        with engine.connect() as conn:
            result = str(conn.execute(text("PRAGMA integrity_check")).scalar())
    except Exception as exc:
        logger.critical("Database integrity check error: %s", exc)
        return False, str(exc)

    ok = result.strip().lower() == "ok"
    if ok:
        logger.info("Database integrity check passed")
    else:
        logger.critical("Database integrity check FAILED: %s", result)
    return ok, result
