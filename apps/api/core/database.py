"""
Engine, session factory and request-scoped sessions.

PostgreSQL in every deployed environment; the test suite points
``DATABASE_URL`` at a SQLite file. Anything dialect-specific the services
need (upserts) goes through ``dialect_insert`` so both behave the same.
"""
import logging
import time
from typing import Iterator

from fastapi import HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from core.config import settings

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF_S = 0.1


def build_database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"postgresql://{settings.POSTGRES_USER}:{settings.POSTGRES_PASSWORD}"
        f"@{settings.POSTGRES_HOST}:{settings.POSTGRES_PORT}/{settings.POSTGRES_DB}"
    )


DATABASE_URL = build_database_url()


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # API worker threads and the test session share one file; wait on its lock.
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
    }


engine = create_engine(DATABASE_URL, echo=settings.DEBUG, **_engine_kwargs(DATABASE_URL))

# expire_on_commit=False: routes return ORM rows after committing them.
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

Base = declarative_base()


def _open_session() -> Session:
    """New session with a live connection, retrying briefly on a flaky pool."""
    for attempt in range(1, CONNECT_ATTEMPTS + 1):
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            return db
        except SQLAlchemyError as e:
            db.close()
            if attempt == CONNECT_ATTEMPTS:
                logger.error(f"No database connection after {CONNECT_ATTEMPTS} attempts: {e}")
                raise
            logger.warning(f"Database connection attempt {attempt} failed, retrying")
            time.sleep(CONNECT_BACKOFF_S * 2 ** (attempt - 1))
    raise RuntimeError("unreachable")


def get_db() -> Iterator[Session]:
    """
    FastAPI dependency: one session per request.

    Routes commit explicitly. Whatever is still pending when the route
    returns is committed; any exception rolls the request back, so a failed
    batch never leaves half of itself behind.
    """
    db = _open_session()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        if not isinstance(e, HTTPException):
            logger.error(f"Request transaction rolled back: {e}")
        raise
    finally:
        db.close()


def get_db_sync() -> Session:
    """Session for Celery tasks and scripts. The caller commits, rolls back and closes."""
    return SessionLocal()


def check_db_connection() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def dialect_insert(db: Session, table):
    """
    ``INSERT`` construct with ``ON CONFLICT`` support for the bound dialect.

    The PostgreSQL and SQLite constructs share the
    ``on_conflict_do_update`` / ``on_conflict_do_nothing`` API.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Upserts are not supported on dialect {dialect!r}")
    return insert(table)
