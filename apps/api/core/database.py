"""
Database engine and session management.

PostgreSQL (psycopg2, QueuePool) in deployment. SQLite works for local runs
and the test suite: the in-memory database lives on a single connection
shared through StaticPool, so the API, the tasks and the tests all see the
same tables.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from core.config import settings
import logging
import time

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF_S = 0.1


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
            "echo": settings.DEBUG,
        }
    return {
        "poolclass": QueuePool,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,  # drop dead connections before use
        "echo": settings.DEBUG,
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# expire_on_commit=False: value objects are built from rows after commit.
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)

Base = declarative_base()


@event.listens_for(engine, "connect")
def on_connect(dbapi_conn, connection_record):
    logger.debug(f"New {engine.dialect.name} connection established")


def _open_session() -> Session:
    """A session whose connection answered SELECT 1, with exponential backoff."""
    for attempt in range(1, CONNECT_ATTEMPTS + 1):
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            return db
        except Exception as e:
            db.close()
            if attempt == CONNECT_ATTEMPTS:
                logger.error(f"No database connection after {CONNECT_ATTEMPTS} attempts: {e}")
                raise
            logger.warning(f"Database connection attempt {attempt} failed, retrying")
            time.sleep(CONNECT_BACKOFF_S * (2 ** (attempt - 1)))


def get_db() -> Session:
    """
    FastAPI dependency: one session per request.

    Commits when the request handler returns, rolls back when it raises.
    """
    from fastapi import HTTPException

    db = _open_session()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        if not isinstance(e, HTTPException):
            logger.error(f"Database transaction error: {e}")
        raise
    finally:
        db.close()


def get_db_sync() -> Session:
    """
    Plain session for Celery tasks and scripts.

    The caller owns the transaction and must close the session.
    """
    return SessionLocal()


def check_db_connection() -> bool:
    """True when the database answers SELECT 1."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
