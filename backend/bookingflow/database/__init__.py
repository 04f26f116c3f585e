"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from datetime import datetime
import logging
import random
import time
from typing import Any, Callable, Generator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from bookingflow.core.config import settings

logger = logging.getLogger(__name__)

# Statement timeout caps runaway queries so webhook deliveries fail fast and get redelivered.
_POSTGRES_CONNECT_ARGS: dict[str, Any] = {
    "keepalives": 1,
    "keepalives_idle": 15,
    "keepalives_interval": 5,
    "keepalives_count": 3,
    "options": "-c statement_timeout=15000",
    "connect_timeout": 5,
    "application_name": "bookingflow",
}

_POSTGRES_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 5,
    "pool_timeout": 2,
    "pool_recycle": 300,
    "pool_pre_ping": True,
    "pool_use_lifo": True,
}


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """Engine options per backend; SQLite only needs cross-thread access."""
    if db_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "future": True}

    kwargs = dict(_POSTGRES_POOL_KWARGS)
    kwargs["connect_args"] = dict(_POSTGRES_CONNECT_ARGS)
    kwargs["future"] = True
    return kwargs


db_url = settings.database_url
engine: Engine = create_engine(db_url, **_build_engine_kwargs(db_url))


@event.listens_for(engine, "connect")
def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
    connection_record.info["connect_time"] = datetime.now()
    logger.debug("Database connection established")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


T = TypeVar("T")
_RETRYABLE_ERROR_SNIPPETS = (
    "server closed the connection",
    "ssl connection has been closed unexpectedly",
    "could not serialize access",
)


def _is_retryable_db_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return any(snippet in message for snippet in _RETRYABLE_ERROR_SNIPPETS)


def _retry_delay(attempt: int) -> float:
    base = 0.1 * (2 ** (attempt - 1))
    return base + random.uniform(0, 0.05 * attempt)


def with_db_retry(op_name: str, func: Callable[[], T], *, max_attempts: int = 3) -> T:
    """
    Execute a DB operation with retries for transient disconnects.
    """

    attempt = 1
    while True:
        try:
            return func()
        except OperationalError as exc:
            if attempt >= max_attempts or not _is_retryable_db_error(exc):
                raise

            delay = _retry_delay(attempt)
            logger.warning(
                "Transient DB failure detected, retrying",
                extra={
                    "event": "db_retry",
                    "op": op_name,
                    "attempt": attempt,
                    "delay": delay,
                    "error": str(exc),
                },
            )
            time.sleep(delay)
            attempt += 1


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_db",
    "with_db_retry",
]
