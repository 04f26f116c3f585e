"""
Helpers for working with SQLAlchemy sessions in a dialect-agnostic way.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, NoInspectionAvailable
from sqlalchemy.orm import Session


def resolve_session_bind(session: Session) -> Optional[Connection | Engine]:
    """Return the engine/connection bound to a session without direct .bind access."""
    bind = session.get_bind()
    if bind is not None:
        return bind

    try:
        insp = inspect(session)
    except NoInspectionAvailable:
        return None

    return getattr(insp, "bind", None)


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """
    Return SQLAlchemy dialect name without touching Session.bind directly.

    Falls back to ``default`` when the bound engine cannot be resolved.
    """
    bind = resolve_session_bind(session)
    if bind is None:
        return default
    dialect = getattr(bind, "dialect", None)
    name = getattr(dialect, "name", None)
    return name or default


def integrity_constraint_name(exc: IntegrityError) -> Optional[str]:
    """
    Best-effort name of the constraint behind an IntegrityError.

    Postgres exposes it on ``diag.constraint_name``; SQLite only carries the
    message, so triggers raise with the constraint name as their message.
    """
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    name = getattr(diag, "constraint_name", None)
    if name:
        return str(name)
    return None


def integrity_error_mentions(exc: IntegrityError, constraint_name: str) -> bool:
    """True when the IntegrityError was raised by ``constraint_name``."""
    if integrity_constraint_name(exc) == constraint_name:
        return True
    return constraint_name in str(getattr(exc, "orig", exc))
