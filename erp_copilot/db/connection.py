"""SQLAlchemy engine for the audit database.

The copilot never reads business data through SQL; the only database it
touches is the audit store configured by ``audit_database_url``.
"""
from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from erp_copilot.core.config import get_settings
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10, echo=False)


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        url = get_settings().audit_database_url
        _engine = make_engine(url)
        logger.info("Audit DB engine created  dialect=%s", _engine.dialect.name)
    return _engine
