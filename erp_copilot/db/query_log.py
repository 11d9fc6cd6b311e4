"""
Tool-call audit log -- records every query batch -> result cycle.

The table is created on first use via ``ensure_log_table()``.  Writes are
fire-and-forget: a failing audit write is logged and never fails the request.
"""
from __future__ import annotations

import datetime
import json
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from erp_copilot.db.connection import get_engine
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)

_metadata = MetaData()

tool_logs = Table(
    "copilot_tool_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("request", Text, nullable=False),            # JSON ToolRequest
    Column("query_metadata", Text),                     # JSON array
    Column("entities", String(200)),
    Column("success", Boolean, nullable=False, default=True),
    Column("cached", Boolean, nullable=False, default=False),
    Column("error_count", Integer, nullable=False, default=0),
    Column("errors", Text),                             # JSON array
    Column("latency_ms", Integer),
    Column("created_at", DateTime(timezone=True), nullable=False,
           default=lambda: datetime.datetime.now(datetime.timezone.utc)),
)


def ensure_log_table(engine: Engine | None = None) -> None:
    """Create the tool log table if it doesn't exist."""
    engine = engine or get_engine()
    _metadata.create_all(engine, tables=[tool_logs], checkfirst=True)
    logger.info("Tool log table '%s' ensured", tool_logs.name)


def log_tool_call(
    request: dict[str, Any],
    query_metadata: list[dict[str, Any]],
    success: bool,
    cached: bool,
    errors: list[str],
    latency_ms: int,
    engine: Engine | None = None,
) -> None:
    """Insert one row into the tool log table."""
    entities = sorted({m.get("entity", "") for m in query_metadata if m.get("entity")})
    params = {
        "request": json.dumps(request, default=str),
        "query_metadata": json.dumps(query_metadata, default=str),
        "entities": ",".join(entities)[:200] or None,
        "success": success,
        "cached": cached,
        "error_count": len(errors),
        "errors": json.dumps(errors) if errors else None,
        "latency_ms": latency_ms,
    }

    try:
        engine = engine or get_engine()
        with engine.begin() as conn:
            conn.execute(tool_logs.insert(), params)
        logger.debug("Tool call logged: entities=%s", params["entities"])
    except SQLAlchemyError:
        logger.exception("Failed to log tool call -- continuing without logging")


def recent_tool_calls(limit: int = 20, engine: Engine | None = None) -> list[dict[str, Any]]:
    """Most recent audit rows, newest first."""
    engine = engine or get_engine()
    stmt = select(tool_logs).order_by(tool_logs.c.id.desc()).limit(limit)
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    out = []
    for row in rows:
        item = dict(row)
        for key in ("request", "query_metadata", "errors"):
            if item.get(key):
                item[key] = json.loads(item[key])
        out.append(item)
    return out
