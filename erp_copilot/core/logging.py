"""
Structured logging for the copilot engine.

Sub-query work is logged through ``query_logger`` so every line carries the
id of the sub-query it belongs to (batches interleave across worker threads).
"""
from __future__ import annotations

import logging
import sys
from typing import Any

from erp_copilot.core.config import get_settings

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    settings = get_settings()
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger


class _QueryAdapter(logging.LoggerAdapter):
    def process(self, msg: str, kwargs: Any) -> tuple[str, Any]:
        return f"[{self.extra['query_id']}] {msg}", kwargs


def query_logger(logger: logging.Logger, query_id: str) -> logging.LoggerAdapter:
    """Wrap *logger* so messages are prefixed with ``[query_id]``."""
    return _QueryAdapter(logger, {"query_id": query_id})
