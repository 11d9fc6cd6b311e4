"""Read-only JSON-RPC client for the ERP data service.

Only the read methods the engine needs are exposed.  ``execute`` refuses
anything outside ``READ_METHODS`` before a request is built, so the engine
cannot issue a write even if a caller asks for one.
"""
from __future__ import annotations

import itertools
import threading
from typing import Any

import httpx

from erp_copilot.core.config import Settings, get_settings
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)

READ_METHODS = frozenset({"search_read", "search_count", "read_group", "fields_get"})

UNASSIGNED = "Unassigned"


def display_label(value: Any) -> str:
    """Human-readable label for a grouped value.

    many2one values arrive as ``[id, display_name]``; empty groups as ``False``.
    """
    if isinstance(value, (list, tuple)):
        return str(value[1]) if len(value) > 1 and value[1] else UNASSIGNED
    if value is False or value is None or value == "":
        return UNASSIGNED
    return str(value)


# ── Errors ──────────────────────────────────────────────


class ErpError(RuntimeError):
    """Base class for ERP access failures."""


class ErpRpcError(ErpError):
    """The service answered with a JSON-RPC error payload."""

    def __init__(self, message: str, *, code: int | None = None, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.data = data or {}

    @property
    def is_invalid_field(self) -> bool:
        text = f"{self} {self.data.get('message', '')}".lower()
        return "invalid field" in text or "unknown field" in text


class ErpAuthError(ErpError):
    """Authentication was rejected."""


class ReadOnlyViolation(ErpError):
    """A non-read RPC method was requested."""


# ── Client ──────────────────────────────────────────────


class ErpClient:
    """Thread-safe JSON-RPC client.  One instance may serve a whole batch."""

    def __init__(
        self,
        url: str,
        db: str,
        username: str,
        api_key: str,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._endpoint = url.rstrip("/") + "/jsonrpc"
        self._db = db
        self._username = username
        self._api_key = api_key
        self._http = httpx.Client(timeout=timeout, transport=transport)
        self._uid: int | None = None
        self._auth_lock = threading.Lock()
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ErpClient":
        s = settings or get_settings()
        return cls(s.erp_url, s.erp_db, s.erp_username, s.erp_api_key, timeout=s.erp_timeout_seconds)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ErpClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ── Transport ───────────────────────────────────────

    def _rpc(self, service: str, method: str, *args: Any) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": list(args)},
            "id": next(self._ids),
        }
        response = self._http.post(self._endpoint, json=payload)
        response.raise_for_status()
        body = response.json()
        error = body.get("error")
        if error:
            data = error.get("data") or {}
            message = data.get("message") or error.get("message") or "unknown RPC error"
            raise ErpRpcError(message, code=error.get("code"), data=data)
        return body.get("result")

    def authenticate(self) -> int:
        with self._auth_lock:
            if self._uid is None:
                uid = self._rpc("common", "authenticate", self._db, self._username, self._api_key, {})
                if not uid:
                    raise ErpAuthError(f"authentication failed for user '{self._username}'")
                self._uid = uid
                logger.info("Authenticated against %s as uid=%s", self._endpoint, uid)
            return self._uid

    def execute(self, model: str, method: str, args: list[Any] | None = None, kwargs: dict[str, Any] | None = None) -> Any:
        if method not in READ_METHODS:
            raise ReadOnlyViolation(f"method '{method}' is not a read operation")
        uid = self.authenticate()
        return self._rpc(
            "object", "execute_kw", self._db, uid, self._api_key, model, method, args or [], kwargs or {},
        )

    # ── Read helpers ────────────────────────────────────

    def search_read(
        self,
        model: str,
        domain: list[Any],
        fields: list[str] | None = None,
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"fields": fields or []}
        if limit:
            kwargs["limit"] = limit
        if order:
            kwargs["order"] = order
        return self.execute(model, "search_read", [domain], kwargs)

    def search_count(self, model: str, domain: list[Any]) -> int:
        return int(self.execute(model, "search_count", [domain]))

    def read_group(
        self,
        model: str,
        domain: list[Any],
        fields: list[str],
        groupby: list[str],
        limit: int | None = None,
        orderby: str | None = None,
    ) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {"lazy": False}
        if limit:
            kwargs["limit"] = limit
        if orderby:
            kwargs["orderby"] = orderby
        return self.execute(model, "read_group", [domain, fields, groupby], kwargs)

    def fields_get(self, model: str, attributes: list[str] | None = None) -> dict[str, dict[str, Any]]:
        attrs = attributes or ["string", "type", "relation", "store"]
        return self.execute(model, "fields_get", [], {"attributes": attrs})
