"""
Shared fixtures: an in-memory ERP that answers the four read methods the
engine uses, seeded with two months of sales data.
"""
from __future__ import annotations

import datetime as dt
import threading
from typing import Any

import pytest

from erp_copilot.copilot.cache import QueryCache
from erp_copilot.core.config import Settings
from erp_copilot.erp.client import ErpRpcError
from erp_copilot.governance.entity_catalog import load_entity_catalog

ACME = [1, "Acme Corp"]
GLOBEX = [2, "Globex Ltd"]
INITECH = [3, "Initech"]
UMBRELLA = [4, "Umbrella Inc"]
ALICE = [10, "Alice Admin"]
WIDGET = [20, "Widget"]
GADGET = [21, "Gadget"]


def _order(id_, name, partner, day, amount, state):
    return {
        "id": id_, "name": name, "partner_id": partner, "user_id": ALICE,
        "date_order": f"{day} 10:00:00", "amount_total": amount, "state": state,
    }


def seed_records() -> dict[str, list[dict[str, Any]]]:
    return {
        "sale.order": [
            # March 2024
            _order(1, "SO001", ACME, "2024-03-02", 1200.0, "sale"),
            _order(2, "SO002", ACME, "2024-03-10", 800.0, "sale"),
            _order(3, "SO003", GLOBEX, "2024-03-12", 500.0, "sale"),
            _order(4, "SO004", INITECH, "2024-03-14", 300.0, "draft"),
            # February 2024
            _order(10, "SO010", ACME, "2024-02-05", 1000.0, "sale"),
            _order(11, "SO011", GLOBEX, "2024-02-20", 900.0, "sale"),
            _order(12, "SO012", UMBRELLA, "2024-02-22", 400.0, "sale"),
            _order(13, "SO013", INITECH, "2024-02-25", 100.0, "cancel"),
        ],
        "sale.order.line": [
            {"id": 101, "name": "Widget x4", "product_id": WIDGET, "order_id": [1, "SO001"],
             "create_date": "2024-03-02 10:00:00", "price_subtotal": 1200.0, "state": "sale"},
            {"id": 102, "name": "Gadget x2", "product_id": GADGET, "order_id": [2, "SO002"],
             "create_date": "2024-03-10 10:00:00", "price_subtotal": 800.0, "state": "sale"},
            {"id": 103, "name": "Widget x1", "product_id": WIDGET, "order_id": [3, "SO003"],
             "create_date": "2024-03-12 10:00:00", "price_subtotal": 500.0, "state": "sale"},
        ],
        "account.move": [
            {"id": 201, "name": "INV/2024/0001", "partner_id": ACME, "invoice_date": "2024-03-05",
             "amount_total": 1200.0, "state": "posted", "payment_state": "not_paid", "move_type": "out_invoice"},
        ],
    }


def seed_fields() -> dict[str, dict[str, dict[str, Any]]]:
    return {
        "sale.order": {
            "name": {"string": "Order Reference", "type": "char", "store": True},
            "partner_id": {"string": "Customer", "type": "many2one", "relation": "res.partner", "store": True},
            "date_order": {"string": "Order Date", "type": "datetime", "store": True},
            "amount_total": {"string": "Total", "type": "monetary", "store": True},
            "state": {"string": "Status", "type": "selection", "store": True},
            "message_ids": {"string": "Messages", "type": "one2many", "relation": "mail.message", "store": True},
            "display_name": {"string": "Display Name", "type": "char", "store": False},
            "access_url": {"string": "Portal URL", "type": "char", "store": False},
            "note": {"string": "Terms", "type": "html", "store": True},
        },
    }


def _matches(record: dict[str, Any], predicate: list[Any]) -> bool:
    field, op, value = predicate
    current = record.get(field)
    if isinstance(current, list):
        current = current[0]
    if isinstance(current, str) and isinstance(value, str) and len(value) == 10 and len(current) > 10:
        current = current[:10]
    if op == "=":
        return current == value
    if op == "!=":
        return current != value
    if op == "in":
        return current in value
    if op == "not in":
        return current not in value
    if op == "ilike":
        return str(value).lower() in str(current or "").lower()
    if current is None or current is False:
        return False
    return {
        ">": current > value, ">=": current >= value,
        "<": current < value, "<=": current <= value,
    }[op]


def _month_label(value: str) -> str:
    return dt.date.fromisoformat(value[:10]).strftime("%B %Y")


class FakeErpClient:
    """Stands in for ``ErpClient`` with the same read methods and signatures.

    ``fail_models`` maps a model to the exception every call on it raises.
    ``valid_fields`` maps a model to the field names read_group accepts;
    anything else is rejected the way the ERP rejects an invalid field.
    """

    def __init__(self, records=None, fields=None, fail_models=None, valid_fields=None):
        self.records = records if records is not None else seed_records()
        self.fields = fields if fields is not None else seed_fields()
        self.fail_models = fail_models or {}
        self.valid_fields = valid_fields or {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def _record_call(self, model: str, method: str, **kwargs: Any) -> None:
        with self._lock:
            self.calls.append((model, method, kwargs))
        if model in self.fail_models:
            raise self.fail_models[model]

    def calls_to(self, method: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [c for c in self.calls if c[1] == method]

    def _filter(self, model: str, domain: list[Any]) -> list[dict[str, Any]]:
        return [r for r in self.records.get(model, []) if all(_matches(r, p) for p in domain)]

    def search_read(self, model, domain, fields=None, limit=None, order=None):
        self._record_call(model, "search_read", domain=domain, fields=fields, limit=limit, order=order)
        rows = self._filter(model, domain)
        if order:
            name, _, direction = order.partition(" ")
            rows = sorted(rows, key=lambda r: r.get(name) or 0, reverse=direction.lower() == "desc")
        if limit:
            rows = rows[:limit]
        if fields:
            rows = [{k: r.get(k, False) for k in ["id", *fields]} for r in rows]
        return [dict(r) for r in rows]

    def search_count(self, model, domain):
        self._record_call(model, "search_count", domain=domain)
        return len(self._filter(model, domain))

    def read_group(self, model, domain, fields, groupby, limit=None, orderby=None):
        self._record_call(model, "read_group", domain=domain, fields=fields, groupby=groupby)
        allowed = self.valid_fields.get(model)
        if allowed is not None:
            for g in groupby:
                base = g.split(":")[0]
                if base not in allowed:
                    raise ErpRpcError(f"Invalid field '{base}' on model '{model}'", code=200)

        sums = [f.split(":")[0] for f in fields if f.endswith(":sum")]
        rows = self._filter(model, domain)
        if not groupby:
            return [{"__count": len(rows), **{s: sum(r.get(s) or 0.0 for r in rows) for s in sums}}]

        groups: dict[tuple, dict[str, Any]] = {}
        for r in rows:
            key_values = []
            for g in groupby:
                base, _, grain = g.partition(":")
                value = r.get(base, False)
                key_values.append(_month_label(value) if grain == "month" and value else value)
            key = tuple(tuple(v) if isinstance(v, list) else v for v in key_values)
            row = groups.setdefault(key, {**dict(zip(groupby, key_values)), "__count": 0, **{s: 0.0 for s in sums}})
            row["__count"] += 1
            for s in sums:
                row[s] += r.get(s) or 0.0
        return list(groups.values())

    def fields_get(self, model, attributes=None):
        self._record_call(model, "fields_get", attributes=attributes)
        return dict(self.fields.get(model, {}))


# ── Fixtures ────────────────────────────────────────────


@pytest.fixture
def catalog():
    return load_entity_catalog()


@pytest.fixture
def settings():
    return Settings(llm_provider="mock", audit_log_enabled=False)


@pytest.fixture
def cache():
    return QueryCache(ttl=60, max_size=50)


@pytest.fixture
def erp():
    return FakeErpClient()


@pytest.fixture
def now():
    return dt.date(2024, 3, 15)


@pytest.fixture
def make_erp():
    """Factory for a FakeErpClient with custom records or failures."""
    return FakeErpClient
