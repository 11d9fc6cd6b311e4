"""
API tests -- FastAPI endpoints via TestClient (no live server, no live ERP).
"""
import pytest
from fastapi.testclient import TestClient

from erp_copilot.api.main import app
from erp_copilot.copilot.service import CopilotService, get_service


@pytest.fixture
def client(erp, cache, catalog, settings):
    service = CopilotService(erp, cache, catalog, settings)
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


QUERY = {
    "queries": [
        {"id": "q1", "entity": "orders", "operation": "aggregate",
         "filterText": "confirmed", "groupBy": ["customer"]},
    ],
}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── Catalog ─────────────────────────────────────────────

def test_entities_list(client):
    resp = client.get("/entities")
    assert resp.status_code == 200
    items = resp.json()
    names = [e["name"] for e in items]
    assert names[:3] == ["orders", "order_lines", "invoices"]
    orders = items[0]
    assert orders["model"] == "sale.order"
    assert orders["stateful"] is True
    assert "customer" in orders["group_by"]


def test_entity_detail_by_alias(client):
    resp = client.get("/entities/ventas")
    assert resp.status_code == 200
    detail = resp.json()
    assert detail["name"] == "orders"
    assert detail["line_entity"] == "order_lines"
    assert detail["group_aliases"]["customer"] == "partner_id"
    assert "confirm" in detail["status_groups"]["state"]


def test_entity_detail_unknown(client):
    resp = client.get("/entities/spaceships")
    assert resp.status_code == 404


# ── Query ───────────────────────────────────────────────

def test_query_endpoint_camel_case(client):
    resp = client.post("/query", json=QUERY)
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["grouped"]["Acme Corp"] == {"count": 3, "total": 3000.0}
    assert "chartData" in data
    assert "executionMs" in data
    assert data["query_metadata"][0]["queryId"] == "q1"


def test_query_endpoint_clarification(client):
    resp = client.post("/query", json={"queries": [{"id": "q1", "entity": "orders", "operation": "delete"}]})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is False
    assert data["clarification"]


def test_query_endpoint_schema_error(client):
    resp = client.post("/query", json={"queries": [{"entity": "orders"}]})
    assert resp.status_code == 422


def test_validate_endpoint(client):
    result = client.post("/query", json=QUERY).json()
    good = client.post("/query/validate", json={
        "answer": "Acme Corp leads with $3,000.00.", "question": "top customer?", "result": result,
    })
    assert good.status_code == 200
    assert good.json()["isClean"] is True

    bad = client.post("/query/validate", json={"answer": "CustomerC leads with $3,000.00.", "result": result})
    verdict = bad.json()
    assert verdict["isClean"] is False
    assert verdict["issues"][0]["kind"] == "name"
    assert "Acme Corp" in verdict["repairedAnswer"]


def test_ask_endpoint_mock_provider(client):
    resp = client.post("/query/ask", json={"question": "Hello there"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["answer"].startswith("[MOCK]")
    assert data["repaired"] is False


def test_ask_endpoint_rejects_short_question(client):
    assert client.post("/query/ask", json={"question": "hi"}).status_code == 422


# ── Cache admin ─────────────────────────────────────────

def test_cache_stats_and_clear(client):
    client.post("/query", json=QUERY)
    client.post("/query", json=QUERY)
    stats = client.get("/query/cache/stats").json()
    assert stats["size"] == 1
    assert stats["hits"] == 1

    cleared = client.post("/query/cache/clear").json()
    assert cleared == {"cleared": 1}
    assert client.get("/query/cache/stats").json()["size"] == 0
