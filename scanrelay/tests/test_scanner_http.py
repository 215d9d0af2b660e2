import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from scanrelay.app.main import app
from scanrelay.app.routers import scanner
from scanrelay.app.scan_publisher import PublisherRegistry
from scanrelay.tests.fakes import FakeRelayStore

SID = "sales_1700000000_abc123de"


@pytest.fixture
def client(monkeypatch):
    store = FakeRelayStore()
    monkeypatch.setattr(scanner, "relay_store", store)
    monkeypatch.setattr(scanner, "publishers", PublisherRegistry(store))
    return TestClient(app), store


def test_phone_publish_and_recent(client):
    c, store = client
    res = c.post("/scan/barcodes", json={"session": SID, "barcode": "ITEM!!007"})
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["barcode"] == "ITEM007"
    assert body["recent"] == ["ITEM!!007"]
    assert body["vibrate_ms"] == 100
    assert [r["barcode"] for r in store.records.values()] == ["ITEM007"]

    res = c.get("/scan/recent", params={"session": SID})
    assert res.json() == {"recent": ["ITEM!!007"]}
    assert "X-Request-Id" in res.headers


def test_phone_publish_errors_map_to_status_codes(client):
    c, store = client
    res = c.post("/scan/barcodes", json={"session": SID, "barcode": "!!!"})
    assert res.status_code == 400
    assert res.json()["code"] == "invalid_barcode"

    store.fail_insert = True
    res = c.post("/scan/barcodes", json={"session": SID, "barcode": "ITEM007"})
    assert res.status_code == 503
    assert res.json()["code"] == "publish_failed"

    res = c.post("/scan/barcodes", json={"session": "bad id", "barcode": "ITEM007"})
    assert res.status_code == 422


def test_recent_for_unknown_and_invalid_sessions(client):
    c, _ = client
    assert c.get("/scan/recent", params={"session": "sales_1_never"}).json() == {"recent": []}
    res = c.get("/scan/recent", params={"session": "../x"})
    assert res.status_code == 400
    assert res.json()["code"] == "invalid_session"


def test_phone_ping_reports_store_failure(client, monkeypatch):
    c, store = client
    assert c.get("/scan/ping").json() == {"ok": True}

    def broken_ping():
        raise ConnectionError("db down")

    monkeypatch.setattr(store, "ping", broken_ping)
    assert c.get("/scan/ping").json() == {"ok": False}


def test_desktop_endpoints_require_auth(client):
    c, _ = client
    res = c.post("/scanner/sessions", json={"context": "sales"})
    assert res.status_code == 401


def test_unhandled_error_returns_500_with_request_id(monkeypatch):
    def broken_peek(_session_id):
        raise RuntimeError("registry exploded")

    monkeypatch.setattr(scanner.publishers, "peek", broken_peek)
    c = TestClient(app, raise_server_exceptions=False)
    res = c.get("/scan/recent", params={"session": SID}, headers={"X-Request-Id": "req-42"})
    assert res.status_code == 500
    assert res.json()["detail"] == "internal error"
    assert res.json()["request_id"] == "req-42"


def test_health_reports_degraded_database(monkeypatch):
    from scanrelay.app import main

    def broken_conn():
        raise ConnectionError("db down")

    monkeypatch.setattr(main, "get_conn", broken_conn)
    res = TestClient(app).get("/health")
    assert res.status_code == 503
    body = res.json()
    assert body["status"] == "degraded"
    assert body["db"] == "down"
    assert "scanner_sessions" in body


def test_only_scanner_and_generic_errors_are_mapped():
    handled = {exc for exc in app.exception_handlers if isinstance(exc, type)}
    assert not any(exc.__module__.startswith("psycopg") for exc in handled)
