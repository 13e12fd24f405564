from fastapi.testclient import TestClient

from newsdesk.main import app


def test_correlation_id_header_present():
    client = TestClient(app)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.headers.get("X-Request-ID") is not None


def test_incoming_request_id_is_propagated():
    client = TestClient(app)
    r = client.get("/health", headers={"X-Request-ID": "edge-123"})
    assert r.headers["X-Request-ID"] == "edge-123"


def test_oversized_request_id_is_replaced():
    client = TestClient(app)
    r = client.get("/health", headers={"X-Request-ID": "x" * 500})
    assert r.headers["X-Request-ID"] != "x" * 500
    assert len(r.headers["X-Request-ID"]) == 36


def test_error_envelope_reuses_request_id():
    client = TestClient(app)
    r = client.get("/api/v1/security/alerts", headers={"X-Request-ID": "edge-456"})
    assert r.status_code == 401
    assert r.json()["error"]["request_id"] == "edge-456"
    assert r.headers["X-Request-ID"] == "edge-456"
