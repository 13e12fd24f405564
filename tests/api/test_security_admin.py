from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from newsdesk.core.config import settings
from newsdesk.main import app
from newsdesk.security.services import build_security_services

ADMIN_TOKEN = "test-admin-token"
BASE = "/api/v1/security"


@pytest.fixture
def services():
    services = build_security_services(settings)
    yield services
    services.notifier.shutdown(wait=True)


@pytest.fixture
def client(services):
    original = app.state.security
    app.state.security = services
    with patch.object(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN):
        yield TestClient(app)
    app.state.security = original


def _admin(client, csrf=False):
    headers = {"X-Admin-Token": ADMIN_TOKEN}
    if csrf:
        headers["X-CSRF-Token"] = client.get(f"{BASE}/csrf-token").json()["csrf_token"]
    return headers


def _raise_alert(services, ip="198.51.100.7"):
    for _ in range(settings.ALERT_FAILED_LOGIN_THRESHOLD):
        services.monitor.record_login_attempt(ip, False, user_id="reporter-3")
    return services.monitor.get_alerts()[0]


def test_admin_routes_require_token(client, services):
    response = client.get(f"{BASE}/alerts")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_ERROR"

    response = client.get(f"{BASE}/metrics", headers={"X-Admin-Token": "wrong"})
    assert response.status_code == 401

    by_type = services.monitor.get_metrics()["events_by_type"]
    assert by_type["unauthorized_access"] == 2


def test_list_alerts(client, services):
    alert = _raise_alert(services)
    response = client.get(f"{BASE}/alerts", headers=_admin(client))
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    assert body["alerts"][0]["id"] == alert.id
    assert body["alerts"][0]["rule"] == "failed_logins"


def test_resolve_alert(client, services):
    alert = _raise_alert(services)
    response = client.post(
        f"{BASE}/alerts/{alert.id}/resolve",
        json={"resolved_by": "night-editor"},
        headers=_admin(client, csrf=True),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["resolved"] is True
    assert body["alert"]["resolved_by"] == "night-editor"
    assert services.monitor.get_alerts() == []

    again = client.post(
        f"{BASE}/alerts/{alert.id}/resolve", headers=_admin(client, csrf=True)
    )
    assert again.json()["resolved"] is False

    actions = [
        e for e in services.monitor.get_metrics()["recent_events"] if e["type"] == "admin_action"
    ]
    assert actions[0]["details"]["target"] == alert.id


def test_resolve_unknown_alert_is_404(client):
    response = client.post(f"{BASE}/alerts/nope/resolve", headers=_admin(client, csrf=True))
    assert response.status_code == 404


def test_resolve_without_csrf_token_is_rejected(client, services):
    alert = _raise_alert(services)
    response = client.post(f"{BASE}/alerts/{alert.id}/resolve", headers=_admin(client))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "CSRF_ERROR"
    assert not alert.resolved


def test_security_metrics(client, services):
    services.monitor.record_suspicious_activity("203.0.113.4", "port_scan")
    response = client.get(f"{BASE}/metrics", headers=_admin(client))
    assert response.status_code == 200
    body = response.json()
    assert body["suspicious_activities"] == 1
    assert body["window_seconds"] == settings.SECURITY_METRICS_WINDOW_SECONDS


def test_rate_limit_stats_and_reset(client):
    headers = _admin(client)
    client.get(f"{BASE}/alerts", headers=headers)

    stats = client.get(f"{BASE}/rate-limits", headers=headers).json()
    assert stats["strategy"] == "fixed"
    assert stats["active_windows"] >= 1
    assert "api" in stats["tiers"]

    identity = "testclient:testclient"
    response = client.delete(
        f"{BASE}/rate-limits/{identity}",
        params={"tier": "api"},
        headers=_admin(client, csrf=True),
    )
    assert response.status_code == 200
    assert response.json() == {"identifier": identity, "tier": "api", "removed": 1}


def test_reset_unknown_tier_is_404(client):
    response = client.delete(
        f"{BASE}/rate-limits/someone", params={"tier": "bogus"}, headers=_admin(client, csrf=True)
    )
    assert response.status_code == 404


def test_error_stats(client):
    client.get(f"{BASE}/alerts")
    response = client.get(f"{BASE}/errors", headers=_admin(client))
    assert response.status_code == 200
    assert response.json()["by_kind"]["auth"] == 1


def test_csrf_token_endpoint_is_public(client, services):
    response = client.get(f"{BASE}/csrf-token")
    assert response.status_code == 200
    body = response.json()
    assert body["header_name"] == "x-csrf-token"
    assert body["expires_in"] == settings.CSRF_MAX_AGE_SECONDS
    assert services.csrf.validate_token(body["csrf_token"])
    assert "_csrf=" in response.headers["set-cookie"]


def test_rate_limit_headers_on_admin_responses(client):
    response = client.get(f"{BASE}/csrf-token")
    assert response.headers["X-RateLimit-Limit"] == str(settings.RATE_LIMIT_TIERS["api"]["max_requests"])
    assert response.headers["X-Content-Type-Options"] == "nosniff"
