from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, patch

import pytest
import requests
from prometheus_client import REGISTRY

from newsdesk.core.config import settings
from newsdesk.monitoring.alerting.notification import NotificationManager, webhook_payload
from newsdesk.security.monitoring.events import EventSeverity, SecurityAlert, utc_from_epoch

POST = "newsdesk.monitoring.alerting.notification.requests.post"


def _alert(severity=EventSeverity.CRITICAL):
    return SecurityAlert(
        rule="suspicious_activity",
        type="suspicious_activity",
        severity=severity,
        title="Suspicious Activity Pattern Detected",
        description="10 suspicious activity events from IP 1.2.3.4",
        correlation_key="1.2.3.4",
        timestamp=utc_from_epoch(1_700_000_000),
        source={"ip": "1.2.3.4"},
    )


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=1)
    yield pool
    pool.shutdown(wait=True)


def _failures(sink):
    return REGISTRY.get_sample_value("alert_delivery_failures_total", {"sink": sink}) or 0.0


def _ok():
    response = Mock()
    response.raise_for_status.return_value = None
    return response


def test_critical_alert_goes_to_webhook(executor):
    manager = NotificationManager("https://hooks.example/alerts", executor=executor, max_attempts=1)
    with patch(POST, return_value=_ok()) as post:
        pending = manager.notify(_alert())
        assert pending["webhook"].result(timeout=5) is True

    url = post.call_args.args[0]
    payload = post.call_args.kwargs["json"]
    assert url == "https://hooks.example/alerts"
    assert payload["text"].startswith("CRITICAL SECURITY ALERT")
    assert payload["alert"]["source_ip"] == "1.2.3.4"
    assert post.call_args.kwargs["timeout"] == manager.timeout


def test_non_critical_alert_skips_webhook(executor):
    manager = NotificationManager("https://hooks.example/alerts", executor=executor)
    with patch(POST) as post:
        assert manager.notify(_alert(EventSeverity.HIGH)) == {}
    post.assert_not_called()


def test_monitoring_api_gets_bearer_token(executor):
    manager = NotificationManager(
        monitoring_url="https://monitor.example/events",
        monitoring_api_key="k-123",
        executor=executor,
        max_attempts=1,
    )
    with patch(POST, return_value=_ok()) as post:
        pending = manager.notify(_alert(EventSeverity.MEDIUM))
        assert pending["monitoring_api"].result(timeout=5) is True

    headers = post.call_args.kwargs["headers"]
    assert headers["Authorization"] == "Bearer k-123"
    assert post.call_args.kwargs["json"]["rule"] == "suspicious_activity"


def test_delivery_is_retried_then_reported(executor):
    on_failure = Mock()
    manager = NotificationManager(
        "https://hooks.example/alerts",
        executor=executor,
        max_attempts=2,
        on_failure=on_failure,
    )
    before = _failures("webhook")
    alert = _alert()

    with patch(POST, side_effect=requests.ConnectionError("refused")) as post:
        assert manager.notify(alert)["webhook"].result(timeout=10) is False

    assert post.call_count == 2
    sink, failed_alert, error = on_failure.call_args.args
    assert (sink, failed_alert) == ("webhook", alert)
    assert isinstance(error, requests.ConnectionError)
    assert _failures("webhook") == before + 1


def test_http_error_status_counts_as_failure(executor):
    response = Mock()
    response.raise_for_status.side_effect = requests.HTTPError("503")
    manager = NotificationManager("https://hooks.example/alerts", executor=executor, max_attempts=1)
    with patch(POST, return_value=response):
        assert manager.notify(_alert())["webhook"].result(timeout=5) is False


def test_sentry_capture_when_configured(executor):
    manager = NotificationManager(executor=executor)
    with patch.object(settings, "SENTRY_DSN", "https://key@sentry.example/1"), patch(
        "newsdesk.monitoring.alerting.notification.sentry_sdk.capture_message"
    ) as capture:
        manager.notify(_alert())
    capture.assert_called_once_with(
        "Security Alert: Suspicious Activity Pattern Detected", level="fatal"
    )


def test_sentry_failure_is_contained(executor):
    manager = NotificationManager(executor=executor)
    with patch.object(settings, "SENTRY_DSN", "https://key@sentry.example/1"), patch(
        "newsdesk.monitoring.alerting.notification.sentry_sdk.capture_message",
        side_effect=RuntimeError("sentry down"),
    ):
        assert manager.notify(_alert()) == {}


def test_webhook_payload_fields():
    payload = webhook_payload(_alert())
    fields = {f["title"]: f["value"] for f in payload["attachments"][0]["fields"]}
    assert fields["Source IP"] == "1.2.3.4"
    assert fields["Description"].startswith("10 suspicious")
