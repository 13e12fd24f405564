from unittest.mock import Mock

import pytest

from newsdesk.core.config import settings
from newsdesk.monitoring.alerting.alert_manager import default_rules
from newsdesk.security.monitoring.events import EventSeverity, SecurityEventType
from newsdesk.security.monitoring.security_monitor import SecurityMonitor


def test_five_failed_logins_raise_exactly_one_alert(monitor, notifier):
    for _ in range(4):
        monitor.record_login_attempt("1.2.3.4", False, user_id="alice")
    assert notifier.alerts == []

    monitor.record_login_attempt("1.2.3.4", False, user_id="alice")
    assert len(notifier.alerts) == 1
    alert = notifier.alerts[0]
    assert alert.rule == "failed_logins"
    assert alert.severity == EventSeverity.HIGH
    assert alert.source["ip"] == "1.2.3.4"
    assert alert.details["count"] == 5
    assert len(alert.details["events"]) == 5

    # the sixth failure is folded into the open alert
    monitor.record_login_attempt("1.2.3.4", False)
    assert len(notifier.alerts) == 1
    assert len(monitor.get_alerts()) == 1


def test_failures_from_other_addresses_do_not_combine(monitor, notifier):
    for i in range(5):
        monitor.record_login_attempt(f"10.0.0.{i}", False)
    assert notifier.alerts == []


def test_failures_outside_the_window_do_not_alert(monitor, notifier, clock):
    for _ in range(4):
        monitor.record_login_attempt("1.2.3.4", False)
    clock.advance(settings.ALERT_FAILED_LOGIN_WINDOW_SECONDS + 1)
    monitor.record_login_attempt("1.2.3.4", False)
    assert notifier.alerts == []


def test_resolve_stamps_operator_and_reopens_correlation(monitor, notifier, clock):
    for _ in range(5):
        monitor.record_login_attempt("1.2.3.4", False)
    alert = notifier.alerts[0]

    clock.advance(30)
    assert monitor.resolve_alert(alert.id, "oncall@newsdesk") is True
    assert alert.resolved
    assert alert.resolved_by == "oncall@newsdesk"
    assert alert.resolved_at.timestamp() == clock()
    assert monitor.resolve_alert(alert.id, "someone") is False
    assert monitor.resolve_alert("missing", "someone") is False

    assert monitor.get_alerts() == []
    assert monitor.get_alerts(include_resolved=True) == [alert]

    # a fresh burst after resolution alerts again
    monitor.record_login_attempt("1.2.3.4", False)
    assert len(notifier.alerts) == 2


def test_alerts_listed_newest_first(monitor, notifier, clock):
    for _ in range(5):
        monitor.record_login_attempt("1.1.1.1", False)
    clock.advance(1)
    for _ in range(5):
        monitor.record_login_attempt("2.2.2.2", False)

    alerts = monitor.get_alerts()
    assert [a.source["ip"] for a in alerts] == ["2.2.2.2", "1.1.1.1"]
    assert len(monitor.get_alerts(limit=1)) == 1


def test_admin_actions_correlate_by_user(monitor, notifier):
    for i in range(settings.ALERT_ADMIN_ACTION_THRESHOLD):
        monitor.record_admin_action(f"10.0.{i // 250}.{i % 250}", "editor-9", "publish")
    (alert,) = notifier.alerts
    assert alert.rule == "admin_actions"
    assert alert.correlation_key == "editor-9"
    assert len(alert.details["events"]) == 10


def test_event_buffer_is_bounded(clock):
    monitor = SecurityMonitor([], max_events=3, clock=clock)
    for i in range(5):
        monitor.log_event(SecurityEventType.LOGIN_SUCCESS, EventSeverity.LOW, f"10.0.0.{i}")
    assert len(monitor) == 3
    ips = [e["source_ip"] for e in monitor.get_metrics()["recent_events"]]
    assert ips == ["10.0.0.4", "10.0.0.3", "10.0.0.2"]


def test_events_are_immutable(monitor):
    event = monitor.record_suspicious_activity("1.2.3.4", "port_scan", details={"path": "/x"})
    with pytest.raises(TypeError):
        event.details["path"] = "/y"  # type: ignore[index]
    assert event.details["path"] == "/x"
    assert event.details["activity"] == "port_scan"


def test_metrics_aggregate_the_window(monitor, clock):
    monitor.record_login_attempt("1.2.3.4", False, user_id="alice")
    monitor.record_login_attempt("1.2.3.4", True, user_id="alice")
    monitor.record_suspicious_activity("5.6.7.8", "sqli", details={"blocked": True})
    monitor.record_file_upload("5.6.7.8", "bob", "photo.jpg", 1024)

    metrics = monitor.get_metrics()

    assert metrics["total_events"] == 4
    assert metrics["events_by_type"]["login_failure"] == 1
    assert metrics["events_by_severity"]["medium"] == 2
    assert metrics["suspicious_activities"] == 1
    assert metrics["blocked_requests"] == 1
    assert metrics["top_source_ips"][0]["count"] == 2
    assert {"user_id": "alice", "count": 2} in metrics["top_actors"]
    assert metrics["recent_events"][0]["type"] == "file_upload"

    clock.advance(settings.SECURITY_METRICS_WINDOW_SECONDS + 1)
    assert monitor.get_metrics()["total_events"] == 0


def test_cleanup_keeps_open_alerts(monitor, notifier, clock):
    for _ in range(5):
        monitor.record_login_attempt("1.1.1.1", False)
    for _ in range(5):
        monitor.record_login_attempt("2.2.2.2", False)
    resolved, still_open = notifier.alerts
    monitor.resolve_alert(resolved.id, "oncall")

    clock.advance(monitor.retention_seconds + 1)
    monitor.record_login_attempt("3.3.3.3", True)
    result = monitor.cleanup(batch_size=3)

    assert result["events_removed"] == 10
    assert result["alerts_removed"] == 1
    assert len(monitor) == 1
    assert monitor.get_alert(resolved.id) is None
    assert monitor.get_alert(still_open.id) is still_open


def test_resolved_alert_history_is_capped(clock):
    monitor = SecurityMonitor(default_rules(settings), Mock(), max_resolved_alerts=1, clock=clock)
    for ip in ("1.1.1.1", "2.2.2.2"):
        for _ in range(5):
            monitor.record_login_attempt(ip, False)
    ids = [a.id for a in monitor.get_alerts()]
    for alert_id in ids:
        monitor.resolve_alert(alert_id, "oncall")
    assert len(monitor.get_alerts(include_resolved=True)) == 1


def test_notifier_failure_does_not_reach_caller(clock):
    broken = Mock()
    broken.notify.side_effect = RuntimeError("sink down")
    monitor = SecurityMonitor(default_rules(settings), broken, clock=clock)
    for _ in range(5):
        monitor.record_login_attempt("1.2.3.4", False)
    assert broken.notify.call_count == 1
    assert len(monitor.get_alerts()) == 1


def test_delivery_failure_is_recorded_as_event(monitor, notifier):
    for _ in range(5):
        monitor.record_login_attempt("1.2.3.4", False)
    monitor.record_delivery_failure("webhook", notifier.alerts[0], RuntimeError("boom"))
    events = monitor.get_metrics()["recent_events"]
    assert events[0]["type"] == "alert_delivery_failed"
    assert events[0]["details"]["sink"] == "webhook"


def test_from_settings_uses_configured_bounds():
    monitor = SecurityMonitor.from_settings(settings)
    assert monitor.retention_seconds == settings.SECURITY_RETENTION_SECONDS
    assert [r.name for r in monitor.rules][0] == "failed_logins"
