"""
Security event log with alert correlation.

Events go into a bounded ring buffer. Every logged event is run through the
correlation rules while the monitor lock is held; alerts that fire are
dispatched to the notifier after the lock is released, so sink I/O never
blocks other writers.
"""

from __future__ import annotations

import threading
import time
from collections import Counter, OrderedDict, deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from newsdesk.monitoring.alerting.alert_manager import (
    AlertManager,
    Correlation,
    CorrelationRule,
    default_rules,
)
from newsdesk.security.monitoring.events import (
    EventSeverity,
    SecurityAlert,
    SecurityEvent,
    SecurityEventType,
    utc_from_epoch,
)
from newsdesk.security.monitoring.security_metrics import (
    SECURITY_ALERTS_TOTAL,
    SECURITY_EVENTS_TOTAL,
)
from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)

RECENT_EVENTS = 50
TOP_OFFENDERS = 10


class SecurityMonitor:
    def __init__(
        self,
        rules: Optional[List[CorrelationRule]] = None,
        notifier: Any = None,
        *,
        max_events: int = 10_000,
        max_resolved_alerts: int = 1_000,
        retention_seconds: float = 7 * 24 * 3600,
        metrics_window_seconds: float = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.notifier = notifier
        self.retention_seconds = retention_seconds
        self.metrics_window_seconds = metrics_window_seconds
        self.max_resolved_alerts = max_resolved_alerts
        self._clock = clock
        self._lock = threading.Lock()
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._alerts: "OrderedDict[str, SecurityAlert]" = OrderedDict()
        self._correlator = AlertManager(rules)

    @classmethod
    def from_settings(
        cls, settings: Any, notifier: Any = None, **kwargs: Any
    ) -> "SecurityMonitor":
        return cls(
            default_rules(settings),
            notifier,
            max_events=settings.SECURITY_MAX_EVENTS,
            max_resolved_alerts=settings.SECURITY_MAX_RESOLVED_ALERTS,
            retention_seconds=settings.SECURITY_RETENTION_SECONDS,
            metrics_window_seconds=settings.SECURITY_METRICS_WINDOW_SECONDS,
            **kwargs,
        )

    @property
    def rules(self) -> List[CorrelationRule]:
        return list(self._correlator.rules)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def log_event(
        self,
        event_type: SecurityEventType,
        severity: EventSeverity,
        source_ip: str,
        *,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            type=SecurityEventType(event_type),
            severity=EventSeverity(severity),
            source_ip=source_ip or "unknown",
            timestamp=utc_from_epoch(self._clock()),
            user_agent=user_agent,
            user_id=user_id,
            details=details,
        )
        return self.record(event)

    def record(self, event: SecurityEvent) -> SecurityEvent:
        """Append an already-built event and run correlation."""
        with self._lock:
            self._events.append(event)
            fired = self._correlator.observe(event, event.epoch)
            alerts = [self._open_alert(c, event.timestamp) for c in fired]

        SECURITY_EVENTS_TOTAL.labels(type=event.type.value, severity=event.severity.value).inc()
        log = logger.warning if event.severity in (EventSeverity.HIGH, EventSeverity.CRITICAL) else logger.info
        log(
            "security_event",
            event_id=event.id,
            event_type=event.type.value,
            severity=event.severity.value,
            source_ip=event.source_ip,
            user_id=event.user_id,
        )

        for alert in alerts:
            self._dispatch(alert)
        return event

    def _open_alert(self, correlation: Correlation, when: datetime) -> SecurityAlert:
        # caller holds the lock
        rule = correlation.rule
        latest = correlation.events[-1] if correlation.events else None
        alert = SecurityAlert(
            rule=rule.name,
            type=rule.alert_type,
            severity=rule.severity,
            title=rule.title,
            description=rule.describe(correlation.count, correlation.key),
            correlation_key=correlation.key,
            timestamp=when,
            source={
                "ip": latest.source_ip if latest else None,
                "user_agent": latest.user_agent if latest else None,
                "user_id": latest.user_id if latest else None,
            },
            details={
                "count": correlation.count,
                "window_seconds": rule.window_seconds,
                "events": [e.to_dict() for e in correlation.events],
            },
        )
        self._alerts[alert.id] = alert
        self._correlator.mark_open(correlation.correlation_key, alert.id)
        return alert

    def _dispatch(self, alert: SecurityAlert) -> None:
        SECURITY_ALERTS_TOTAL.labels(rule=alert.rule, severity=alert.severity.value).inc()
        if self.notifier is None:
            logger.warning("security_alert", **alert.summary())
            return
        try:
            self.notifier.notify(alert)
        except Exception as e:  # noqa: BLE001 - sinks never fail the caller
            logger.error("alert_dispatch_failed", alert_id=alert.id, error=str(e))

    def get_alerts(self, limit: int = 100, include_resolved: bool = False) -> List[SecurityAlert]:
        """Newest first."""
        with self._lock:
            alerts = list(self._alerts.values())
        if not include_resolved:
            alerts = [a for a in alerts if not a.resolved]
        alerts.sort(key=lambda a: a.timestamp, reverse=True)
        return alerts[:limit]

    def get_alert(self, alert_id: str) -> Optional[SecurityAlert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        """Close an open alert. False when unknown or already resolved."""
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            alert.resolved_by = resolved_by
            alert.resolved_at = utc_from_epoch(self._clock())
            self._correlator.release((alert.rule, alert.correlation_key), alert.id)
            self._trim_resolved()

        logger.info("security_alert_resolved", alert_id=alert_id, resolved_by=resolved_by)
        return True

    def _trim_resolved(self) -> None:
        # caller holds the lock; _alerts is in creation order
        resolved = [a.id for a in self._alerts.values() if a.resolved]
        for alert_id in resolved[: max(0, len(resolved) - self.max_resolved_alerts)]:
            del self._alerts[alert_id]

    def get_metrics(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Aggregate view over the metrics window. Read-only."""
        now = self._clock() if now is None else now
        cutoff = now - self.metrics_window_seconds
        with self._lock:
            events = [e for e in self._events if e.epoch >= cutoff]
            alerts = list(self._alerts.values())

        by_type = Counter(e.type.value for e in events)
        by_severity = Counter(e.severity.value for e in events)
        by_ip = Counter(e.source_ip for e in events)
        by_actor = Counter(e.user_id for e in events if e.user_id)

        return {
            "window_seconds": self.metrics_window_seconds,
            "total_events": len(events),
            "events_by_type": dict(by_type),
            "events_by_severity": dict(by_severity),
            "recent_events": [e.to_dict() for e in reversed(events[-RECENT_EVENTS:])],
            "alerts_generated": sum(1 for a in alerts if a.epoch >= cutoff),
            "open_alerts": sum(1 for a in alerts if not a.resolved),
            "top_source_ips": [
                {"ip": ip, "count": count} for ip, count in by_ip.most_common(TOP_OFFENDERS)
            ],
            "top_actors": [
                {"user_id": user_id, "count": count}
                for user_id, count in by_actor.most_common(TOP_OFFENDERS)
            ],
            "suspicious_activities": by_type.get(SecurityEventType.SUSPICIOUS_ACTIVITY.value, 0),
            "blocked_requests": sum(1 for e in events if e.details.get("blocked")),
        }

    def cleanup(self, now: Optional[float] = None, batch_size: int = 500) -> Dict[str, int]:
        """
        Drop events and resolved alerts older than the retention horizon.

        Works in batches of `batch_size`, taking the lock once per batch.
        Open alerts are kept regardless of age.
        """
        now = self._clock() if now is None else now
        cutoff = now - self.retention_seconds

        events_removed = 0
        while True:
            with self._lock:
                batch = 0
                while batch < batch_size and self._events and self._events[0].epoch < cutoff:
                    self._events.popleft()
                    batch += 1
                more = bool(self._events) and self._events[0].epoch < cutoff
            events_removed += batch
            if not more:
                break

        with self._lock:
            stale = [a.id for a in self._alerts.values() if a.resolved and a.epoch < cutoff]
        alerts_removed = 0
        for start in range(0, len(stale), batch_size):
            with self._lock:
                for alert_id in stale[start : start + batch_size]:
                    if self._alerts.pop(alert_id, None) is not None:
                        alerts_removed += 1

        with self._lock:
            windows_pruned = self._correlator.prune(now)

        if events_removed or alerts_removed:
            logger.info(
                "security_monitor_cleanup",
                events_removed=events_removed,
                alerts_removed=alerts_removed,
                windows_pruned=windows_pruned,
            )
        return {
            "events_removed": events_removed,
            "alerts_removed": alerts_removed,
            "windows_pruned": windows_pruned,
        }

    # --- recorders for application code ---

    def record_login_attempt(
        self,
        source_ip: str,
        success: bool,
        *,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SecurityEvent:
        details: Dict[str, Any] = {"success": success}
        if reason:
            details["reason"] = reason
        return self.log_event(
            SecurityEventType.LOGIN_SUCCESS if success else SecurityEventType.LOGIN_FAILURE,
            EventSeverity.LOW if success else EventSeverity.MEDIUM,
            source_ip,
            user_agent=user_agent,
            user_id=user_id,
            details=details,
        )

    def record_password_change(
        self, source_ip: str, user_id: str, *, user_agent: Optional[str] = None
    ) -> SecurityEvent:
        return self.log_event(
            SecurityEventType.PASSWORD_CHANGE,
            EventSeverity.MEDIUM,
            source_ip,
            user_agent=user_agent,
            user_id=user_id,
        )

    def record_account_locked(
        self, source_ip: str, user_id: str, reason: str, *, user_agent: Optional[str] = None
    ) -> SecurityEvent:
        return self.log_event(
            SecurityEventType.ACCOUNT_LOCKED,
            EventSeverity.HIGH,
            source_ip,
            user_agent=user_agent,
            user_id=user_id,
            details={"reason": reason},
        )

    def record_suspicious_activity(
        self,
        source_ip: str,
        activity: str,
        *,
        severity: EventSeverity = EventSeverity.MEDIUM,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> SecurityEvent:
        return self.log_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            severity,
            source_ip,
            user_agent=user_agent,
            user_id=user_id,
            details={"activity": activity, **(details or {})},
        )

    def record_file_upload(
        self,
        source_ip: str,
        user_id: Optional[str],
        filename: str,
        size: int,
        *,
        content_type: Optional[str] = None,
    ) -> SecurityEvent:
        return self.log_event(
            SecurityEventType.FILE_UPLOAD,
            EventSeverity.LOW,
            source_ip,
            user_id=user_id,
            details={"filename": filename, "size": size, "content_type": content_type},
        )

    def record_admin_action(
        self, source_ip: str, user_id: str, action: str, *, target: Optional[str] = None
    ) -> SecurityEvent:
        return self.log_event(
            SecurityEventType.ADMIN_ACTION,
            EventSeverity.MEDIUM,
            source_ip,
            user_id=user_id,
            details={"action": action, "target": target},
        )

    def record_data_export(
        self, source_ip: str, user_id: str, export_type: str, record_count: int
    ) -> SecurityEvent:
        return self.log_event(
            SecurityEventType.DATA_EXPORT,
            EventSeverity.MEDIUM,
            source_ip,
            user_id=user_id,
            details={"export_type": export_type, "record_count": record_count},
        )

    def record_permission_change(
        self,
        source_ip: str,
        user_id: str,
        target_user_id: str,
        old_role: str,
        new_role: str,
    ) -> SecurityEvent:
        return self.log_event(
            SecurityEventType.PERMISSION_CHANGE,
            EventSeverity.HIGH,
            source_ip,
            user_id=user_id,
            details={"target_user_id": target_user_id, "old_role": old_role, "new_role": new_role},
        )

    def record_delivery_failure(
        self, sink: str, alert: SecurityAlert, error: BaseException
    ) -> SecurityEvent:
        """Failure callback for the notifier."""
        return self.log_event(
            SecurityEventType.ALERT_DELIVERY_FAILED,
            EventSeverity.MEDIUM,
            "internal",
            details={"sink": sink, "alert_id": alert.id, "error": type(error).__name__},
        )
