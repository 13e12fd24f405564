from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

from newsdesk.security.monitoring.events import (
    EventSeverity,
    SecurityEvent,
    SecurityEventType,
)
from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)

CorrelationKey = Tuple[str, str]


@dataclass(frozen=True)
class CorrelationRule:
    """Fire when `threshold` events of one type share a key inside the window."""

    name: str
    event_type: SecurityEventType
    threshold: int
    window_seconds: float
    alert_type: str
    severity: EventSeverity
    title: str
    key_field: str = "source_ip"  # "source_ip" or "user_id"
    sample_size: int = 5

    def correlation_key(self, event: SecurityEvent) -> Optional[str]:
        value = getattr(event, self.key_field, None)
        return str(value) if value else None

    def describe(self, count: int, key: str) -> str:
        subject = "user" if self.key_field == "user_id" else "IP"
        noun = self.event_type.value.replace("_", " ")
        return f"{count} {noun} events from {subject} {key}"


@dataclass(frozen=True)
class Correlation:
    rule: CorrelationRule
    key: str
    count: int
    events: Tuple[SecurityEvent, ...]

    @property
    def correlation_key(self) -> CorrelationKey:
        return (self.rule.name, self.key)


def default_rules(settings: Any) -> List[CorrelationRule]:
    return [
        CorrelationRule(
            name="failed_logins",
            event_type=SecurityEventType.LOGIN_FAILURE,
            threshold=settings.ALERT_FAILED_LOGIN_THRESHOLD,
            window_seconds=settings.ALERT_FAILED_LOGIN_WINDOW_SECONDS,
            alert_type="authentication",
            severity=EventSeverity.HIGH,
            title="Multiple Failed Login Attempts",
        ),
        CorrelationRule(
            name="suspicious_activity",
            event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            threshold=settings.ALERT_SUSPICIOUS_THRESHOLD,
            window_seconds=settings.ALERT_SUSPICIOUS_WINDOW_SECONDS,
            alert_type="suspicious_activity",
            severity=EventSeverity.CRITICAL,
            title="Suspicious Activity Pattern Detected",
        ),
        CorrelationRule(
            name="admin_actions",
            event_type=SecurityEventType.ADMIN_ACTION,
            threshold=settings.ALERT_ADMIN_ACTION_THRESHOLD,
            window_seconds=settings.ALERT_ADMIN_ACTION_WINDOW_SECONDS,
            alert_type="security_event",
            severity=EventSeverity.MEDIUM,
            title="Excessive Admin Activity",
            key_field="user_id",
            sample_size=10,
        ),
        CorrelationRule(
            name="file_uploads",
            event_type=SecurityEventType.FILE_UPLOAD,
            threshold=settings.ALERT_FILE_UPLOAD_THRESHOLD,
            window_seconds=settings.ALERT_FILE_UPLOAD_WINDOW_SECONDS,
            alert_type="file_upload",
            severity=EventSeverity.MEDIUM,
            title="Excessive File Upload Activity",
            sample_size=0,
        ),
    ]


class AlertManager:
    """
    Trailing-window correlation of security events.

    Keeps, per `(rule, key)`, the recent matching events (at most
    `threshold` of them, which is all a threshold decision needs) and the id
    of the open alert for that key. Not thread-safe on its own; the security
    monitor calls it under its lock.
    """

    def __init__(self, rules: Optional[List[CorrelationRule]] = None) -> None:
        self.rules: List[CorrelationRule] = list(rules or [])
        self._hits: Dict[CorrelationKey, Deque[SecurityEvent]] = {}
        self._open: Dict[CorrelationKey, str] = {}

    def observe(self, event: SecurityEvent, now: float) -> List[Correlation]:
        """Record `event` and return correlations that should raise a new alert."""
        fired: List[Correlation] = []
        for rule in self.rules:
            if rule.event_type != event.type:
                continue
            key = rule.correlation_key(event)
            if key is None:
                continue

            ckey = (rule.name, key)
            hits = self._hits.get(ckey)
            if hits is None:
                hits = deque(maxlen=max(rule.threshold, rule.sample_size, 1))
                self._hits[ckey] = hits
            hits.append(event)
            _prune(hits, now - rule.window_seconds)

            if len(hits) < rule.threshold:
                continue
            if ckey in self._open:
                logger.debug("alert_deduplicated", rule=rule.name, key=key)
                continue
            sample = tuple(hits)[-rule.sample_size :] if rule.sample_size else ()
            fired.append(Correlation(rule=rule, key=key, count=len(hits), events=sample))
        return fired

    def mark_open(self, ckey: CorrelationKey, alert_id: str) -> None:
        self._open[ckey] = alert_id

    def release(self, ckey: CorrelationKey, alert_id: str) -> None:
        if self._open.get(ckey) == alert_id:
            del self._open[ckey]

    def open_alert_id(self, ckey: CorrelationKey) -> Optional[str]:
        return self._open.get(ckey)

    def prune(self, now: float) -> int:
        """Drop hit windows with nothing left inside their rule's window."""
        windows = {rule.name: rule.window_seconds for rule in self.rules}
        removed = 0
        for ckey in list(self._hits):
            hits = self._hits[ckey]
            _prune(hits, now - windows.get(ckey[0], 0))
            if not hits:
                del self._hits[ckey]
                removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._hits)


def _prune(hits: Deque[SecurityEvent], cutoff: float) -> None:
    while hits and hits[0].epoch < cutoff:
        hits.popleft()
