from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class EventSeverity(str, Enum):
    """Severity levels shared by events and alerts"""

    LOW = "low"  # informational, logging only
    MEDIUM = "medium"  # worth a look, counted in dashboards
    HIGH = "high"  # needs attention
    CRITICAL = "critical"  # push notification


class SecurityEventType(str, Enum):
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    PASSWORD_CHANGE = "password_change"
    ACCOUNT_LOCKED = "account_locked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    FILE_UPLOAD = "file_upload"
    ADMIN_ACTION = "admin_action"
    DATA_EXPORT = "data_export"
    PERMISSION_CHANGE = "permission_change"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CSRF_VIOLATION = "csrf_violation"
    INPUT_VALIDATION_FAILED = "input_validation_failed"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    UPLOAD_REJECTED = "upload_rejected"
    STORAGE_ERROR = "storage_error"
    RATE_LIMITER_DEGRADED = "rate_limiter_degraded"
    ALERT_DELIVERY_FAILED = "alert_delivery_failed"
    UNEXPECTED_ERROR = "unexpected_error"


def new_id() -> str:
    return uuid.uuid4().hex


def _freeze(details: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(details or {}))


@dataclass(frozen=True)
class SecurityEvent:
    """One logged security event. Immutable once created."""

    type: SecurityEventType
    severity: EventSeverity
    source_ip: str
    timestamp: datetime
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        if not isinstance(self.details, MappingProxyType):
            object.__setattr__(self, "details", _freeze(self.details))

    @property
    def epoch(self) -> float:
        return self.timestamp.timestamp()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "source_ip": self.source_ip,
            "user_agent": self.user_agent,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


@dataclass
class SecurityAlert:
    """
    Alert synthesized from correlated events.

    Open until an operator resolves it; resolution is one-way and stamped
    with who did it and when.
    """

    rule: str
    type: str
    severity: EventSeverity
    title: str
    description: str
    correlation_key: str
    timestamp: datetime
    source: Dict[str, Optional[str]] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def epoch(self) -> float:
        return self.timestamp.timestamp()

    def summary(self) -> Dict[str, Any]:
        return {
            "alert_id": self.id,
            "rule": self.rule,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "source_ip": self.source.get("ip"),
            "timestamp": self.timestamp.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rule": self.rule,
            "type": self.type,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "correlation_key": self.correlation_key,
            "timestamp": self.timestamp.isoformat(),
            "source": dict(self.source),
            "details": self.details,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
        }


def utc_from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
