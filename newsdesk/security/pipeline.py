"""
Per-request defense pipeline.

    ENTRY -> BYPASS_CHECK -> RATE_LIMIT -> THREAT_SCAN -> CSRF_CHECK -> ADMITTED
                                  \\             \\              \\
                                   +-------------+--------------+--> REJECTED

A rejection short-circuits the remaining stages and carries the error
response. Anything unexpected inside the pipeline, including running past
the time budget, admits the request and records an `unexpected_error` event.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from newsdesk.security.csrf import CSRFGuard
from newsdesk.security.monitoring.events import EventSeverity, SecurityEventType
from newsdesk.security.monitoring.security_metrics import PIPELINE_FAIL_OPEN_TOTAL
from newsdesk.security.monitoring.security_monitor import SecurityMonitor
from newsdesk.security.monitoring.threat_detection import (
    ThreatDetector,
    ThreatReport,
    ThreatSeverity,
)
from newsdesk.security.rate_limit import RateLimiter, RateLimitResult, tier_for_path
from newsdesk.security.request_context import ClientIdentity, RequestSnapshot
from newsdesk.utils.error_handler import (
    ErrorKind,
    ErrorResponder,
    ErrorResponse,
    SecurityFailure,
)
from newsdesk.utils.logger import add_client_context, get_logger

logger = get_logger(__name__)


class PipelineStage(str, Enum):
    ENTRY = "entry"
    BYPASS_CHECK = "bypass_check"
    RATE_LIMIT = "rate_limit"
    THREAT_SCAN = "threat_scan"
    CSRF_CHECK = "csrf_check"
    ADMITTED = "admitted"
    REJECTED = "rejected"


_THREAT_EVENT_SEVERITY = {
    ThreatSeverity.LOW: EventSeverity.LOW,
    ThreatSeverity.MEDIUM: EventSeverity.MEDIUM,
    ThreatSeverity.HIGH: EventSeverity.HIGH,
}


@dataclass(frozen=True)
class PipelineConfig:
    enabled: bool = True
    timeout_seconds: Optional[float] = 0.25
    slow_check_seconds: float = 1.0
    log_requests: bool = True
    bypass_paths: Tuple[str, ...] = ("/health", "/metrics", "/api/health", "/api/metrics")
    bypass_prefixes: Tuple[str, ...] = ("/static/", "/_next/", "/favicon")
    sensitive_prefixes: Tuple[str, ...] = (
        "/api/auth/",
        "/api/admin/",
        "/api/users/",
        "/api/upload",
    )
    rate_limit_enabled: bool = True
    threat_detection_enabled: bool = True
    csrf_enabled: bool = True
    rate_limit_routes: Mapping[str, str] = field(
        default_factory=lambda: {"/api/": "api"}
    )

    @classmethod
    def from_settings(cls, settings: Any) -> "PipelineConfig":
        return cls(
            enabled=settings.SECURITY_PIPELINE_ENABLED,
            timeout_seconds=settings.SECURITY_PIPELINE_TIMEOUT_MS / 1000.0,
            slow_check_seconds=settings.SECURITY_SLOW_CHECK_MS / 1000.0,
            log_requests=settings.SECURITY_LOG_REQUESTS,
            bypass_paths=tuple(settings.SECURITY_BYPASS_PATHS),
            bypass_prefixes=tuple(settings.SECURITY_BYPASS_PREFIXES),
            sensitive_prefixes=tuple(settings.SECURITY_SENSITIVE_PREFIXES),
            rate_limit_enabled=settings.ENABLE_RATE_LIMITING,
            threat_detection_enabled=settings.ENABLE_THREAT_DETECTION,
            csrf_enabled=settings.ENABLE_CSRF_PROTECTION,
            rate_limit_routes=dict(settings.RATE_LIMIT_ROUTES),
        )


@dataclass
class PipelineDecision:
    admitted: bool
    stage: PipelineStage
    identity: Optional[ClientIdentity] = None
    rate_limit: Optional[RateLimitResult] = None
    threat: Optional[ThreatReport] = None
    response: Optional[ErrorResponse] = None
    fail_open: Optional[str] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Rate-limit headers to append to an admitted response."""
        if self.rate_limit is None or self.rate_limit.degraded:
            return {}
        return self.rate_limit.headers()


@dataclass
class _Progress:
    stage: PipelineStage = PipelineStage.ENTRY
    identity: Optional[ClientIdentity] = None
    rate_limit: Optional[RateLimitResult] = None


class DefensePipeline:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        monitor: SecurityMonitor,
        responder: ErrorResponder,
        limiter: Optional[RateLimiter] = None,
        detector: Optional[ThreatDetector] = None,
        csrf: Optional[CSRFGuard] = None,
    ) -> None:
        self.config = config
        self.monitor = monitor
        self.responder = responder
        self.limiter = limiter
        self.detector = detector
        self.csrf = csrf

    def is_bypassed(self, path: str) -> bool:
        if path in self.config.bypass_paths:
            return True
        return any(path.startswith(prefix) for prefix in self.config.bypass_prefixes)

    async def process(self, snapshot: RequestSnapshot) -> PipelineDecision:
        if not self.config.enabled:
            return PipelineDecision(admitted=True, stage=PipelineStage.ENTRY)

        progress = _Progress()
        started = time.perf_counter()
        try:
            if self.config.timeout_seconds is None:
                decision = await self._evaluate(snapshot, progress)
            else:
                decision = await asyncio.wait_for(
                    self._evaluate(snapshot, progress), timeout=self.config.timeout_seconds
                )
        except asyncio.TimeoutError:
            decision = self._fail_open(snapshot, progress, "timeout", None)
        except Exception as e:  # noqa: BLE001 - a defense bug must not take the service down
            decision = self._fail_open(snapshot, progress, type(e).__name__, e)

        elapsed = time.perf_counter() - started
        if elapsed > self.config.slow_check_seconds:
            logger.warning(
                "slow_security_check",
                path=snapshot.path,
                method=snapshot.method,
                duration_ms=round(elapsed * 1000, 1),
                stage=decision.stage.value,
            )
        return decision

    async def _evaluate(self, snapshot: RequestSnapshot, progress: _Progress) -> PipelineDecision:
        identity = snapshot.identity()
        progress.identity = identity

        progress.stage = PipelineStage.BYPASS_CHECK
        if self.is_bypassed(snapshot.path):
            return PipelineDecision(
                admitted=True, stage=PipelineStage.BYPASS_CHECK, identity=identity
            )

        if self.config.log_requests and any(
            snapshot.path.startswith(prefix) for prefix in self.config.sensitive_prefixes
        ):
            logger.info(
                "sensitive_request",
                method=snapshot.method,
                path=snapshot.path,
                client_ip=identity.ip,
                user_agent=snapshot.user_agent,
                request_id=snapshot.request_id,
            )

        progress.stage = PipelineStage.RATE_LIMIT
        rate_limit = await self._check_rate_limit(snapshot, identity)
        progress.rate_limit = rate_limit
        if rate_limit is not None and not rate_limit.allowed:
            retry_after = rate_limit.retry_after(self.limiter.now())
            failure = SecurityFailure(
                kind=ErrorKind.RATE_LIMIT,
                reason=f"rate limit exceeded for tier {rate_limit.tier}",
                message=rate_limit.message,
                details={"retry_after": retry_after},
                retry_after=retry_after,
                headers=rate_limit.headers(),
                event_details={"tier": rate_limit.tier, "limit": rate_limit.limit},
            )
            return self._reject(snapshot, identity, failure, rate_limit=rate_limit)

        progress.stage = PipelineStage.THREAT_SCAN
        threat = self._scan(snapshot, identity)
        if threat is not None and threat.should_block:
            failure = SecurityFailure(
                kind=ErrorKind.THREAT,
                reason="threat signature: " + ",".join(threat.matched_patterns),
                event_details={"url": snapshot.full_path, "threat": threat.to_dict()},
            )
            return self._reject(snapshot, identity, failure, rate_limit=rate_limit, threat=threat)

        progress.stage = PipelineStage.CSRF_CHECK
        if (
            self.config.csrf_enabled
            and self.csrf is not None
            and self.csrf.needs_protection(snapshot.method, snapshot.path)
        ):
            verification = await self.csrf.verify_request(snapshot)
            if not verification.valid:
                failure = SecurityFailure(
                    kind=ErrorKind.CSRF,
                    reason=verification.error or "CSRF verification failed",
                )
                return self._reject(snapshot, identity, failure, rate_limit=rate_limit, threat=threat)

        return PipelineDecision(
            admitted=True,
            stage=PipelineStage.ADMITTED,
            identity=identity,
            rate_limit=rate_limit,
            threat=threat,
        )

    async def _check_rate_limit(
        self, snapshot: RequestSnapshot, identity: ClientIdentity
    ) -> Optional[RateLimitResult]:
        if not self.config.rate_limit_enabled or self.limiter is None:
            return None
        tier = tier_for_path(snapshot.path, self.config.rate_limit_routes)
        if tier is None:
            return None

        result = await self.limiter.check(identity.key, tier)
        if result.degraded:
            self.monitor.log_event(
                SecurityEventType.RATE_LIMITER_DEGRADED,
                EventSeverity.MEDIUM,
                identity.ip,
                user_agent=identity.user_agent,
                details={"tier": tier, "error": result.error, "path": snapshot.path},
            )
        return result

    def _scan(self, snapshot: RequestSnapshot, identity: ClientIdentity) -> Optional[ThreatReport]:
        if not self.config.threat_detection_enabled or self.detector is None:
            return None
        report = self.detector.scan(
            snapshot.path,
            snapshot.query,
            user_agent=snapshot.headers.get("user-agent"),
            body=snapshot.body_json,
        )
        if report.suspicious and not report.should_block:
            # ambiguous signals are recorded, not enforced
            self.monitor.record_suspicious_activity(
                identity.ip,
                "threat_signature",
                severity=_THREAT_EVENT_SEVERITY[report.severity],
                user_agent=identity.user_agent,
                details={"url": snapshot.full_path, "threat": report.to_dict(), "blocked": False},
            )
        return report

    def _reject(
        self,
        snapshot: RequestSnapshot,
        identity: ClientIdentity,
        failure: SecurityFailure,
        *,
        rate_limit: Optional[RateLimitResult] = None,
        threat: Optional[ThreatReport] = None,
    ) -> PipelineDecision:
        response = self.responder.reject(
            failure,
            identity,
            snapshot.request_id,
            context={"path": snapshot.path, "method": snapshot.method},
        )
        logger.warning(
            "request_rejected",
            kind=failure.kind.value,
            path=snapshot.path,
            method=snapshot.method,
            request_id=response.envelope.request_id,
            **add_client_context(identity.ip),
        )
        return PipelineDecision(
            admitted=False,
            stage=PipelineStage.REJECTED,
            identity=identity,
            rate_limit=rate_limit,
            threat=threat,
            response=response,
        )

    def admit_on_error(self, snapshot: RequestSnapshot, error: BaseException) -> PipelineDecision:
        """Fail open for an error raised before evaluation could start."""
        return self._fail_open(snapshot, _Progress(), type(error).__name__, error)

    def _fail_open(
        self,
        snapshot: RequestSnapshot,
        progress: _Progress,
        reason: str,
        error: Optional[BaseException],
    ) -> PipelineDecision:
        PIPELINE_FAIL_OPEN_TOTAL.labels(reason="timeout" if error is None else "exception").inc()
        logger.error(
            "security_pipeline_failed_open",
            reason=reason,
            stage=progress.stage.value,
            path=snapshot.path,
            request_id=snapshot.request_id,
            error=str(error) if error else None,
            exc_info=error is not None,
        )
        identity = progress.identity or ClientIdentity(ip=snapshot.peer_host or "unknown")
        try:
            self.monitor.log_event(
                SecurityEventType.UNEXPECTED_ERROR,
                EventSeverity.HIGH,
                identity.ip,
                user_agent=identity.user_agent,
                details={
                    "kind": ErrorKind.UNEXPECTED.value,
                    "stage": progress.stage.value,
                    "reason": reason,
                    "error": repr(error) if error else None,
                    "path": snapshot.path,
                    "request_id": snapshot.request_id,
                },
            )
        except Exception as log_error:  # noqa: BLE001
            logger.error("security_event_log_failed", error=str(log_error))

        return PipelineDecision(
            admitted=True,
            stage=PipelineStage.ADMITTED,
            identity=identity,
            rate_limit=progress.rate_limit,
            fail_open=reason,
        )
