from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from newsdesk.monitoring.alerting.notification import NotificationManager
from newsdesk.security.csrf import CSRFConfig, CSRFGuard, build_csrf_guard
from newsdesk.security.maintenance import SecuritySweeper
from newsdesk.security.monitoring.security_monitor import SecurityMonitor
from newsdesk.security.monitoring.threat_detection import ThreatDetector
from newsdesk.security.pipeline import DefensePipeline, PipelineConfig
from newsdesk.security.rate_limit import RateLimiter, WindowStore
from newsdesk.utils.error_handler import ErrorResponder, ResponseBuilder


@dataclass
class SecurityServices:
    """The shared defense components, built once per process."""

    monitor: SecurityMonitor
    notifier: Optional[NotificationManager]
    limiter: RateLimiter
    csrf: CSRFGuard
    detector: ThreatDetector
    responder: ErrorResponder
    pipeline: DefensePipeline
    sweeper: SecuritySweeper

    async def start(self) -> None:
        await self.sweeper.start()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.limiter.close()
        if self.notifier is not None:
            self.notifier.shutdown(wait=False)


def build_security_services(
    settings: Any,
    *,
    store: Optional[WindowStore] = None,
    notifier: Optional[NotificationManager] = None,
) -> SecurityServices:
    monitor = SecurityMonitor.from_settings(settings)
    if notifier is None:
        notifier = NotificationManager.from_settings(
            settings, on_failure=monitor.record_delivery_failure
        )
    monitor.notifier = notifier

    limiter = RateLimiter.from_settings(settings, store=store)
    csrf = build_csrf_guard(settings.CSRF_STRATEGY, CSRFConfig.from_settings(settings))
    detector = ThreatDetector()
    responder = ErrorResponder(monitor, ResponseBuilder())
    pipeline = DefensePipeline(
        PipelineConfig.from_settings(settings),
        monitor=monitor,
        responder=responder,
        limiter=limiter,
        detector=detector,
        csrf=csrf,
    )
    sweeper = SecuritySweeper(
        monitor,
        limiter,
        csrf,
        interval=settings.SECURITY_SWEEP_INTERVAL_SECONDS,
        batch_size=settings.SECURITY_SWEEP_BATCH_SIZE,
    )
    return SecurityServices(
        monitor=monitor,
        notifier=notifier,
        limiter=limiter,
        csrf=csrf,
        detector=detector,
        responder=responder,
        pipeline=pipeline,
        sweeper=sweeper,
    )
