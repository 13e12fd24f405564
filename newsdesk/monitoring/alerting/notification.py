from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

import requests
import sentry_sdk
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from newsdesk.core.config import settings
from newsdesk.security.monitoring.events import EventSeverity, SecurityAlert
from newsdesk.security.monitoring.security_metrics import ALERT_DELIVERY_FAILURES_TOTAL
from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)

FailureCallback = Callable[[str, SecurityAlert, BaseException], None]

_SENTRY_LEVELS = {
    EventSeverity.LOW: "info",
    EventSeverity.MEDIUM: "warning",
    EventSeverity.HIGH: "error",
    EventSeverity.CRITICAL: "fatal",
}


class NotificationManager:
    """
    Alert sinks: structured log, Sentry, critical-alert webhook and an
    optional monitoring API.

    Outbound HTTP runs on a small thread pool so `notify` never blocks the
    caller. Each post is retried with exponential backoff; a delivery that
    still fails is logged, counted and reported to `on_failure`.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        monitoring_url: Optional[str] = None,
        monitoring_api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        workers: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.monitoring_url = monitoring_url
        self.monitoring_api_key = monitoring_api_key
        self.timeout = timeout if timeout is not None else settings.ALERT_DELIVERY_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.ALERT_DELIVERY_MAX_ATTEMPTS
        self._executor = executor or ThreadPoolExecutor(
            max_workers=workers or settings.ALERT_DELIVERY_WORKERS,
            thread_name_prefix="alert-delivery",
        )
        self.on_failure = on_failure

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "NotificationManager":
        return cls(
            settings.SECURITY_WEBHOOK_URL,
            monitoring_url=settings.MONITORING_API_URL,
            monitoring_api_key=settings.MONITORING_API_KEY,
            timeout=settings.ALERT_DELIVERY_TIMEOUT_SECONDS,
            max_attempts=settings.ALERT_DELIVERY_MAX_ATTEMPTS,
            workers=settings.ALERT_DELIVERY_WORKERS,
            **kwargs,
        )

    def notify(self, alert: SecurityAlert) -> Dict[str, Future]:
        """Dispatch `alert` to every configured sink; returns pending deliveries."""
        logger.warning("security_alert", **alert.summary())

        try:
            if settings.SENTRY_DSN:
                sentry_sdk.capture_message(
                    f"Security Alert: {alert.title}",
                    level=_SENTRY_LEVELS.get(alert.severity, "warning"),
                )
        except Exception as e:  # noqa: BLE001
            logger.error("alert_sentry_error", error=str(e))

        pending: Dict[str, Future] = {}
        if alert.severity == EventSeverity.CRITICAL and self.webhook_url:
            pending["webhook"] = self._submit(
                "webhook", self.webhook_url, webhook_payload(alert), {}, alert
            )
        if self.monitoring_url and self.monitoring_api_key:
            headers = {"Authorization": f"Bearer {self.monitoring_api_key}"}
            pending["monitoring_api"] = self._submit(
                "monitoring_api", self.monitoring_url, alert.to_dict(), headers, alert
            )
        return pending

    def _submit(
        self,
        sink: str,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        alert: SecurityAlert,
    ) -> Future:
        return self._executor.submit(self._deliver, sink, url, payload, headers, alert)

    def _deliver(
        self,
        sink: str,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        alert: SecurityAlert,
    ) -> bool:
        try:
            self._post(url, payload, headers)
        except Exception as e:  # noqa: BLE001 - delivery is best effort
            logger.error(
                "alert_delivery_failed",
                sink=sink,
                alert_id=alert.id,
                attempts=self.max_attempts,
                error=str(e),
            )
            ALERT_DELIVERY_FAILURES_TOTAL.labels(sink=sink).inc()
            if self.on_failure is not None:
                self.on_failure(sink, alert, e)
            return False
        logger.info("alert_delivered", sink=sink, alert_id=alert.id)
        return True

    def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type(requests.RequestException),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                response = requests.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json", **headers},
                    timeout=self.timeout,
                )
                response.raise_for_status()

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)


def webhook_payload(alert: SecurityAlert) -> Dict[str, Any]:
    """Chat-style payload for the critical-alert webhook."""
    return {
        "text": f"CRITICAL SECURITY ALERT: {alert.title}",
        "attachments": [
            {
                "color": "danger",
                "fields": [
                    {"title": "Description", "value": alert.description, "short": False},
                    {"title": "Source IP", "value": alert.source.get("ip") or "n/a", "short": True},
                    {"title": "Timestamp", "value": alert.timestamp.isoformat(), "short": True},
                ],
            }
        ],
        "alert": alert.summary(),
    }
