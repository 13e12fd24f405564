from __future__ import annotations

from prometheus_client import Counter

BLOCKED_REQUESTS_TOTAL = Counter(
    "blocked_requests_total", "Total requests blocked by security controls", ["control"]
)

RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "rate_limit_decisions_total",
    "Rate limiter decisions by tier and outcome",
    ["tier", "outcome"],
)

SECURITY_EVENTS_TOTAL = Counter(
    "security_events_total", "Security events logged", ["type", "severity"]
)

SECURITY_ALERTS_TOTAL = Counter(
    "security_alerts_total", "Security alerts raised by correlation", ["rule", "severity"]
)

ALERT_DELIVERY_FAILURES_TOTAL = Counter(
    "alert_delivery_failures_total", "Alert sink deliveries that gave up", ["sink"]
)

THREAT_MATCHES_TOTAL = Counter(
    "threat_matches_total", "Threat detector pattern matches", ["threat_class"]
)

PIPELINE_FAIL_OPEN_TOTAL = Counter(
    "security_pipeline_fail_open_total",
    "Requests admitted because the defense pipeline failed",
    ["reason"],
)

ERROR_RESPONSES_TOTAL = Counter(
    "error_responses_total", "Error envelopes returned to callers", ["code"]
)
