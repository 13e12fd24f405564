"""
Structured logging configuration using structlog.

Development gets human-readable colored output; every other environment
gets JSON lines suitable for log shipping. Credential-looking fields are
masked before any renderer sees them.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from newsdesk.core.config import settings

SENSITIVE_FIELDS = frozenset(
    {
        "password",
        "token",
        "csrf_token",
        "secret",
        "authorization",
        "cookie",
        "x-admin-token",
        "admin_token",
        "api_key",
    }
)

MASK = "***"


def mask_sensitive_fields(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace the values of credential-named keys, one level into dicts."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_FIELDS:
            event_dict[key] = MASK
        elif isinstance(value, dict):
            event_dict[key] = {
                k: MASK if str(k).lower() in SENSITIVE_FIELDS else v for k, v in value.items()
            }
    return event_dict


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure structlog and stdlib logging for the service.

    Args:
        level: Level name; defaults to ``settings.LOG_LEVEL``
    """
    is_development = settings.APP_ENV.lower() in ("development", "dev", "local")
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="ISO", utc=True),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        mask_sensitive_fields,
    ]

    if is_development:
        processors += [
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                ]
            ),
            structlog.dev.set_exc_info,
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger named after the calling module."""
    return structlog.get_logger(name)


def add_request_context(request: Any) -> Dict[str, Any]:
    """HTTP request context for log calls."""
    try:
        return {
            "request_id": getattr(request.state, "request_id", None),
            "method": request.method,
            "path": request.url.path,
            "user_agent": request.headers.get("user-agent"),
        }
    except AttributeError:
        return {}


def add_client_context(ip: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Client identity context; user id only when known."""
    context: Dict[str, Any] = {"client_ip": ip}
    if user_id:
        context["user_id"] = user_id
    return context
