from __future__ import annotations

import html
import re
from typing import Any, Optional
from urllib.parse import urlsplit

from newsdesk.utils.error_handler import InputValidationError

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9.-]")
REPEATED_DOTS = re.compile(r"\.{2,}")

MAX_FILENAME_LENGTH = 255
MAX_OBJECT_DEPTH = 32

SUSPICIOUS_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
    re.compile(r"\b(union|select|insert|update|delete|drop|create|alter)\s+", re.IGNORECASE),
    re.compile(r"\b(exec|execute|sp_\w*|xp_\w*)\b", re.IGNORECASE),
    re.compile(r"\||&|;|\$\(|`"),
]


def sanitize_text(value: Optional[str], *, max_length: int = 2000) -> Optional[str]:
    if value is None:
        return None
    v = value.strip()
    v = CONTROL_CHARS.sub("", v)
    v = html.escape(v)
    if len(v) > max_length:
        v = v[:max_length]
    return v


def sanitize_filename(filename: str) -> str:
    """Reduce a client filename to `[A-Za-z0-9.-]`, no dot runs, no edge dots."""
    name = UNSAFE_FILENAME_CHARS.sub("_", filename)
    name = REPEATED_DOTS.sub(".", name)
    return name.strip(".")[:MAX_FILENAME_LENGTH]


def sanitize_url(url: str) -> Optional[str]:
    """Return the URL when it is absolute http(s), otherwise None."""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return parts.geturl()


def sanitize_object(value: Any, *, depth: int = 0) -> Any:
    """Apply `sanitize_text` to every string and key of a decoded JSON value."""
    if depth > MAX_OBJECT_DEPTH:
        raise InputValidationError("Input is nested too deeply.")
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, list):
        return [sanitize_object(item, depth=depth + 1) for item in value]
    if isinstance(value, dict):
        return {
            sanitize_text(str(key)): sanitize_object(item, depth=depth + 1)
            for key, item in value.items()
        }
    return value


def contains_suspicious_patterns(text: str) -> bool:
    """
    Strict screen for free-text fields that should never carry markup,
    SQL keywords or shell metacharacters. Broader than the request-level
    threat detector, so only apply it to fields with a narrow format.
    """
    return any(pattern.search(text) for pattern in SUSPICIOUS_PATTERNS)
