"""
CSRF protection: signed stateless tokens plus two binding strategies.

Token format is `random:issued_at_ms:signature` where the signature is
HMAC-SHA256(secret, "random:issued_at_ms"). The default guard keeps no
server state; `DoubleSubmitCSRF` and `SynchronizerTokenCSRF` bind the token
to a cookie or to a server-side session map respectively.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from starlette.responses import Response

from newsdesk.security.request_context import SAFE_METHODS, RequestSnapshot
from newsdesk.security.signing import SignatureCodec, constant_time_equals
from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)

MAX_TIMESTAMP_DIGITS = 16


@dataclass(frozen=True)
class CSRFConfig:
    secret: str = field(repr=False)
    token_bytes: int = 32
    cookie_name: str = "_csrf"
    header_name: str = "x-csrf-token"
    form_field: str = "_csrf"
    session_cookie: str = "session_id"
    max_age_ms: int = 24 * 60 * 60 * 1000
    clock_skew_ms: int = 60 * 1000
    same_site: str = "strict"
    secure: bool = False
    exempt_paths: Sequence[str] = ("/api/auth/", "/api/webhooks/", "/api/external/")
    max_sessions: int = 10_000

    @classmethod
    def from_settings(cls, settings: Any) -> "CSRFConfig":
        return cls(
            secret=settings.CSRF_SECRET,
            token_bytes=settings.CSRF_TOKEN_BYTES,
            cookie_name=settings.CSRF_COOKIE_NAME,
            header_name=settings.CSRF_HEADER_NAME.lower(),
            form_field=settings.CSRF_FORM_FIELD,
            session_cookie=settings.CSRF_SESSION_COOKIE,
            max_age_ms=settings.CSRF_MAX_AGE_SECONDS * 1000,
            clock_skew_ms=settings.CSRF_CLOCK_SKEW_SECONDS * 1000,
            same_site=settings.CSRF_SAME_SITE,
            secure=settings.is_production,
            exempt_paths=tuple(settings.CSRF_EXEMPT_PATHS),
            max_sessions=settings.CSRF_MAX_SESSIONS,
        )


@dataclass(frozen=True)
class CSRFVerification:
    valid: bool
    error: Optional[str] = None


VALID = CSRFVerification(valid=True)


class CSRFGuard:
    def __init__(
        self, config: CSRFConfig, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.config = config
        self._codec = SignatureCodec(config.secret)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def generate_token(self) -> str:
        random_part = secrets.token_hex(self.config.token_bytes)
        issued_at = str(self._now_ms())
        signature = self._codec.sign(f"{random_part}:{issued_at}")
        return f"{random_part}:{issued_at}:{signature}"

    def validate_token(self, token: Optional[str]) -> bool:
        if not token or not isinstance(token, str) or not token.isascii():
            return False
        parts = token.split(":")
        if len(parts) != 3:
            return False
        random_part, issued_at, signature = parts
        if not issued_at.isdigit() or len(issued_at) > MAX_TIMESTAMP_DIGITS:
            return False

        age = self._now_ms() - int(issued_at)
        if age > self.config.max_age_ms or age < -self.config.clock_skew_ms:
            return False
        return self._codec.verify(f"{random_part}:{issued_at}", signature)

    def extract_token(self, request: RequestSnapshot) -> Optional[str]:
        header_token = request.headers.get(self.config.header_name)
        if header_token:
            return header_token
        cookie_token = request.cookies.get(self.config.cookie_name)
        if cookie_token:
            return cookie_token
        return None

    def needs_protection(self, method: str, path: str) -> bool:
        if method.upper() in SAFE_METHODS:
            return False
        return not any(path.startswith(prefix) for prefix in self.config.exempt_paths)

    async def verify_request(self, request: RequestSnapshot) -> CSRFVerification:
        if request.is_safe_method:
            return VALID

        token = self.extract_token(request)
        if not token:
            return CSRFVerification(valid=False, error="CSRF token missing")
        if not self.validate_token(token):
            return CSRFVerification(valid=False, error="CSRF token invalid or expired")
        return VALID

    def cookie_header(self, token: str) -> str:
        parts = [
            f"{self.config.cookie_name}={token}",
            f"Max-Age={self.config.max_age_ms // 1000}",
            "Path=/",
            f"SameSite={self.config.same_site.capitalize()}",
        ]
        if self.config.secure:
            parts.append("Secure")
        parts.append("HttpOnly")
        return "; ".join(parts)

    def set_token_cookie(self, response: Response) -> str:
        token = self.generate_token()
        response.headers.append("set-cookie", self.cookie_header(token))
        return token

    def _submitted_token(self, request: RequestSnapshot) -> Optional[str]:
        header_token = request.headers.get(self.config.header_name)
        if header_token:
            return header_token
        body = request.body_json
        if isinstance(body, dict):
            value = body.get(self.config.form_field)
            if isinstance(value, str) and value:
                return value
        return None


class DoubleSubmitCSRF(CSRFGuard):
    """Cookie token and submitted token must both validate and be identical."""

    async def verify_request(self, request: RequestSnapshot) -> CSRFVerification:
        if request.is_safe_method:
            return VALID

        cookie_token = request.cookies.get(self.config.cookie_name)
        submitted_token = self._submitted_token(request)
        if not cookie_token or not submitted_token:
            return CSRFVerification(valid=False, error="CSRF tokens missing")

        if not self.validate_token(cookie_token) or not self.validate_token(submitted_token):
            return CSRFVerification(valid=False, error="CSRF tokens invalid")

        if not constant_time_equals(cookie_token, submitted_token):
            return CSRFVerification(valid=False, error="CSRF tokens do not match")
        return VALID


class SynchronizerTokenCSRF(CSRFGuard):
    """
    Server keeps the canonical token per session.

    The map is insertion ordered and capped at `max_sessions`; inserting past
    the cap evicts the oldest sessions first. Re-issuing a token for a
    session moves it to the newest position.
    """

    def __init__(
        self, config: CSRFConfig, *, clock: Callable[[], float] = time.time
    ) -> None:
        super().__init__(config, clock=clock)
        self._session_tokens: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._session_tokens)

    def generate_session_token(self, session_id: str) -> str:
        token = self.generate_token()
        evicted: List[str] = []
        with self._lock:
            self._session_tokens[session_id] = token
            self._session_tokens.move_to_end(session_id)
            while len(self._session_tokens) > self.config.max_sessions:
                oldest, _ = self._session_tokens.popitem(last=False)
                evicted.append(oldest)
        if evicted:
            logger.info("csrf_session_tokens_evicted", count=len(evicted))
        return token

    def verify_session_token(self, session_id: str, submitted_token: Optional[str]) -> bool:
        if not session_id or not submitted_token:
            return False
        with self._lock:
            session_token = self._session_tokens.get(session_id)
        if session_token is None:
            return False
        if not constant_time_equals(session_token, submitted_token):
            return False
        return self.validate_token(submitted_token)

    def revoke(self, session_id: str) -> bool:
        with self._lock:
            return self._session_tokens.pop(session_id, None) is not None

    def cleanup_expired(self, batch_size: int = 500) -> int:
        """Drop sessions whose stored token no longer validates."""
        with self._lock:
            snapshot = list(self._session_tokens.items())
        stale = [sid for sid, token in snapshot if not self.validate_token(token)]
        removed = 0
        for start in range(0, len(stale), batch_size):
            with self._lock:
                for sid in stale[start : start + batch_size]:
                    token = self._session_tokens.get(sid)
                    if token is not None and not self.validate_token(token):
                        del self._session_tokens[sid]
                        removed += 1
        return removed

    async def verify_request(self, request: RequestSnapshot) -> CSRFVerification:
        if request.is_safe_method:
            return VALID

        session_id = request.cookies.get(self.config.session_cookie)
        if not session_id:
            return CSRFVerification(valid=False, error="Session missing for CSRF check")

        submitted_token = self._submitted_token(request)
        if not submitted_token:
            return CSRFVerification(valid=False, error="CSRF token missing")

        if not self.verify_session_token(session_id, submitted_token):
            return CSRFVerification(valid=False, error="CSRF token does not match session")
        return VALID


def build_csrf_guard(
    strategy: str, config: CSRFConfig, *, clock: Callable[[], float] = time.time
) -> CSRFGuard:
    guards = {
        "standard": CSRFGuard,
        "double_submit": DoubleSubmitCSRF,
        "synchronizer": SynchronizerTokenCSRF,
    }
    try:
        guard_cls = guards[strategy]
    except KeyError:
        raise ValueError(f"Unknown CSRF strategy '{strategy}'") from None
    return guard_cls(config, clock=clock)


def csrf_presets(config: CSRFConfig) -> Dict[str, CSRFGuard]:
    """The named guards offered to route handlers."""
    return {
        "standard": CSRFGuard(config),
        "double_submit": DoubleSubmitCSRF(config),
        "synchronizer": SynchronizerTokenCSRF(config),
        # more lenient variant for API clients
        "api": CSRFGuard(replace(config, max_age_ms=60 * 60 * 1000, same_site="lax")),
    }
