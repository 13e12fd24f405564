from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from starlette.requests import Request

from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

USER_AGENT_KEY_LENGTH = 50
MAX_BODY_BYTES = 1024 * 1024


def extract_client_ip(headers: Mapping[str, str], peer_host: Optional[str]) -> str:
    """Resolve the client address, preferring proxy-supplied headers."""
    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    forwarded = headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return peer_host or "unknown"


@dataclass(frozen=True)
class ClientIdentity:
    ip: str
    user_agent: str = "unknown"

    @property
    def key(self) -> str:
        """Bucket key for rate limits: address plus a truncated user agent."""
        return f"{self.ip}:{self.user_agent[:USER_AGENT_KEY_LENGTH]}"


@dataclass
class RequestSnapshot:
    """
    Framework-neutral view of an inbound request.

    Header names are lower-cased. `body_json` is only populated for unsafe
    methods carrying a JSON body; parse failures leave it as None.
    """

    method: str
    path: str
    query: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    peer_host: Optional[str] = None
    body_json: Any = None
    request_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def is_safe_method(self) -> bool:
        return self.method in SAFE_METHODS

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent") or "unknown"

    @property
    def full_path(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    def identity(self) -> ClientIdentity:
        return ClientIdentity(
            ip=extract_client_ip(self.headers, self.peer_host),
            user_agent=self.user_agent,
        )

    @classmethod
    async def from_request(cls, request: Request) -> "RequestSnapshot":
        snapshot = cls.without_body(request)
        content_type = request.headers.get("content-type", "")
        if snapshot.method in UNSAFE_METHODS and "application/json" in content_type:
            snapshot.body_json = await _read_json_body(request)
        return snapshot

    @classmethod
    def without_body(cls, request: Request) -> "RequestSnapshot":
        return cls(
            method=request.method,
            path=request.url.path,
            query=request.url.query,
            headers=dict(request.headers),
            cookies=dict(request.cookies),
            peer_host=request.client.host if request.client else None,
            request_id=getattr(request.state, "request_id", None),
        )


async def _read_json_body(request: Request) -> Any:
    # request.body() caches the payload, so the downstream handler can still read it
    try:
        raw = await request.body()
    except Exception as e:  # noqa: BLE001
        logger.debug("request_body_unreadable", error=str(e))
        return None
    if not raw or len(raw) > MAX_BODY_BYTES:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError, RecursionError):
        return None
