# newsdesk/core/config.py
from __future__ import annotations

import secrets
import warnings
from typing import Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEV_ENVIRONMENTS = {"development", "dev", "local", "test", "testing"}


def _default_rate_limit_tiers() -> Dict[str, Dict[str, int]]:
    return {
        "auth": {"window_seconds": 15 * 60, "max_requests": 5},
        "api": {"window_seconds": 60, "max_requests": 100},
        "upload": {"window_seconds": 60, "max_requests": 10},
        "search": {"window_seconds": 60, "max_requests": 30},
        "admin": {"window_seconds": 60, "max_requests": 200},
    }


def _default_rate_limit_routes() -> Dict[str, str]:
    return {
        "/api/auth/": "auth",
        "/api/upload": "upload",
        "/api/search": "search",
        "/api/admin/": "admin",
        "/api/": "api",
    }


class Settings(BaseSettings):
    """
    Application settings, loaded from environment variables and/or .env file.
    """

    # Environment settings
    APP_NAME: str = "Newsdesk"
    APP_ENV: str = "development"

    # Secrets
    CSRF_SECRET: str = Field(default="", repr=False)
    CSRF_SECRET_AUTO_GENERATED: bool = False
    ADMIN_API_TOKEN: Optional[str] = Field(default=None, repr=False)
    CORS_ALLOW_ORIGINS: List[str] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        description="Comma-delimited list of allowed origins",
    )

    # Redis settings (optional shared rate-limit store)
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379

    # Observability settings
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: Optional[str] = None
    SECURITY_WEBHOOK_URL: Optional[str] = None
    MONITORING_API_URL: Optional[str] = None
    MONITORING_API_KEY: Optional[str] = Field(default=None, repr=False)
    ALERT_DELIVERY_TIMEOUT_SECONDS: float = 5.0
    ALERT_DELIVERY_MAX_ATTEMPTS: int = 3
    ALERT_DELIVERY_WORKERS: int = 2

    # Defense pipeline
    SECURITY_PIPELINE_ENABLED: bool = True
    SECURITY_PIPELINE_TIMEOUT_MS: int = 250
    SECURITY_SLOW_CHECK_MS: int = 1000
    SECURITY_LOG_REQUESTS: bool = True
    SECURITY_BYPASS_PATHS: List[str] = Field(
        default_factory=lambda: ["/health", "/metrics", "/api/health", "/api/metrics"]
    )
    SECURITY_BYPASS_PREFIXES: List[str] = Field(
        default_factory=lambda: ["/static/", "/_next/", "/favicon"]
    )
    SECURITY_SENSITIVE_PREFIXES: List[str] = Field(
        default_factory=lambda: ["/api/auth/", "/api/admin/", "/api/users/", "/api/upload"]
    )
    ENABLE_THREAT_DETECTION: bool = True

    # Rate limiting
    ENABLE_RATE_LIMITING: bool = True
    RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "redis"
    RATE_LIMIT_STRATEGY: str = "fixed"  # "fixed" or "sliding"
    RATE_LIMIT_STORE_TIMEOUT_MS: int = 50
    RATE_LIMIT_SHARDS: int = 32
    RATE_LIMIT_TIERS: Dict[str, Dict[str, int]] = Field(
        default_factory=_default_rate_limit_tiers
    )
    RATE_LIMIT_ROUTES: Dict[str, str] = Field(default_factory=_default_rate_limit_routes)

    # CSRF
    ENABLE_CSRF_PROTECTION: bool = True
    CSRF_STRATEGY: str = "standard"  # "standard", "double_submit", "synchronizer"
    CSRF_TOKEN_BYTES: int = 32
    CSRF_MAX_AGE_SECONDS: int = 24 * 3600
    CSRF_CLOCK_SKEW_SECONDS: int = 60
    CSRF_COOKIE_NAME: str = "_csrf"
    CSRF_HEADER_NAME: str = "x-csrf-token"
    CSRF_FORM_FIELD: str = "_csrf"
    CSRF_SESSION_COOKIE: str = "session_id"
    CSRF_SAME_SITE: str = "strict"
    CSRF_MAX_SESSIONS: int = 10_000
    CSRF_EXEMPT_PATHS: List[str] = Field(
        default_factory=lambda: ["/api/auth/", "/api/webhooks/", "/api/external/"]
    )

    # Security monitor
    SECURITY_MAX_EVENTS: int = 10_000
    SECURITY_MAX_RESOLVED_ALERTS: int = 1_000
    SECURITY_RETENTION_SECONDS: int = 7 * 24 * 3600
    SECURITY_METRICS_WINDOW_SECONDS: int = 24 * 3600
    ALERT_FAILED_LOGIN_THRESHOLD: int = 5
    ALERT_FAILED_LOGIN_WINDOW_SECONDS: int = 15 * 60
    ALERT_SUSPICIOUS_THRESHOLD: int = 10
    ALERT_SUSPICIOUS_WINDOW_SECONDS: int = 60 * 60
    ALERT_ADMIN_ACTION_THRESHOLD: int = 50
    ALERT_ADMIN_ACTION_WINDOW_SECONDS: int = 60 * 60
    ALERT_FILE_UPLOAD_THRESHOLD: int = 100
    ALERT_FILE_UPLOAD_WINDOW_SECONDS: int = 60 * 60

    # Background maintenance
    SECURITY_SWEEP_INTERVAL_SECONDS: int = 300
    SECURITY_SWEEP_BATCH_SIZE: int = 500

    # Security headers
    ENABLE_SECURITY_HEADERS: bool = True
    CSP_POLICY: Optional[str] = None
    PERMISSIONS_POLICY: str = "camera=(), microphone=(), geolocation=()"
    REFERRER_POLICY: str = "origin-when-cross-origin"

    @property
    def is_production(self) -> bool:
        return (self.APP_ENV or "").lower() in {"production", "prod"}

    @property
    def redis_url(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @field_validator(
        "CORS_ALLOW_ORIGINS",
        "SECURITY_BYPASS_PATHS",
        "SECURITY_BYPASS_PREFIXES",
        "SECURITY_SENSITIVE_PREFIXES",
        "CSRF_EXEMPT_PATHS",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value: str | List[str]) -> List[str]:
        """Allow comma-separated strings for list env vars."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported LOG_LEVEL: {value}")
        return value

    @field_validator("RATE_LIMIT_BACKEND")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in {"memory", "redis"}:
            raise ValueError("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")
        return value

    @field_validator("RATE_LIMIT_STRATEGY")
    @classmethod
    def _check_strategy(cls, value: str) -> str:
        value = value.lower()
        if value not in {"fixed", "sliding"}:
            raise ValueError("RATE_LIMIT_STRATEGY must be 'fixed' or 'sliding'")
        return value

    @field_validator("CSRF_STRATEGY")
    @classmethod
    def _check_csrf_strategy(cls, value: str) -> str:
        value = value.lower()
        if value not in {"standard", "double_submit", "synchronizer"}:
            raise ValueError(
                "CSRF_STRATEGY must be 'standard', 'double_submit' or 'synchronizer'"
            )
        return value

    @model_validator(mode="after")
    def _ensure_csrf_secret(self) -> "Settings":
        """Guarantee CSRF_SECRET is present outside development."""
        environment = (self.APP_ENV or "development").lower()
        secret = (self.CSRF_SECRET or "").strip()
        if secret and secret.lower() != "change-me":
            return self
        if environment not in _DEV_ENVIRONMENTS:
            raise ValueError(
                "CSRF_SECRET must be set for secure operation. "
                "Set CSRF_SECRET in the environment or .env file before starting the service."
            )
        # Generate an ephemeral key for local dev/tests and warn loudly.
        self.CSRF_SECRET = secrets.token_urlsafe(48)
        self.CSRF_SECRET_AUTO_GENERATED = True
        warnings.warn(
            (
                f"CSRF_SECRET was not provided; generated ephemeral key for "
                f"{environment} environment. "
                "Do not use this configuration in production."
            ),
            RuntimeWarning,
        )
        return self

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


settings = Settings()
