from typing import Any, Optional

import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

from newsdesk.api.v1 import security as security_routes
from newsdesk.core.config import settings
from newsdesk.monitoring.tracing.correlation import CorrelationIdMiddleware
from newsdesk.security.middleware import DefenseMiddleware
from newsdesk.security.services import SecurityServices, build_security_services
from newsdesk.security.validation.security_headers import SecurityHeadersMiddleware
from newsdesk.utils.error_handler import (
    ErrorHandlingMiddleware,
    SecurityError,
    security_error_handler,
)
from newsdesk.utils.logger import configure_logging, get_logger

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


def create_app(
    app_settings: Any = settings, services: Optional[SecurityServices] = None
) -> FastAPI:
    app = FastAPI(
        title=f"{app_settings.APP_NAME} API",
        description="Editorial platform API behind the request defense pipeline",
        version="1.0.0",
    )
    app.state.security = services or build_security_services(app_settings)

    # Initialize Sentry if DSN is provided
    if app_settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=app_settings.SENTRY_DSN,
            environment=app_settings.APP_ENV,
            traces_sample_rate=0.1,
        )
        app.add_middleware(SentryAsgiMiddleware)
        logger.info("sentry_initialized", environment=app_settings.APP_ENV)
    else:
        logger.info("sentry_not_configured")

    app.add_exception_handler(SecurityError, security_error_handler)

    # Innermost first: errors, defense pipeline, headers, CORS, request id
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(DefenseMiddleware)
    if app_settings.ENABLE_SECURITY_HEADERS:
        app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ALLOW_ORIGINS or ["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(security_routes.router, prefix="/api/v1")

    # Initialize Prometheus metrics
    instrumentator = Instrumentator(
        should_group_status_codes=False,
        excluded_handlers=["/metrics"],  # Don't monitor the metrics endpoint itself
    )
    instrumentator.instrument(app).expose(app)

    @app.on_event("startup")
    async def startup_event():
        """Application startup event"""
        logger.info(
            "newsdesk_starting",
            app_name=app_settings.APP_NAME,
            environment=app_settings.APP_ENV,
            sentry_enabled=bool(app_settings.SENTRY_DSN),
            rate_limit_backend=app_settings.RATE_LIMIT_BACKEND,
            csrf_strategy=app_settings.CSRF_STRATEGY,
        )
        await app.state.security.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.security.shutdown()
        logger.info("newsdesk_stopped")

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint"""
        return {"status": "ok"}

    return app


app = create_app()
