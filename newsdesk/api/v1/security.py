from __future__ import annotations

import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import BaseModel

from newsdesk.core.config import settings
from newsdesk.security.csrf import SynchronizerTokenCSRF
from newsdesk.security.request_context import extract_client_ip
from newsdesk.security.services import SecurityServices
from newsdesk.security.signing import constant_time_equals
from newsdesk.utils.error_handler import AuthenticationError

router = APIRouter(tags=["security"], prefix="/security")

ADMIN_ACTOR = "admin-api"


class ResolveAlertRequest(BaseModel):
    resolved_by: str = ADMIN_ACTOR


def get_services(request: Request) -> SecurityServices:
    return request.app.state.security


def _authorize(x_admin_token: Optional[str] = Header(default=None)) -> str:
    expected = settings.ADMIN_API_TOKEN
    if not expected or not x_admin_token or not constant_time_equals(x_admin_token, expected):
        raise AuthenticationError("Admin token missing or invalid")
    return ADMIN_ACTOR


def _client_ip(request: Request) -> str:
    return extract_client_ip(
        {k.lower(): v for k, v in request.headers.items()},
        request.client.host if request.client else None,
    )


@router.get("/alerts")
def list_alerts(
    limit: int = 100,
    include_resolved: bool = False,
    actor: str = Depends(_authorize),
    services: SecurityServices = Depends(get_services),
) -> Dict[str, Any]:
    alerts = services.monitor.get_alerts(limit=limit, include_resolved=include_resolved)
    return {"alerts": [a.to_dict() for a in alerts], "count": len(alerts)}


@router.post("/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: str,
    request: Request,
    payload: Optional[ResolveAlertRequest] = None,
    actor: str = Depends(_authorize),
    services: SecurityServices = Depends(get_services),
) -> Dict[str, Any]:
    alert = services.monitor.get_alert(alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")

    resolved_by = payload.resolved_by if payload else actor
    resolved = services.monitor.resolve_alert(alert_id, resolved_by)
    services.monitor.record_admin_action(
        _client_ip(request), actor, "resolve_alert", target=alert_id
    )
    return {"resolved": resolved, "alert": alert.to_dict()}


@router.get("/metrics")
def security_metrics(
    actor: str = Depends(_authorize),
    services: SecurityServices = Depends(get_services),
) -> Dict[str, Any]:
    return services.monitor.get_metrics()


@router.get("/rate-limits")
async def rate_limit_stats(
    actor: str = Depends(_authorize),
    services: SecurityServices = Depends(get_services),
) -> Dict[str, Any]:
    return await services.limiter.stats()


@router.delete("/rate-limits/{identifier:path}")
async def reset_rate_limit(
    identifier: str,
    request: Request,
    tier: Optional[str] = None,
    actor: str = Depends(_authorize),
    services: SecurityServices = Depends(get_services),
) -> Dict[str, Any]:
    if tier is not None and tier not in services.limiter.tiers:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown tier")
    removed = await services.limiter.reset(identifier, tier)
    services.monitor.record_admin_action(
        _client_ip(request), actor, "reset_rate_limit", target=identifier
    )
    return {"identifier": identifier, "tier": tier, "removed": removed}


@router.get("/errors")
def error_stats(
    actor: str = Depends(_authorize),
    services: SecurityServices = Depends(get_services),
) -> Dict[str, Any]:
    return services.responder.get_error_stats()


@router.get("/csrf-token")
def issue_csrf_token(
    request: Request,
    response: Response,
    services: SecurityServices = Depends(get_services),
) -> Dict[str, Any]:
    guard = services.csrf
    if isinstance(guard, SynchronizerTokenCSRF):
        session_cookie = guard.config.session_cookie
        session_id = request.cookies.get(session_cookie)
        if not session_id:
            session_id = secrets.token_urlsafe(32)
            response.set_cookie(
                session_cookie,
                session_id,
                httponly=True,
                secure=guard.config.secure,
                samesite=guard.config.same_site,
            )
        token = guard.generate_session_token(session_id)
        response.headers.append("set-cookie", guard.cookie_header(token))
    else:
        token = guard.set_token_cookie(response)

    return {
        "csrf_token": token,
        "header_name": guard.config.header_name,
        "expires_in": guard.config.max_age_ms // 1000,
    }
