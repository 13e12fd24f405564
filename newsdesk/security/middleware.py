from __future__ import annotations

from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from newsdesk.security.pipeline import DefensePipeline
from newsdesk.security.request_context import RequestSnapshot


class DefenseMiddleware(BaseHTTPMiddleware):
    """
    Runs the defense pipeline in front of every route.

    Rejected requests get the error envelope straight away; admitted ones
    reach the handler and come back with `X-RateLimit-*` headers. The
    pipeline is taken from `app.state.security` unless one is passed in.
    """

    def __init__(self, app, pipeline: Optional[DefensePipeline] = None):
        super().__init__(app)
        self._pipeline = pipeline

    def _get_pipeline(self, request: Request) -> Optional[DefensePipeline]:
        if self._pipeline is not None:
            return self._pipeline
        services = getattr(request.app.state, "security", None)
        return getattr(services, "pipeline", None)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        pipeline = self._get_pipeline(request)
        if pipeline is None:
            return await call_next(request)

        try:
            snapshot = await RequestSnapshot.from_request(request)
        except Exception as e:  # noqa: BLE001
            decision = pipeline.admit_on_error(RequestSnapshot.without_body(request), e)
        else:
            decision = await pipeline.process(snapshot)
        if not decision.admitted and decision.response is not None:
            return decision.response.to_response()

        request.state.client_identity = decision.identity
        response = await call_next(request)
        for name, value in decision.headers.items():
            response.headers[name] = value
        return response
