from __future__ import annotations

import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None = None
    actor_role: str | None = None


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attaches a per-request context that auth and the CRM context dependency fill in."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.context = RequestContext(request_id=request_id, correlation_id=correlation_id)
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response
