from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from salesdesk.context import correlation_scope
from salesdesk.core.config import get_settings


_ALLOWED_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:\-]+$")


def normalize_correlation_id(raw: str | None) -> str:
    """Return the caller's id when it is safe to echo and log, otherwise a fresh one."""

    value = (raw or "").strip()
    if not value or len(value) > get_settings().correlation_id_max_length:
        return str(uuid.uuid4())
    if not _ALLOWED_CORRELATION_ID.match(value):
        return str(uuid.uuid4())
    return value


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = normalize_correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        with correlation_scope(correlation_id):
            response = await call_next(request)

        response.headers["x-correlation-id"] = correlation_id
        return response
