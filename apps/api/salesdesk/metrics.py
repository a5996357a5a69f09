from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_permission_denied_total = Counter(
    "crm_permission_denied_total",
    "Total CRM permission denials by action and role",
    ["action", "role"],
)

crm_duplicate_locks_total = Counter(
    "crm_duplicate_locks_total",
    "Total leads locked for duplicate review by match type",
    ["match_type"],
)

crm_review_resolutions_total = Counter(
    "crm_review_resolutions_total",
    "Total duplicate review resolutions by decision",
    ["decision"],
)

crm_review_conflicts_total = Counter(
    "crm_review_conflicts_total",
    "Total rejected duplicate review resolutions by reason",
    ["reason"],
)

crm_merge_reparented_activities_total = Counter(
    "crm_merge_reparented_activities_total",
    "Total activities moved onto a canonical lead by merges",
)

crm_merge_duration_seconds = Histogram(
    "crm_merge_duration_seconds",
    "Lead merge duration in seconds",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_permission_denied(action: str, role: str) -> None:
    crm_permission_denied_total.labels(action=action, role=role).inc()


def observe_duplicate_lock(match_type: str) -> None:
    crm_duplicate_locks_total.labels(match_type=match_type).inc()


def observe_review_resolution(decision: str) -> None:
    crm_review_resolutions_total.labels(decision=decision).inc()


def observe_review_conflict(reason: str) -> None:
    crm_review_conflicts_total.labels(reason=reason).inc()


def observe_merge(reparented_activities: int, duration: float) -> None:
    if reparented_activities > 0:
        crm_merge_reparented_activities_total.inc(reparented_activities)
    crm_merge_duration_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
