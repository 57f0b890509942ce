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

crm_cascade_total = Counter(
    "crm_cascade_total",
    "Derived-record cascades by kind and outcome",
    ["cascade", "outcome"],
)

crm_soft_delete_total = Counter(
    "crm_soft_delete_total",
    "Soft-delete state transitions by entity type",
    ["entity_type", "action"],
)

crm_soft_delete_blocked_total = Counter(
    "crm_soft_delete_blocked_total",
    "Soft-delete attempts rejected by a business rule",
    ["entity_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _UUID_RE.sub("{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_cascade(cascade: str, outcome: str) -> None:
    crm_cascade_total.labels(cascade=cascade, outcome=outcome).inc()


def observe_soft_delete(entity_type: str, action: str) -> None:
    crm_soft_delete_total.labels(entity_type=entity_type, action=action).inc()


def observe_soft_delete_blocked(entity_type: str) -> None:
    crm_soft_delete_blocked_total.labels(entity_type=entity_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
