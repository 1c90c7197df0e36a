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

bookops_jobs_total = Counter(
    "bookops_jobs_total",
    "Total book ops jobs by status",
    ["job_type", "status"],
)

bookops_job_duration_seconds = Histogram(
    "bookops_job_duration_seconds",
    "Book ops job duration in seconds",
    ["job_type"],
)

bookops_proposals_generated_total = Counter(
    "bookops_proposals_generated_total",
    "Assignment engine proposals by rule",
    ["rule"],
)

bookops_proposal_transitions_total = Counter(
    "bookops_proposal_transitions_total",
    "Reassignment proposal transitions by resulting status",
    ["from_status", "to_status"],
)

bookops_reset_batches_total = Counter(
    "bookops_reset_batches_total",
    "Reset batches by table and outcome",
    ["table", "outcome"],
)

bookops_reset_emergency_bypass_total = Counter(
    "bookops_reset_emergency_bypass_total",
    "Reset runs that stopped a table under emergency bypass",
    ["table"],
)

bookops_notifications_total = Counter(
    "bookops_notifications_total",
    "Outbound notifications by type and outcome",
    ["notification_type", "outcome"],
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


def observe_job(job_type: str, status: str, duration: float) -> None:
    bookops_jobs_total.labels(job_type=job_type, status=status).inc()
    bookops_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_proposals_generated(rule_counts: dict[str, int]) -> None:
    for rule, count in rule_counts.items():
        if count > 0:
            bookops_proposals_generated_total.labels(rule=rule).inc(count)


def observe_proposal_transition(from_status: str, to_status: str) -> None:
    bookops_proposal_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def observe_reset_batch(table: str, outcome: str) -> None:
    bookops_reset_batches_total.labels(table=table, outcome=outcome).inc()


def observe_reset_emergency_bypass(table: str) -> None:
    bookops_reset_emergency_bypass_total.labels(table=table).inc()


def observe_notification(notification_type: str, outcome: str) -> None:
    bookops_notifications_total.labels(notification_type=notification_type, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
