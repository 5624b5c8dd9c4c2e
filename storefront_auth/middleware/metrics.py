"""Prometheus-style metrics middleware and endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from time import perf_counter

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse, Response

_PREFIX = "storefront_auth"
_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@dataclass
class _DurationStat:
    """Aggregate duration stats per label tuple."""

    count: int = 0
    total_seconds: float = 0.0


class MetricsRegistry:
    """In-process metrics registry rendered as Prometheus text."""

    def __init__(self) -> None:
        self._request_counts: dict[tuple[str, str, str], int] = {}
        self._duration_stats: dict[tuple[str, str, str], _DurationStat] = {}
        self._login_outcomes: dict[str, int] = {}
        self._lock = Lock()

    def record(self, method: str, path: str, status: str, duration_seconds: float) -> None:
        """Record one request measurement for the label set."""
        key = (method, path, status)
        with self._lock:
            self._request_counts[key] = self._request_counts.get(key, 0) + 1
            stat = self._duration_stats.setdefault(key, _DurationStat())
            stat.count += 1
            stat.total_seconds += duration_seconds

    def record_login_outcome(self, outcome: str) -> None:
        """Count one login or 2FA step outcome (active, 2fa_required, invalid_code, ...)."""
        with self._lock:
            self._login_outcomes[outcome] = self._login_outcomes.get(outcome, 0) + 1

    def login_outcome_count(self, outcome: str) -> int:
        with self._lock:
            return self._login_outcomes.get(outcome, 0)

    def render_prometheus_text(self) -> str:
        """Render metrics in Prometheus exposition format."""
        lines = [
            f"# HELP {_PREFIX}_http_requests_total Total HTTP requests seen by the service.",
            f"# TYPE {_PREFIX}_http_requests_total counter",
        ]

        with self._lock:
            for method, path, status in sorted(self._request_counts):
                labels = _format_labels(method=method, path=path, status=status)
                count = self._request_counts[(method, path, status)]
                lines.append(f"{_PREFIX}_http_requests_total{{{labels}}} {count}")

            lines.append(
                f"# HELP {_PREFIX}_http_request_duration_seconds End-to-end HTTP request duration in seconds."
            )
            lines.append(f"# TYPE {_PREFIX}_http_request_duration_seconds summary")
            for method, path, status in sorted(self._duration_stats):
                stat = self._duration_stats[(method, path, status)]
                labels = _format_labels(method=method, path=path, status=status)
                lines.append(f"{_PREFIX}_http_request_duration_seconds_count{{{labels}}} {stat.count}")
                lines.append(f"{_PREFIX}_http_request_duration_seconds_sum{{{labels}}} {stat.total_seconds}")

            lines.append(f"# HELP {_PREFIX}_login_outcomes_total Login and 2FA attempts by outcome.")
            lines.append(f"# TYPE {_PREFIX}_login_outcomes_total counter")
            for outcome in sorted(self._login_outcomes):
                labels = f'outcome="{_escape_label(outcome)}"'
                lines.append(f"{_PREFIX}_login_outcomes_total{{{labels}}} {self._login_outcomes[outcome]}")

        return "\n".join(lines) + "\n"


def _escape_label(value: str) -> str:
    """Escape string values for Prometheus label rendering."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(method: str, path: str, status: str) -> str:
    return (
        f'method="{_escape_label(method)}",'
        f'path="{_escape_label(path)}",'
        f'status="{_escape_label(status)}"'
    )


DEFAULT_METRICS_REGISTRY = MetricsRegistry()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record metrics for all responses, including failed requests."""

    def __init__(self, app, registry: MetricsRegistry = DEFAULT_METRICS_REGISTRY) -> None:
        super().__init__(app)
        self._registry = registry

    async def dispatch(self, request: Request, call_next) -> Response:
        """Capture request counts and durations labelled by route template."""
        start = perf_counter()
        path = request.url.path
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            if route is not None:
                path = getattr(route, "path", path)
            self._registry.record(
                method=request.method,
                path=path,
                status=str(status_code),
                duration_seconds=perf_counter() - start,
            )


def build_metrics_endpoint(registry: MetricsRegistry = DEFAULT_METRICS_REGISTRY):
    """Build FastAPI-compatible endpoint that serves metrics text."""

    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(registry.render_prometheus_text(), media_type=_CONTENT_TYPE)

    return metrics_endpoint
