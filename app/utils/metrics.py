from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


HTTP_REQUESTS_TOTAL = Counter(
    "nvcar_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "nvcar_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "path"],
)


SIMULATION_ACTIONS_TOTAL = Counter(
    "nvcar_simulation_actions_total",
    "Synthetic actor API calls recorded by simulation runs",
    ["action", "result"],
)

SIMULATION_RUNS_TOTAL = Counter(
    "nvcar_simulation_runs_total",
    "Simulation runs by terminal status",
    ["result"],
)

SANDBOX_SERVER_EVENTS_TOTAL = Counter(
    "nvcar_sandbox_server_events_total",
    "Sandbox server lifecycle events",
    ["event", "result"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
