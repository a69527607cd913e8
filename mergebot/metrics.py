import os
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

try:
    from prometheus_client import multiprocess
except Exception:  # pragma: no cover
    multiprocess = None  # type: ignore


def build_registry() -> CollectorRegistry:
    """Build a Prometheus registry, supporting multiprocess if PROMETHEUS_MULTIPROC_DIR is set."""
    registry = CollectorRegistry()
    mp_dir = os.getenv("PROMETHEUS_MULTIPROC_DIR")
    if mp_dir and multiprocess is not None:
        multiprocess.MultiProcessCollector(registry)
    return registry


REGISTRY: CollectorRegistry = build_registry()

# Orchestration metrics
runs_total = Counter(
    "runs_total",
    "Orchestration runs by terminal outcome",
    labelnames=("outcome",),
    registry=REGISTRY,
)
phase_processing_seconds = Histogram(
    "phase_processing_seconds",
    "Time spent evaluating one orchestration phase",
    labelnames=("phase",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)
state_transitions_total = Counter(
    "state_transitions_total",
    "State machine transitions",
    labelnames=("from_phase", "to_phase"),
    registry=REGISTRY,
)
poll_wait_seconds = Histogram(
    "poll_wait_seconds",
    "Backoff intervals slept between polls",
    labelnames=("phase",),
    registry=REGISTRY,
    buckets=(1, 5, 10, 20, 30, 60, 120, 300, 600),
)
retries_total = Counter(
    "retries_total",
    "Retries by phase and reason",
    labelnames=("phase", "reason"),
    registry=REGISTRY,
)

# Outbound API metrics
github_api_requests_total = Counter(
    "github_api_requests_total",
    "Outbound GitHub API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
github_api_latency_seconds = Histogram(
    "github_api_latency_seconds",
    "Latency of GitHub API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
circleci_api_requests_total = Counter(
    "circleci_api_requests_total",
    "Outbound CircleCI API requests",
    labelnames=("endpoint", "status"),
    registry=REGISTRY,
)
circleci_api_latency_seconds = Histogram(
    "circleci_api_latency_seconds",
    "Latency of CircleCI API requests",
    labelnames=("endpoint",),
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
# Rate limit and backpressure metrics
github_rate_limit_remaining = Gauge(
    "github_rate_limit_remaining",
    "GitHub REST API remaining requests",
    registry=REGISTRY,
)
github_rate_limit_reset = Gauge(
    "github_rate_limit_reset",
    "Epoch seconds when GitHub rate limit resets",
    registry=REGISTRY,
)
throttles_total = Counter(
    "throttles_total",
    "Times a client backed off due to rate limits",
    labelnames=("api", "reason"),
    registry=REGISTRY,
)
config_load_failures_total = Counter(
    "config_load_failures_total",
    "Failures to load or resolve policy configuration",
    registry=REGISTRY,
)

# Merge behavior metrics
branch_updates_total = Counter(
    "branch_updates_total",
    "Attempted update-branch outcomes",
    labelnames=("result",),
    registry=REGISTRY,
)
check_failures_total = Counter(
    "check_failures_total",
    "Observed check transitions into failure",
    labelnames=("check",),
    registry=REGISTRY,
)
check_retriggers_total = Counter(
    "check_retriggers_total",
    "Re-run requests for failed checks",
    labelnames=("provider", "result"),
    registry=REGISTRY,
)
merge_attempts_total = Counter(
    "merge_attempts_total",
    "Merge attempts by method and result",
    labelnames=("method", "result"),
    registry=REGISTRY,
)
merges_success_total = Counter(
    "merges_success_total",
    "Successful merges by method",
    labelnames=("method",),
    registry=REGISTRY,
)
merges_failed_total = Counter(
    "merges_failed_total",
    "Failed merges by reason",
    labelnames=("reason",),
    registry=REGISTRY,
)

# Build info (set from environment)
service_info = Gauge(
    "service_info",
    "Service build/version info labeled on 1",
    labelnames=("version",),
    registry=REGISTRY,
)
service_info.labels(version=os.getenv("SERVICE_VERSION", "dev")).set(1)


def write_metrics(path: str) -> None:
    """Write the registry in node-exporter textfile collector format."""
    write_to_textfile(path, REGISTRY)
