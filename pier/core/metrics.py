"""Prometheus metrics for the control plane.

Metric Naming Conventions:
- All metrics are prefixed with 'pier_'
- Counters end with '_total'
- Histograms/durations end with '_seconds'
- Gauges use descriptive names without suffix

Usage:
    from pier.core.metrics import observe_pipeline_run, set_service_counts

    observe_pipeline_run("ok", 4.2)
    set_service_counts({"running": 3, "stopped": 1})
"""

from collections.abc import Mapping

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

_registry = REGISTRY

# =============================================================================
# Pipeline
# =============================================================================

# Image builds dominate; covers 100ms to 10min
PIPELINE_DURATION_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)

PIPELINE_RUNS_TOTAL = Counter(
    "pier_pipeline_runs_total",
    "Build-run-route pipeline runs by result",
    labelnames=["result"],
    registry=_registry,
)

PIPELINE_STEP_FAILURES_TOTAL = Counter(
    "pier_pipeline_step_failures_total",
    "Pipeline failures by the step that failed",
    labelnames=["step"],
    registry=_registry,
)

PIPELINE_DURATION_SECONDS = Histogram(
    "pier_pipeline_duration_seconds",
    "Duration of one application's build-run-route pipeline",
    buckets=PIPELINE_DURATION_BUCKETS,
    registry=_registry,
)

# =============================================================================
# Shared infrastructure
# =============================================================================

INFRA_STARTS_TOTAL = Counter(
    "pier_infra_starts_total",
    "Shared service containers created or restarted",
    labelnames=["kind"],
    registry=_registry,
)

# =============================================================================
# Service view
# =============================================================================

SERVICES = Gauge(
    "pier_services",
    "Services in the last aggregated view, by status",
    labelnames=["status"],
    registry=_registry,
)


def observe_pipeline_run(result: str, duration_seconds: float, failed_step: str | None = None) -> None:
    """Record one pipeline run.

    Args:
        result: "ok" or "failed"
        duration_seconds: Wall time of the run
        failed_step: Step that aborted the run, if any
    """
    PIPELINE_RUNS_TOTAL.labels(result=result).inc()
    PIPELINE_DURATION_SECONDS.observe(duration_seconds)
    if failed_step:
        PIPELINE_STEP_FAILURES_TOTAL.labels(step=failed_step).inc()


def record_infra_start(kind: str) -> None:
    INFRA_STARTS_TOTAL.labels(kind=kind).inc()


def set_service_counts(counts: Mapping[str, int]) -> None:
    for status, count in counts.items():
        SERVICES.labels(status=status).set(count)


def get_metrics_response() -> bytes:
    """Metrics in Prometheus exposition format."""
    return generate_latest(_registry)  # type: ignore[no-any-return]
