from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

NODE_LATENCY_SECONDS = Histogram(
    "slideforge_node_latency_seconds",
    "Latency for each task node execution",
    labelnames=("node",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

NODE_EVENT_TOTAL = Counter(
    "slideforge_node_event_total",
    "Count of task node lifecycle events (started/succeeded/degraded/failed/aborted/skipped/cancelled)",
    labelnames=("node", "event"),
)

BACKEND_CALL_TOTAL = Counter(
    "slideforge_backend_call_total",
    "Model backend invocations grouped by outcome",
    labelnames=("backend", "outcome"),
)

NODE_RETRY_TOTAL = Counter(
    "slideforge_node_retry_total",
    "Retries issued against a node's primary backend",
    labelnames=("node",),
)

NODE_FALLBACK_TOTAL = Counter(
    "slideforge_node_fallback_total",
    "Fallback backend selections per node",
    labelnames=("node", "backend"),
)

PIPELINE_RUNS_TOTAL = Counter(
    "slideforge_pipeline_runs_total",
    "Total pipeline runs by policy and status",
    labelnames=("policy", "status"),
)

PIPELINE_RUN_LATENCY_SECONDS = Histogram(
    "slideforge_pipeline_run_latency_seconds",
    "End-to-end pipeline runtime",
    labelnames=("policy",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

PIPELINE_ACTIVE_GAUGE = Gauge(
    "slideforge_pipeline_runs_active",
    "Pipeline runs in flight",
)

QUALITY_FINDINGS_TOTAL = Counter(
    "slideforge_quality_findings_total",
    "Quality report findings grouped by source validator and severity",
    labelnames=("source", "severity"),
)

ROUTING_FAILURES_TOTAL = Counter(
    "slideforge_routing_failures_total",
    "Requests rejected because no backend satisfied the routing policy",
    labelnames=("policy", "node"),
)

_ENABLED = True


def set_metrics_enabled(enabled: bool) -> None:
    global _ENABLED
    _ENABLED = enabled


def metrics_enabled() -> bool:
    return _ENABLED


def observe_node_latency(*, node: str, latency: float) -> None:
    if _ENABLED:
        NODE_LATENCY_SECONDS.labels(node=node).observe(latency)


def increment_node_event(*, node: str, event: str) -> None:
    if _ENABLED:
        NODE_EVENT_TOTAL.labels(node=node, event=event).inc()


def record_backend_call(*, backend: str, outcome: str) -> None:
    if _ENABLED:
        BACKEND_CALL_TOTAL.labels(backend=backend, outcome=outcome).inc()


def record_node_retry(*, node: str) -> None:
    if _ENABLED:
        NODE_RETRY_TOTAL.labels(node=node).inc()


def record_node_fallback(*, node: str, backend: str) -> None:
    if _ENABLED:
        NODE_FALLBACK_TOTAL.labels(node=node, backend=backend).inc()


def mark_pipeline_started() -> None:
    if _ENABLED:
        PIPELINE_ACTIVE_GAUGE.inc()


def mark_pipeline_completed(*, policy: str, status: str, latency: float) -> None:
    if not _ENABLED:
        return
    PIPELINE_ACTIVE_GAUGE.dec()
    PIPELINE_RUNS_TOTAL.labels(policy=policy, status=status).inc()
    PIPELINE_RUN_LATENCY_SECONDS.labels(policy=policy).observe(latency)


def record_quality_finding(*, source: str, severity: str) -> None:
    if _ENABLED:
        QUALITY_FINDINGS_TOTAL.labels(source=source, severity=severity).inc()


def record_routing_failure(*, policy: str, node: str) -> None:
    if _ENABLED:
        ROUTING_FAILURES_TOTAL.labels(policy=policy, node=node).inc()
