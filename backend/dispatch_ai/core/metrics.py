"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: Rate, Errors, Duration of the HTTP surface
- LLM Metrics: backend request latency, errors, tokens and cost
- Dispatch Metrics: routing decisions, retries, turn outcomes, parse fallbacks
- Resource Metrics: process CPU and memory

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
from typing import Dict

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from dispatch_ai.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=registry,
)

# ============================================================================
# LLM METRICS
# ============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of backend LLM requests (one per attempt)",
    ["backend", "model"],
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "Backend LLM attempt duration in seconds (until stream end or failure)",
    ["backend", "model"],
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0],
    registry=registry,
)

llm_errors_total = Counter(
    "llm_errors_total",
    "Total number of backend LLM errors",
    ["backend", "error_type"],
    registry=registry,
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total number of tokens reported by backends",
    ["backend", "direction"],  # direction: input | output
    registry=registry,
)

llm_cost_usd_total = Counter(
    "llm_cost_usd_total",
    "Estimated backend cost in USD",
    ["backend"],
    registry=registry,
)

# ============================================================================
# DISPATCH METRICS
# ============================================================================

routing_decisions_total = Counter(
    "routing_decisions_total",
    "Total number of routing decisions per selected backend",
    ["backend"],
    registry=registry,
)

routing_score = Histogram(
    "routing_score",
    "Distribution of routing scores per candidate backend",
    ["backend"],
    buckets=[0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100],
    registry=registry,
)

dispatch_retries_total = Counter(
    "dispatch_retries_total",
    "Total number of failed dispatch attempts that were followed by a retry",
    ["backend"],
    registry=registry,
)

turn_outcomes_total = Counter(
    "turn_outcomes_total",
    "Total number of finished turns by path and terminal state",
    ["path", "state"],  # path: chat | analysis, state: completed | failed
    registry=registry,
)

structured_parse_failures_total = Counter(
    "structured_parse_failures_total",
    "Structured tool-call payloads that failed to parse or validate",
    ["path"],
    registry=registry,
)

fallback_extractions_total = Counter(
    "fallback_extractions_total",
    "Turns reduced through heuristic fallback extraction",
    ["path", "reason"],  # reason: missing_payload | parse_failure
    registry=registry,
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state per backend (0 = closed, 1 = half-open, 2 = open)",
    ["backend"],
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

process_cpu_usage_percent = Gauge(
    "process_cpu_usage_percent",
    "Process CPU usage percentage",
    registry=registry,
)

process_memory_rss_bytes = Gauge(
    "process_memory_rss_bytes",
    "Process resident memory in bytes",
    registry=registry,
)

CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """Strip query strings and trailing slashes to keep label cardinality low."""
    if "?" in path:
        path = path.split("?")[0]
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """Record HTTP request metrics (RED metrics)."""
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_llm_request(backend: str, model: str, duration_seconds: float) -> None:
    llm_requests_total.labels(backend=backend, model=model).inc()
    llm_request_duration_seconds.labels(backend=backend, model=model).observe(duration_seconds)


def record_llm_error(backend: str, error_type: str) -> None:
    """
    Record a backend error.

    Args:
        backend: Backend id ("openai", "anthropic")
        error_type: Short label (timeout, http_5xx, http_4xx, circuit_open, ...)
    """
    llm_errors_total.labels(backend=backend, error_type=error_type).inc()


def record_llm_tokens_and_cost(
    backend: str,
    input_tokens: int,
    output_tokens: int,
    cost_usd: float,
) -> None:
    if input_tokens > 0:
        llm_tokens_total.labels(backend=backend, direction="input").inc(input_tokens)
    if output_tokens > 0:
        llm_tokens_total.labels(backend=backend, direction="output").inc(output_tokens)
    if cost_usd > 0:
        llm_cost_usd_total.labels(backend=backend).inc(cost_usd)


def record_routing_decision(backend: str, scores: Dict[str, float]) -> None:
    """Record the selected backend and the score of every candidate."""
    routing_decisions_total.labels(backend=backend).inc()
    for candidate, score in scores.items():
        routing_score.labels(backend=candidate).observe(score)


def record_dispatch_retry(backend: str) -> None:
    dispatch_retries_total.labels(backend=backend).inc()


def record_turn_outcome(path: str, state: str) -> None:
    turn_outcomes_total.labels(path=path, state=state).inc()


def record_parse_failure(path: str) -> None:
    structured_parse_failures_total.labels(path=path).inc()


def record_fallback_extraction(path: str, reason: str) -> None:
    fallback_extractions_total.labels(path=path, reason=reason).inc()


def record_circuit_state(backend: str, state: str) -> None:
    circuit_breaker_state.labels(backend=backend).set(CIRCUIT_STATE_VALUES.get(state, 0))


def update_resource_metrics() -> None:
    """Update process resource gauges. Called when metrics are scraped."""
    try:
        process = psutil.Process()
        process_cpu_usage_percent.set(process.cpu_percent(interval=None))
        process_memory_rss_bytes.set(process.memory_info().rss)
    except psutil.Error as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """Get Prometheus metrics in text format."""
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
