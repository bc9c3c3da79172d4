"""
Prometheus Metrics Registry

Provides Prometheus-compatible metrics for:
- HTTP request counts and latencies
- Frame extraction attempts and fallback usage
- Storage key resolution outcomes
- Circuit breaker state and transitions
- Repair scanner actions
"""
import re
import time
import logging
from typing import Optional
from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

logger = logging.getLogger(__name__)

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()

# ============================================================================
# Application Info
# ============================================================================

app_info = Info(
    'app',
    'Application information',
    registry=REGISTRY
)

app_uptime_seconds = Gauge(
    'app_uptime_seconds',
    'Seconds since metrics were initialized',
    registry=REGISTRY
)

# ============================================================================
# HTTP Request Metrics
# ============================================================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status_code'],
    registry=REGISTRY
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY
)

# ============================================================================
# Thumbnail Pipeline Metrics
# ============================================================================

frame_extraction_attempts_total = Counter(
    'frame_extraction_attempts_total',
    'Frame extraction subprocess attempts',
    ['result'],  # success, process_error, timeout, missing_output, undersized
    registry=REGISTRY
)

frame_extraction_duration_seconds = Histogram(
    'frame_extraction_duration_seconds',
    'Duration of a single frame extraction attempt',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY
)

thumbnails_generated_total = Counter(
    'thumbnails_generated_total',
    'Thumbnails produced by the pipeline',
    ['source'],  # extracted, fallback
    registry=REGISTRY
)

# ============================================================================
# Storage Resolution Metrics
# ============================================================================

storage_resolutions_total = Counter(
    'storage_resolutions_total',
    'Key resolution outcomes',
    ['outcome'],  # hit, not_found, unavailable
    registry=REGISTRY
)

storage_probes_total = Counter(
    'storage_probes_total',
    'Probe reads issued while resolving keys',
    registry=REGISTRY
)

# ============================================================================
# Circuit Breaker Metrics
# ============================================================================

circuit_breaker_state = Gauge(
    'circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half-open, 2=open)',
    ['name'],
    registry=REGISTRY
)

circuit_breaker_transitions_total = Counter(
    'circuit_breaker_transitions_total',
    'Circuit breaker state transitions',
    ['name', 'to_state'],
    registry=REGISTRY
)

circuit_breaker_short_circuits_total = Counter(
    'circuit_breaker_short_circuits_total',
    'Calls rejected without contacting the blob store',
    ['name'],
    registry=REGISTRY
)

# ============================================================================
# Repair Scanner Metrics
# ============================================================================

repair_actions_total = Counter(
    'repair_actions_total',
    'Repair scanner actions',
    ['action'],  # repaired, skipped, conflict, error
    registry=REGISTRY
)

repair_scan_duration_seconds = Histogram(
    'repair_scan_duration_seconds',
    'Repair scan duration in seconds',
    buckets=[1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 3600.0],
    registry=REGISTRY
)

_BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}

_start_time: Optional[float] = None


def init_metrics(version: str = "1.0.0"):
    """
    Initialize metrics with application info.

    Args:
        version: Application version string
    """
    global _start_time
    _start_time = time.time()

    app_info.info({
        'version': version,
        'name': 'thumbkeeper'
    })

    logger.info("Prometheus metrics initialized", extra={"version": version})


def record_request_metrics(
    method: str,
    path: str,
    status_code: int,
    response_time_seconds: float
):
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status_code: Response status code
        response_time_seconds: Response time in seconds
    """
    normalized_path = _normalize_path(path)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status_code=str(status_code)
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(response_time_seconds)


def record_extraction_attempt(result: str, duration_seconds: float = 0.0):
    """
    Record a single frame extraction attempt.

    Args:
        result: success, process_error, timeout, missing_output or undersized
        duration_seconds: Wall time of the subprocess
    """
    frame_extraction_attempts_total.labels(result=result).inc()
    if duration_seconds > 0:
        frame_extraction_duration_seconds.observe(duration_seconds)


def record_thumbnail_generated(is_fallback: bool):
    thumbnails_generated_total.labels(source="fallback" if is_fallback else "extracted").inc()


def record_resolution(outcome: str, probes: int = 0):
    """
    Record a key resolution outcome.

    Args:
        outcome: hit, not_found or unavailable
        probes: Number of probe reads issued
    """
    storage_resolutions_total.labels(outcome=outcome).inc()
    if probes > 0:
        storage_probes_total.inc(probes)


def record_breaker_transition(name: str, to_state: str):
    circuit_breaker_transitions_total.labels(name=name, to_state=to_state).inc()
    circuit_breaker_state.labels(name=name).set(_BREAKER_STATE_VALUES.get(to_state, 0))


def record_breaker_short_circuit(name: str):
    circuit_breaker_short_circuits_total.labels(name=name).inc()


def record_repair_action(action: str, count: int = 1):
    if count > 0:
        repair_actions_total.labels(action=action).inc(count)


def record_repair_scan(duration_seconds: float):
    repair_scan_duration_seconds.observe(duration_seconds)


def get_metrics() -> bytes:
    """
    Generate Prometheus metrics output.

    Returns:
        Prometheus text format metrics
    """
    if _start_time:
        app_uptime_seconds.set(time.time() - _start_time)
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def _normalize_path(path: str) -> str:
    """
    Normalize request path to avoid high cardinality.

    File references are collapsed to a placeholder.

    Args:
        path: Original request path

    Returns:
        Normalized path
    """
    path = re.sub(r'/(files|thumbnails|emergency)/.+$', r'/\1/{ref}', path)
    path = re.sub(r'/\d+', '/{id}', path)
    return path
