"""
Prometheus metrics for the chat service.

Provides counters, histograms, and gauges for tracking:
- Request counts and status codes
- Request latency distributions
- Query-embedding cache hit rates
- Admission and language-gate rejections
- Answer classification
- Provider call statistics
- Audit logger throughput and drops
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from typing import Optional

# ============================================================================
# HTTP Request Metrics
# ============================================================================

request_count = Counter(
    'ragchat_requests_total',
    'Total number of HTTP requests',
    ['endpoint', 'method', 'status']
)

request_latency = Histogram(
    'ragchat_request_duration_seconds',
    'HTTP request latency in seconds',
    ['endpoint', 'method'],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

# ============================================================================
# Cache Metrics
# ============================================================================

cache_hits = Counter(
    'ragchat_cache_hits_total',
    'Total number of cache hits',
    ['cache_type']
)

cache_misses = Counter(
    'ragchat_cache_misses_total',
    'Total number of cache misses',
    ['cache_type']
)

cache_size = Gauge(
    'ragchat_cache_size_entries',
    'Current number of entries in cache',
    ['cache_type']
)

cache_evictions = Counter(
    'ragchat_cache_evictions_total',
    'Total number of cache evictions',
    ['cache_type']
)

# ============================================================================
# Gate Metrics
# ============================================================================

rate_limit_denials = Counter(
    'ragchat_rate_limit_denials_total',
    'Requests denied by the per-client limiter',
)

auth_failures = Counter(
    'ragchat_auth_failures_total',
    'Requests rejected by token verification',
    ['reason']
)

language_rejections = Counter(
    'ragchat_language_rejections_total',
    'Questions rejected by the language gate',
    ['lang']
)

# ============================================================================
# Answer & Retrieval Metrics
# ============================================================================

answers = Counter(
    'ragchat_answers_total',
    'Answers by classification',
    ['answer_type', 'streamed']
)

search_latency = Histogram(
    'ragchat_search_duration_seconds',
    'Vector search latency in seconds',
    buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1)
)

top_score = Histogram(
    'ragchat_top_score',
    'Score of the best retrieval hit',
    buckets=(0.0, 0.1, 0.2, 0.25, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0)
)

index_size = Gauge(
    'ragchat_index_vectors_count',
    'Number of vectors in the in-memory index',
)

# ============================================================================
# Provider Metrics
# ============================================================================

llm_requests = Counter(
    'ragchat_llm_requests_total',
    'Total number of provider requests',
    ['model', 'kind', 'status']  # kind: embed, complete, stream
)

llm_latency = Histogram(
    'ragchat_llm_duration_seconds',
    'Provider request latency in seconds',
    ['model', 'kind'],
    buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0)
)

# ============================================================================
# Audit Metrics
# ============================================================================

audit_dropped = Gauge(
    'ragchat_audit_dropped_records',
    'Chat-log records dropped since start (queue full)',
)

audit_flushed = Counter(
    'ragchat_audit_flushed_records_total',
    'Chat-log records written to storage',
)

audit_failures = Counter(
    'ragchat_audit_flush_failures_total',
    'Failed chat-log batch writes',
)

# ============================================================================
# Helper Functions
# ============================================================================

def track_request(endpoint: str, method: str, status: int, duration: float) -> None:
    """
    Track HTTP request metrics.

    Args:
        endpoint: API endpoint path
        method: HTTP method (GET, POST, etc.)
        status: HTTP status code
        duration: Request duration in seconds
    """
    request_count.labels(endpoint=endpoint, method=method, status=status).inc()
    request_latency.labels(endpoint=endpoint, method=method).observe(duration)


def track_llm_request(model: str, kind: str, status: str, duration: float) -> None:
    """
    Track provider request metrics.

    Args:
        model: Model name
        kind: embed, complete or stream
        status: success or error
        duration: Request duration in seconds
    """
    llm_requests.labels(model=model, kind=kind, status=status).inc()
    llm_latency.labels(model=model, kind=kind).observe(duration)


def track_answer(answer_type: str, streamed: bool, score: Optional[float] = None) -> None:
    answers.labels(answer_type=answer_type, streamed=str(streamed).lower()).inc()
    if score is not None:
        top_score.observe(score)


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus format.

    Returns:
        Prometheus-formatted metrics as bytes
    """
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
