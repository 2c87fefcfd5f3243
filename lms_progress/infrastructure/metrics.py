from prometheus_client import Counter, Histogram, generate_latest
from fastapi import Response

# HTTP
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

# Redis cache
cache_hits_total = Counter('cache_hits_total', 'Total cache hits')
cache_misses_total = Counter('cache_misses_total', 'Total cache misses')

db_queries_total = Counter('db_queries_total', 'Total database queries')

# Progress protocol
progress_writes_total = Counter(
    'progress_writes_total',
    'Progress upserts attempted by the course player',
    ['kind', 'result']
)

reconciliation_divergences_total = Counter(
    'reconciliation_divergences_total',
    'Local/server completion mismatches found during reconciliation',
    ['direction']
)

realtime_invalidations_total = Counter(
    'realtime_invalidations_total',
    'Realtime change notifications that invalidated cached queries',
    ['table']
)


def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type="text/plain")
