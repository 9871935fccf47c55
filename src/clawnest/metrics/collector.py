"""Prometheus metrics definitions for clawnest.

Tracks the slow, failure-prone parts of instance management:
- Deploy runs (per engine, per result)
- Docker API calls
- Status drift corrected on read
"""

from prometheus_client import Counter, Histogram

# =============================================================================
# Histogram Buckets
# =============================================================================
# Docker API calls are usually fast, image pulls are not (100ms ~ 180s)
_BUCKETS_SLOW = (
    0.1, 0.2, 0.4, 0.8, 1.5,
    3, 6, 12, 24, 48,
    96, 180,
)

# A full deploy includes onboarding and can take minutes
_BUCKETS_DEPLOY = (
    1, 5, 10, 20, 40,
    60, 90, 120, 180, 300,
    600,
)

# =============================================================================
# Deploy Metrics
# =============================================================================

NEST_DEPLOY_TOTAL = Counter(
    "clawnest_deploy_total",
    "Total deploy runs by terminal result",
    ["engine", "result"],  # result: success, failed, aborted, timeout
)

NEST_DEPLOY_DURATION = Histogram(
    "clawnest_deploy_duration_seconds",
    "Duration of deploy runs",
    ["engine"],
    buckets=_BUCKETS_DEPLOY,
)

# =============================================================================
# Docker Operation Metrics
# =============================================================================

NEST_DOCKER_DURATION = Histogram(
    "clawnest_docker_duration_seconds",
    "Duration of Docker API operations",
    ["operation"],  # inspect, create, start, stop, restart, remove, update, pull
    buckets=_BUCKETS_SLOW,
)

NEST_DOCKER_ERRORS = Counter(
    "clawnest_docker_errors_total",
    "Total Docker API errors",
    ["operation", "error_type"],  # error_type: unavailable, api_error
)

# =============================================================================
# Status Metrics
# =============================================================================

NEST_STATUS_DRIFT = Counter(
    "clawnest_status_drift_total",
    "Persisted status corrected after probing the backend",
    ["engine"],
)
