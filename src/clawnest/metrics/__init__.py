"""Prometheus metrics for clawnest."""

from clawnest.metrics.collector import (
    NEST_DEPLOY_DURATION,
    NEST_DEPLOY_TOTAL,
    NEST_DOCKER_DURATION,
    NEST_DOCKER_ERRORS,
    NEST_STATUS_DRIFT,
)

__all__ = [
    "NEST_DEPLOY_DURATION",
    "NEST_DEPLOY_TOTAL",
    "NEST_DOCKER_DURATION",
    "NEST_DOCKER_ERRORS",
    "NEST_STATUS_DRIFT",
]
