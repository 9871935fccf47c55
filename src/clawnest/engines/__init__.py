"""Instance engines: the lifecycle contract and its two backends."""

from clawnest.engines.base import DeployContext, DeployHandle, Engine, ProgressChannel, ProgressEvent
from clawnest.engines.docker import DockerEngine
from clawnest.engines.lock import InstanceLocks
from clawnest.engines.naming import ResourceNaming
from clawnest.engines.process import ProcessEngine
from clawnest.engines.result import OperationResult, OperationStatus
from clawnest.engines.selector import create_engine, detect_engine

__all__ = [
    "DeployContext",
    "DeployHandle",
    "DockerEngine",
    "Engine",
    "InstanceLocks",
    "OperationResult",
    "OperationStatus",
    "ProcessEngine",
    "ProgressChannel",
    "ProgressEvent",
    "ResourceNaming",
    "create_engine",
    "detect_engine",
]
