"""Engine selection.

Priority:
1. Explicit override (--engine docker|process, or a caller-supplied kind)
2. NEST_ENGINE environment variable
3. Docker daemon reachable on its socket
4. Process fallback
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from clawnest.engines.base import Engine
from clawnest.engines.docker import DockerEngine, ping
from clawnest.engines.lock import InstanceLocks
from clawnest.engines.process import ProcessEngine
from clawnest.errors import InvalidArgumentError
from clawnest.infra import DockerClient
from clawnest.logging_schema import LogEvent
from clawnest.store import InstanceStore

if TYPE_CHECKING:
    from clawnest.config import DockerConfig, NestConfig

logger = logging.getLogger(__name__)

DOCKER = "docker"
PROCESS = "process"
ENGINE_KINDS = (DOCKER, PROCESS)


def _normalize(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip().lower()
    return value if value in ENGINE_KINDS else None


def parse_engine_arg(argv: Sequence[str]) -> str | None:
    """Read --engine X or --engine=X from command-line arguments."""
    for i, arg in enumerate(argv):
        if arg == "--engine" and i + 1 < len(argv):
            kind = _normalize(argv[i + 1])
            if kind:
                return kind
        elif arg.startswith("--engine="):
            kind = _normalize(arg.split("=", 1)[1])
            if kind:
                return kind
    return None


async def is_docker_available(config: DockerConfig) -> bool:
    """Probe the Docker daemon with a short timeout."""
    if config.host.startswith("unix://"):
        if not Path(config.host.replace("unix://", "")).exists():
            return False

    client = DockerClient(config)
    try:
        return await asyncio.wait_for(ping(client), timeout=config.probe_timeout)
    except asyncio.TimeoutError:
        return False
    finally:
        await client.close()


async def detect_engine(config: NestConfig, argv: Sequence[str] = ()) -> str:
    kind = parse_engine_arg(argv)
    if kind:
        source = "argument"
    elif _normalize(config.engine):
        kind = _normalize(config.engine)
        source = "environment"
    elif await is_docker_available(config.docker):
        kind, source = DOCKER, "probe"
    else:
        kind, source = PROCESS, "fallback"

    logger.info(
        "Selected %s engine (%s)",
        kind,
        source,
        extra={"event": LogEvent.ENGINE_SELECTED, "engine": kind, "source": source},
    )
    return kind


def create_engine(
    kind: str,
    config: NestConfig,
    store: InstanceStore,
    locks: InstanceLocks | None = None,
) -> Engine:
    if kind == DOCKER:
        return DockerEngine(config, store, locks)
    if kind == PROCESS:
        return ProcessEngine(config, store, locks)
    raise InvalidArgumentError(f"Unknown engine {kind!r} (expected one of: {', '.join(ENGINE_KINDS)})")
