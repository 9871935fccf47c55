"""Infrastructure layer (Docker Engine API)."""

from clawnest.infra.docker import (
    ContainerAPI,
    ContainerConfig,
    DockerClient,
    HostConfig,
    ImageAPI,
    SystemAPI,
    demux_bytes,
    demux_stream,
)

__all__ = [
    "ContainerAPI",
    "ContainerConfig",
    "DockerClient",
    "HostConfig",
    "ImageAPI",
    "SystemAPI",
    "demux_bytes",
    "demux_stream",
]
