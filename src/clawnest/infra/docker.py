"""Docker Engine API client.

Provides async Docker API access for containers, images and the daemon.
Supports both Unix socket and TCP connections.

Transport failures surface as BackendUnavailableError; error responses that
are not an "already in desired state" answer surface as BackendError.
"""

import json
import logging
import struct
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from pydantic import BaseModel

from clawnest.config import DockerConfig
from clawnest.errors import BackendError, BackendUnavailableError
from clawnest.metrics import NEST_DOCKER_DURATION, NEST_DOCKER_ERRORS

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================


class HostConfig(BaseModel):
    """Docker HostConfig for container creation."""

    network_mode: str | None = None
    binds: list[str] = []
    port_bindings: dict[str, int] = {}
    restart_policy: str = "no"

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API format."""
        result: dict = {
            "Binds": self.binds,
            "RestartPolicy": {"Name": self.restart_policy},
        }
        if self.network_mode:
            result["NetworkMode"] = self.network_mode
        if self.port_bindings:
            result["PortBindings"] = {
                container_port: [{"HostPort": str(host_port)}]
                for container_port, host_port in self.port_bindings.items()
            }
        return result


class ContainerConfig(BaseModel):
    """Docker container configuration for creation."""

    image: str
    name: str
    cmd: list[str] = []
    env: list[str] = []
    working_dir: str | None = None
    labels: dict[str, str] = {}
    exposed_ports: dict[str, dict] = {}
    host_config: HostConfig = HostConfig()

    model_config = {"frozen": True}

    def to_api(self) -> dict:
        """Convert to Docker API JSON format."""
        result: dict = {
            "Image": self.image,
            "Cmd": self.cmd,
            "ExposedPorts": self.exposed_ports,
            "HostConfig": self.host_config.to_api(),
        }
        if self.env:
            result["Env"] = self.env
        if self.working_dir:
            result["WorkingDir"] = self.working_dir
        if self.labels:
            result["Labels"] = self.labels
        return result


# =============================================================================
# Docker Client
# =============================================================================


class DockerClient:
    """Async Docker API client.

    Owned by the runtime; call close() on shutdown.
    """

    def __init__(self, config: DockerConfig | None = None) -> None:
        self._config = config or DockerConfig()
        self._host = self._config.host
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> DockerConfig:
        return self._config

    def _create_client(self) -> httpx.AsyncClient:
        """Create a new HTTP client."""
        timeout = self._config.api_timeout
        if self._host.startswith("unix://"):
            socket_path = self._host.replace("unix://", "")
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
            return httpx.AsyncClient(
                transport=transport,
                base_url="http://localhost",
                timeout=timeout,
            )
        base_url = self._host
        if base_url.startswith("tcp://"):
            base_url = base_url.replace("tcp://", "http://")
        return httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def get(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = self._create_client()
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("message", resp.text)
    except (ValueError, AttributeError):
        return resp.text


def raise_for_docker(resp: httpx.Response, operation: str) -> None:
    """Raise BackendError for any 4xx/5xx response."""
    if resp.status_code < 400:
        return
    NEST_DOCKER_ERRORS.labels(operation=operation, error_type="api_error").inc()
    raise BackendError(f"Docker {operation} failed ({resp.status_code}): {_error_message(resp)}")


@asynccontextmanager
async def docker_call(operation: str) -> AsyncIterator[None]:
    """Time a Docker API call and translate transport failures."""
    start = time.monotonic()
    try:
        yield
    except httpx.TransportError as e:
        NEST_DOCKER_ERRORS.labels(operation=operation, error_type="unavailable").inc()
        raise BackendUnavailableError(f"Docker daemon unreachable during {operation}: {e}") from e
    finally:
        NEST_DOCKER_DURATION.labels(operation=operation).observe(time.monotonic() - start)


# =============================================================================
# Log stream demultiplexing
# =============================================================================

_FRAME_HEADER = struct.Struct(">BxxxL")


def demux_bytes(data: bytes) -> bytes:
    """Strip Docker stream frame headers from a non-TTY log buffer.

    Data that does not start with a valid header (TTY containers) is
    returned unchanged.
    """
    if len(data) < _FRAME_HEADER.size or data[0] not in (0, 1, 2):
        return data
    out = bytearray()
    offset = 0
    while offset + _FRAME_HEADER.size <= len(data):
        _, size = _FRAME_HEADER.unpack_from(data, offset)
        offset += _FRAME_HEADER.size
        out += data[offset : offset + size]
        offset += size
    return bytes(out)


async def demux_stream(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Demultiplex a live stdout/stderr stream into combined payload bytes.

    Frames may be split across chunks; partial frames are buffered.
    """
    buffer = bytearray()
    async for chunk in chunks:
        buffer += chunk
        while len(buffer) >= _FRAME_HEADER.size:
            _, size = _FRAME_HEADER.unpack_from(buffer, 0)
            end = _FRAME_HEADER.size + size
            if len(buffer) < end:
                break
            payload = bytes(buffer[_FRAME_HEADER.size : end])
            del buffer[:end]
            if payload:
                yield payload


# =============================================================================
# Container API
# =============================================================================


class ContainerAPI:
    """Docker Container API operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def inspect(self, name: str) -> dict | None:
        """Inspect a container, None when it does not exist."""
        client = await self._docker.get()
        async with docker_call("inspect"):
            resp = await client.get(f"/containers/{name}/json")
        if resp.status_code == 404:
            return None
        raise_for_docker(resp, "inspect")
        return resp.json()

    async def create(self, config: ContainerConfig) -> str:
        """Create a container and return its id."""
        client = await self._docker.get()
        async with docker_call("create"):
            resp = await client.post(
                "/containers/create",
                params={"name": config.name},
                json=config.to_api(),
            )
        raise_for_docker(resp, "create")
        container_id = resp.json().get("Id", "")
        logger.info("Created container: %s (%s)", config.name, container_id[:12])
        return container_id

    async def start(self, name: str) -> None:
        """Start a container (304 already started is fine)."""
        client = await self._docker.get()
        async with docker_call("start"):
            resp = await client.post(f"/containers/{name}/start")
        if resp.status_code == 304:
            return
        raise_for_docker(resp, "start")
        logger.info("Started container: %s", name)

    async def stop(self, name: str, timeout: int = 10) -> None:
        """Stop a container (already stopped or missing is fine)."""
        client = await self._docker.get()
        async with docker_call("stop"):
            resp = await client.post(
                f"/containers/{name}/stop",
                params={"t": str(timeout)},
                timeout=self._docker.config.api_timeout + timeout,
            )
        if resp.status_code in (304, 404):
            logger.debug("Container already stopped: %s", name)
            return
        raise_for_docker(resp, "stop")
        logger.info("Stopped container: %s", name)

    async def restart(self, name: str, timeout: int = 10) -> None:
        """Restart a container."""
        client = await self._docker.get()
        async with docker_call("restart"):
            resp = await client.post(
                f"/containers/{name}/restart",
                params={"t": str(timeout)},
                timeout=self._docker.config.api_timeout + timeout,
            )
        raise_for_docker(resp, "restart")
        logger.info("Restarted container: %s", name)

    async def remove(self, name: str, force: bool = True) -> None:
        """Remove a container (missing is fine)."""
        client = await self._docker.get()
        async with docker_call("remove"):
            resp = await client.delete(
                f"/containers/{name}", params={"force": "true" if force else "false"}
            )
        if resp.status_code == 404:
            logger.debug("Container not found: %s", name)
            return
        raise_for_docker(resp, "remove")
        logger.info("Removed container: %s", name)

    async def update_restart_policy(self, name: str, policy: str) -> None:
        """Change the restart policy of an existing container."""
        client = await self._docker.get()
        async with docker_call("update"):
            resp = await client.post(
                f"/containers/{name}/update",
                json={"RestartPolicy": {"Name": policy}},
            )
        raise_for_docker(resp, "update")

    async def logs(self, name: str, tail: int = 200) -> bytes | None:
        """Get a demultiplexed tail snapshot of the container output."""
        client = await self._docker.get()
        params = {"stdout": "true", "stderr": "true", "tail": str(tail)}
        async with docker_call("logs"):
            resp = await client.get(f"/containers/{name}/logs", params=params)
        if resp.status_code == 404:
            return None
        raise_for_docker(resp, "logs")
        return demux_bytes(resp.content)

    async def follow_logs(self, name: str, tail: int = 200) -> AsyncIterator[bytes]:
        """Stream demultiplexed container output until the caller stops iterating."""
        client = await self._docker.get()
        params = {"stdout": "true", "stderr": "true", "follow": "true", "tail": str(tail)}
        async with docker_call("logs"):
            async with client.stream(
                "GET",
                f"/containers/{name}/logs",
                params=params,
                timeout=httpx.Timeout(None, connect=self._docker.config.api_timeout),
            ) as resp:
                if resp.status_code == 404:
                    return
                if resp.status_code >= 400:
                    await resp.aread()
                    raise_for_docker(resp, "logs")
                async for payload in demux_stream(resp.aiter_bytes()):
                    yield payload


# =============================================================================
# Image API
# =============================================================================


class ImageAPI:
    """Docker Image API operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def exists(self, image_ref: str) -> bool:
        """Check if image exists locally."""
        client = await self._docker.get()
        async with docker_call("image_inspect"):
            resp = await client.get(f"/images/{image_ref}/json")
        return resp.status_code == 200

    async def pull(self, image_ref: str) -> AsyncIterator[dict]:
        """Pull image from registry, yielding progress messages.

        The daemon reports pull failures inside the stream body, so an
        "error" message raises BackendError even on a 200 response.
        """
        client = await self._docker.get()

        if ":" in image_ref.rsplit("/", 1)[-1]:
            image, tag = image_ref.rsplit(":", 1)
        else:
            image, tag = image_ref, "latest"

        logger.info("Pulling image: %s:%s", image, tag)

        async with docker_call("pull"):
            async with client.stream(
                "POST",
                "/images/create",
                params={"fromImage": image, "tag": tag},
                timeout=self._docker.config.image_pull_timeout,
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise_for_docker(resp, "pull")
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        message = json.loads(line)
                    except ValueError:
                        continue
                    if message.get("error"):
                        raise BackendError(f"Image pull failed: {message['error']}")
                    yield message

        logger.info("Pulled image: %s:%s", image, tag)


# =============================================================================
# System API
# =============================================================================


class SystemAPI:
    """Docker daemon-level operations."""

    def __init__(self, client: DockerClient) -> None:
        self._docker = client

    async def version(self) -> dict:
        client = await self._docker.get()
        async with docker_call("version"):
            resp = await client.get("/version")
        raise_for_docker(resp, "version")
        return resp.json()

    async def info(self) -> dict:
        client = await self._docker.get()
        async with docker_call("info"):
            resp = await client.get("/info")
        raise_for_docker(resp, "info")
        return resp.json()
