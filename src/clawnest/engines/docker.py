"""Docker engine.

Each instance is a container from a fixed runtime image with the instance
state directory bind-mounted at /root/.openclaw. The container entrypoint
runs onboarding only while the completion marker is absent and then execs
the gateway, so container restarts never re-run onboarding.

Readiness is decided by probing the gateway port, not by scraping the
multiplexed log stream. When the manager itself runs in a container, the
instance joins the manager's network and is probed by container IP.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING

from clawnest.configure import InstanceSettings, check_port
from clawnest.engines.base import ONBOARD_MARKER, DeployContext, Engine, single_chunk
from clawnest.engines.lock import InstanceLocks
from clawnest.engines.naming import ResourceNaming
from clawnest.engines.result import OperationResult, OperationStatus
from clawnest.errors import BackendError, BackendUnavailableError, NestError
from clawnest.infra import ContainerAPI, ContainerConfig, DockerClient, HostConfig, ImageAPI, SystemAPI
from clawnest.logging_schema import LogEvent
from clawnest.store import InstanceMeta, InstanceState, InstanceStore

if TYPE_CHECKING:
    from clawnest.config import NestConfig

logger = logging.getLogger(__name__)

STATE_MOUNT = "/root/.openclaw"
DOCKERENV = Path("/.dockerenv")

LABEL_INSTANCE_ID = "clawnest.instance_id"

# Restart policy while deploying vs. after a confirmed deploy
POLICY_TRANSIENT = "no"
POLICY_PERSISTENT = "unless-stopped"

_UNRESOLVED = object()


def entrypoint_script(container_port: int) -> str:
    """Shell entrypoint: onboard once (marker-guarded), then exec the gateway."""
    marker = f"{STATE_MOUNT}/{ONBOARD_MARKER}"
    return (
        f'if [ ! -f "{marker}" ]; then '
        "openclaw onboard --flow quickstart --accept-risk "
        "--skip-skills --skip-channels --skip-ui --skip-health "
        f"--non-interactive --gateway-port {container_port} && "
        f'touch "{marker}"; '
        "fi && "
        f"exec openclaw gateway run --port {container_port}"
    )


class DockerEngine(Engine):
    """Instances as containers managed through the Docker Engine API."""

    kind = "docker"
    gateway_bind = "lan"

    def __init__(
        self,
        config: NestConfig,
        store: InstanceStore,
        locks: InstanceLocks | None = None,
        client: DockerClient | None = None,
        containers: ContainerAPI | None = None,
        images: ImageAPI | None = None,
        system: SystemAPI | None = None,
    ) -> None:
        super().__init__(config, store, locks)
        self._docker = config.docker
        self._client = client or DockerClient(config.docker)
        self._containers = containers or ContainerAPI(self._client)
        self._images = images or ImageAPI(self._client)
        self._system = system or SystemAPI(self._client)
        self._naming = ResourceNaming(config, store)
        self._network: object = _UNRESOLVED

    def _gateway_port(self, meta: InstanceMeta) -> int:
        return self._docker.container_port

    def _ref(self, meta: InstanceMeta) -> str:
        return meta.backend_handle or self._naming.container_name(meta.id)

    # -------------------------------------------------------------------------
    # sibling topology
    # -------------------------------------------------------------------------

    async def _manager_network(self) -> str | None:
        """Network to attach instances to, or None for host-port probing."""
        if self._docker.network:
            return self._docker.network
        if self._network is not _UNRESOLVED:
            return self._network  # type: ignore[return-value]

        network = None
        if DOCKERENV.exists():
            info = await self._containers.inspect(socket.gethostname())
            networks = ((info or {}).get("NetworkSettings") or {}).get("Networks") or {}
            for name in networks:
                if name not in ("host", "none"):
                    network = name
                    break
            logger.info("Manager runs in a container, instance network: %s", network)
        self._network = network
        return network

    def _container_ip(self, info: dict, network: str) -> str | None:
        networks = (info.get("NetworkSettings") or {}).get("Networks") or {}
        ip = (networks.get(network) or {}).get("IPAddress")
        return ip or None

    async def _address_for(self, info: dict, meta: InstanceMeta) -> tuple[str, int] | None:
        network = await self._manager_network()
        if network:
            ip = self._container_ip(info, network)
            if ip is None:
                return None
            return (ip, self._docker.container_port)
        return ("127.0.0.1", meta.port)

    # -------------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------------

    async def _remove_stale(self, meta: InstanceMeta) -> None:
        refs = {self._naming.container_name(meta.id)}
        if meta.backend_handle:
            refs.add(meta.backend_handle)
        for ref in refs:
            info = await self._containers.inspect(ref)
            if info is None:
                continue
            if (info.get("State") or {}).get("Running"):
                await self._containers.stop(ref, timeout=5)
            await self._containers.remove(ref, force=True)
            logger.info(
                "Removed stale container",
                extra={"event": LogEvent.CONTAINER_REMOVED, "container": ref, "instance_id": meta.id},
            )

    async def _pull(self, ctx: DeployContext) -> None:
        image = self._docker.image
        ctx.progress(5, f"Pulling image {image}...")
        percent = 5.0
        try:
            async for message in self._images.pull(image):
                status = message.get("status")
                if not status:
                    continue
                percent = min(percent + 0.5, 17)
                progress = message.get("progress")
                ctx.progress(percent, f"{status} {progress}" if progress else status)
                if ctx.cancelled:
                    break
        except BackendError as e:
            if not await self._images.exists(image):
                raise
            logger.warning(
                "Image pull failed, using local image: %s",
                e.message,
                extra={"event": LogEvent.IMAGE_PULL_FAILED, "image": image},
            )
            ctx.progress(17, f"Warning: pull failed, using local image: {e.message}")
            return
        logger.info("Image ready", extra={"event": LogEvent.IMAGE_PULLED, "image": image})

    def _container_config(self, meta: InstanceMeta, network: str | None) -> ContainerConfig:
        port = self._docker.container_port
        return ContainerConfig(
            image=self._docker.image,
            name=self._naming.container_name(meta.id),
            cmd=["sh", "-c", entrypoint_script(port)],
            env=["NODE_ENV=production"],
            working_dir="/root",
            labels={LABEL_INSTANCE_ID: meta.id},
            exposed_ports={f"{port}/tcp": {}},
            host_config=HostConfig(
                network_mode=network,
                binds=[f"{self._naming.host_instance_dir(meta.id)}:{STATE_MOUNT}"],
                port_bindings={f"{port}/tcp": meta.port},
                restart_policy=POLICY_TRANSIENT,
            ),
        )

    async def _container_ready(self, container_id: str, meta: InstanceMeta, phase: str) -> bool:
        info = await self._containers.inspect(container_id)
        if info is None:
            raise BackendError(f"Container {container_id[:12]} disappeared during {phase}")
        state = info.get("State") or {}
        if not state.get("Running"):
            raise BackendError(
                f"Container exited with code {state.get('ExitCode')} during {phase}"
            )
        address = await self._address_for(info, meta)
        if address is None:
            return False
        host, port = address
        return await check_port(port, host=host, timeout=self._config.deploy.probe_timeout)

    # -------------------------------------------------------------------------
    # deploy
    # -------------------------------------------------------------------------

    async def _deploy(self, ctx: DeployContext, meta: InstanceMeta, settings: InstanceSettings) -> None:
        deploy = self._config.deploy

        # P0: pre-flight
        await self._pull(ctx)
        ctx.check()
        ctx.progress(18, "Removing previous container...")
        await self._remove_stale(meta)
        meta.status = InstanceState.STOPPED
        meta.backend_handle = None
        self._store.save(meta)
        self._store.instance_dir(meta.id).mkdir(parents=True, exist_ok=True)
        ctx.check()

        # P1: provision
        ctx.progress(20, "Creating container...")
        network = await self._manager_network()
        container_id = await self._containers.create(self._container_config(meta, network))
        meta.backend_handle = container_id
        self._store.save(meta)
        logger.info(
            "Container created",
            extra={
                "event": LogEvent.CONTAINER_CREATED,
                "instance_id": meta.id,
                "container": container_id[:12],
                "network": network,
            },
        )
        ctx.on_cancel(lambda: self._containers.stop(container_id, timeout=2))

        ctx.progress(25, "Starting container...")
        await self._containers.start(container_id)
        ctx.check()

        # P2: onboarding runs in the entrypoint; wait for the gateway port
        ctx.progress(30, "Onboarding gateway...")
        await ctx.wait_until(
            lambda: self._container_ready(container_id, meta, "onboarding"),
            timeout=deploy.onboard_timeout,
            phase="onboarding",
            start=30,
            end=84,
            message="Waiting for onboarding...",
        )

        # P3: finalize config (bind-mounted, written from this side)
        self._finalize_config(ctx, meta, settings)
        ctx.check()

        # P4: apply
        ctx.progress(93, "Restarting gateway...")
        await self._containers.restart(container_id, timeout=5)
        ctx.progress(96, "Waiting for gateway...")
        await ctx.wait_until(
            lambda: self._container_ready(container_id, meta, "apply"),
            timeout=deploy.apply_timeout,
            phase="apply",
            start=96,
            end=99,
            message="Waiting for gateway...",
        )
        await self._containers.update_restart_policy(container_id, POLICY_PERSISTENT)
        self._mark_running(meta)

    async def _halt(self, meta: InstanceMeta) -> None:
        current = self._store.get(meta.id) or meta
        await self._containers.stop(self._ref(current), timeout=2)

    # -------------------------------------------------------------------------
    # lifecycle hooks
    # -------------------------------------------------------------------------

    async def _start_unit(self, meta: InstanceMeta) -> OperationResult:
        ref = self._ref(meta)
        info = await self._containers.inspect(ref)
        if info is None:
            raise BackendError(f'No container for instance "{meta.id}"; deploy it first')
        if (info.get("State") or {}).get("Running"):
            return OperationResult(
                status=OperationStatus.ALREADY_RUNNING,
                message="Container already running",
            )
        await self._containers.start(ref)
        logger.info(
            "Started container",
            extra={"event": LogEvent.CONTAINER_STARTED, "instance_id": meta.id, "container": ref},
        )
        return OperationResult(status=OperationStatus.COMPLETED)

    async def _stop_unit(self, meta: InstanceMeta) -> OperationResult:
        ref = self._ref(meta)
        info = await self._containers.inspect(ref)
        if info is None:
            return OperationResult(
                status=OperationStatus.ALREADY_STOPPED,
                message="Container does not exist",
            )
        if not (info.get("State") or {}).get("Running"):
            return OperationResult(
                status=OperationStatus.ALREADY_STOPPED,
                message="Container was already stopped",
            )
        await self._containers.stop(ref, timeout=self._docker.stop_timeout)
        logger.info(
            "Stopped container",
            extra={"event": LogEvent.CONTAINER_STOPPED, "instance_id": meta.id, "container": ref},
        )
        return OperationResult(status=OperationStatus.COMPLETED)

    async def _restart_unit(self, meta: InstanceMeta) -> None:
        await self._containers.restart(self._ref(meta), timeout=5)

    async def _teardown_unit(self, meta: InstanceMeta) -> None:
        refs = [self._ref(meta)]
        name = self._naming.container_name(meta.id)
        if name not in refs:
            refs.append(name)
        for ref in refs:
            await self._containers.remove(ref, force=True)

    async def _probe_unit(self, meta: InstanceMeta) -> InstanceState:
        info = await self._containers.inspect(self._ref(meta))
        if info is None:
            return InstanceState.STOPPED
        running = (info.get("State") or {}).get("Running", False)
        return InstanceState.RUNNING if running else InstanceState.STOPPED

    async def _gateway_address(self, meta: InstanceMeta) -> tuple[str, int] | None:
        network = await self._manager_network()
        if not network:
            return ("127.0.0.1", meta.port)
        info = await self._containers.inspect(self._ref(meta))
        if info is None:
            return None
        return await self._address_for(info, meta)

    # -------------------------------------------------------------------------
    # logs and daemon info
    # -------------------------------------------------------------------------

    async def logs(
        self,
        instance_id: str,
        tail: int = 200,
        follow: bool = False,
    ) -> AsyncIterator[bytes] | None:
        meta = self._store.get(instance_id)
        if meta is None or not meta.backend_handle:
            return None
        try:
            if await self._containers.inspect(meta.backend_handle) is None:
                return None
            if follow:
                return self._containers.follow_logs(meta.backend_handle, tail=tail)
            data = await self._containers.logs(meta.backend_handle, tail=tail)
        except NestError as e:
            logger.warning("Log retrieval failed for %s: %s", instance_id, e.message)
            return None
        if data is None:
            return None
        return single_chunk(data)

    async def info(self) -> dict:
        """Docker daemon summary."""
        info = await self._system.info()
        return {
            "serverVersion": info.get("ServerVersion"),
            "os": info.get("OperatingSystem"),
            "containers": info.get("Containers"),
            "containersRunning": info.get("ContainersRunning"),
        }

    async def close(self) -> None:
        await self._client.close()


async def ping(client: DockerClient) -> bool:
    """True if the daemon answers /version."""
    try:
        version = await SystemAPI(client).version()
    except (BackendUnavailableError, BackendError):
        return False
    return "ApiVersion" in version
