"""Local process engine.

Each instance is a gateway process of the agent binary whose state is
isolated through OPENCLAW_STATE_DIR. The engine spawns the gateway itself
(detached, output appended to gateway.log) and keeps one supervisor task
per gateway. Until a deploy succeeds the supervision policy is transient;
afterwards an unexpected exit is followed by a respawn.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import signal
import subprocess
import time
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING

from clawnest.configure import InstanceSettings, check_port
from clawnest.engines.base import ONBOARD_MARKER, DeployContext, Engine, single_chunk
from clawnest.engines.lock import InstanceLocks
from clawnest.engines.result import OperationResult, OperationStatus
from clawnest.errors import BackendError, BackendUnavailableError, DeployTimeoutError
from clawnest.logging_schema import LogEvent
from clawnest.store import InstanceMeta, InstanceState, InstanceStore

if TYPE_CHECKING:
    from clawnest.config import NestConfig

logger = logging.getLogger(__name__)

GATEWAY_LOG = "gateway.log"
RESPAWN_DELAY = 1.0
FOLLOW_INTERVAL = 0.5
TAIL_BLOCK = 8192
MAX_PROGRESS_LINE = 60


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _short(line: str) -> str:
    return line if len(line) <= MAX_PROGRESS_LINE else line[:MAX_PROGRESS_LINE] + "..."


class ProcessEngine(Engine):
    """Instances as supervised local processes."""

    kind = "process"
    gateway_bind = "loopback"

    def __init__(
        self,
        config: NestConfig,
        store: InstanceStore,
        locks: InstanceLocks | None = None,
    ) -> None:
        super().__init__(config, store, locks)
        self._binary = config.process.binary
        self._gateways: dict[str, asyncio.subprocess.Process] = {}
        self._onboarding: dict[str, asyncio.subprocess.Process] = {}
        self._supervisors: dict[str, asyncio.Task] = {}
        self._persistent: set[str] = set()

    def _env(self, instance_id: str) -> dict[str, str]:
        env = dict(os.environ)
        env["OPENCLAW_STATE_DIR"] = str(self._store.instance_dir(instance_id))
        return env

    def _log_path(self, instance_id: str) -> Path:
        return self._store.instance_dir(instance_id) / GATEWAY_LOG

    def _handle_pid(self, meta: InstanceMeta) -> int | None:
        if meta.backend_handle and meta.backend_handle.isdigit():
            return int(meta.backend_handle)
        return None

    def _is_running(self, meta: InstanceMeta) -> bool:
        proc = self._gateways.get(meta.id)
        if proc is not None:
            return proc.returncode is None
        pid = self._handle_pid(meta)
        return pid is not None and _pid_alive(pid)

    def _persist_handle(self, instance_id: str, pid: int | None) -> None:
        meta = self._store.get(instance_id)
        if meta is None:
            return
        meta.backend_handle = str(pid) if pid is not None else None
        self._store.save(meta)

    # -------------------------------------------------------------------------
    # gateway process supervision
    # -------------------------------------------------------------------------

    async def _spawn_gateway(self, meta: InstanceMeta) -> asyncio.subprocess.Process:
        directory = self._store.instance_dir(meta.id)
        directory.mkdir(parents=True, exist_ok=True)
        with open(self._log_path(meta.id), "ab") as log:
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._binary,
                    "gateway",
                    "run",
                    "--port",
                    str(meta.port),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    env=self._env(meta.id),
                    start_new_session=True,
                )
            except FileNotFoundError as e:
                raise BackendUnavailableError(f"Agent binary {self._binary!r} not found") from e

        self._gateways[meta.id] = proc
        self._persist_handle(meta.id, proc.pid)
        self._supervisors[meta.id] = asyncio.create_task(
            self._supervise(meta.id, proc), name=f"supervise-{meta.id}"
        )
        logger.info(
            "Gateway spawned",
            extra={"event": LogEvent.PROCESS_SPAWNED, "instance_id": meta.id, "pid": proc.pid},
        )
        return proc

    async def _supervise(self, instance_id: str, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if self._gateways.get(instance_id) is not proc:
            return
        del self._gateways[instance_id]
        self._supervisors.pop(instance_id, None)
        logger.warning(
            "Gateway exited with code %s",
            code,
            extra={"event": LogEvent.PROCESS_EXITED, "instance_id": instance_id, "exit_code": code},
        )
        if instance_id not in self._persistent:
            return

        await asyncio.sleep(RESPAWN_DELAY)
        meta = self._store.get(instance_id)
        if meta is None or instance_id not in self._persistent or instance_id in self._gateways:
            return
        try:
            await self._spawn_gateway(meta)
        except BackendUnavailableError as e:
            logger.error(
                "Gateway respawn failed: %s",
                e.message,
                extra={"event": LogEvent.BACKEND_ERROR, "instance_id": instance_id},
            )
            return
        logger.info(
            "Gateway respawned",
            extra={"event": LogEvent.PROCESS_RESTARTED, "instance_id": instance_id},
        )

    async def _terminate(self, meta: InstanceMeta) -> bool:
        """Stop the gateway process; returns whether one was running."""
        supervisor = self._supervisors.pop(meta.id, None)
        if supervisor is not None:
            supervisor.cancel()
        timeout = self._config.process.stop_timeout

        proc = self._gateways.pop(meta.id, None)
        if proc is not None:
            if proc.returncode is not None:
                return False
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
            return True

        # Gateway spawned by an earlier manager process
        pid = self._handle_pid(meta)
        if pid is None or not _pid_alive(pid):
            return False
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not _pid_alive(pid):
                return True
            await asyncio.sleep(0.2)
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGKILL)
        return True

    async def _kill_onboarding(self, instance_id: str) -> None:
        proc = self._onboarding.pop(instance_id, None)
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    # -------------------------------------------------------------------------
    # deploy
    # -------------------------------------------------------------------------

    async def _deploy(self, ctx: DeployContext, meta: InstanceMeta, settings: InstanceSettings) -> None:
        deploy = self._config.deploy
        directory = self._store.instance_dir(meta.id)

        # P0: pre-flight
        ctx.progress(5, "Checking agent binary...")
        if shutil.which(self._binary) is None:
            raise BackendUnavailableError(f"Agent binary {self._binary!r} not found on PATH")
        ctx.progress(10, "Stopping previous gateway...")
        self._persistent.discard(meta.id)
        await self._kill_onboarding(meta.id)
        await self._terminate(meta)
        meta.status = InstanceState.STOPPED
        meta.backend_handle = None
        self._store.save(meta)
        directory.mkdir(parents=True, exist_ok=True)
        ctx.progress(20, "State directory ready")
        ctx.check()

        ctx.on_cancel(lambda: self._halt(meta))

        # P1 + P2: onboarding child (skipped once the marker exists), then gateway
        began = time.monotonic()
        marker = directory / ONBOARD_MARKER
        if marker.exists():
            ctx.progress(25, "Onboarding already completed, starting gateway...")
        else:
            await self._onboard(ctx, meta, marker)
            ctx.check()
            ctx.progress(80, "Starting gateway...")

        proc = await self._spawn_gateway(meta)
        ctx.progress(30, "Gateway process started")

        remaining = max(deploy.onboard_timeout - (time.monotonic() - began), deploy.poll_interval)
        await ctx.wait_until(
            lambda: self._gateway_ready(proc, meta),
            timeout=remaining,
            bound=deploy.onboard_timeout,
            phase="onboarding",
            start=30,
            end=85,
            message="Waiting for gateway...",
        )

        # P3: finalize config
        self._finalize_config(ctx, meta, settings)
        ctx.check()

        # P4: apply
        ctx.progress(93, "Restarting gateway...")
        await self._terminate(meta)
        proc = await self._spawn_gateway(meta)
        ctx.progress(96, "Waiting for gateway...")
        await ctx.wait_until(
            lambda: self._gateway_ready(proc, meta),
            timeout=deploy.apply_timeout,
            phase="apply",
            start=96,
            end=99,
            message="Waiting for gateway...",
        )
        self._persistent.add(meta.id)
        self._mark_running(meta)

    async def _onboard(self, ctx: DeployContext, meta: InstanceMeta, marker: Path) -> None:
        """Run onboarding to completion, tailing combined output for progress."""
        bound = self._config.deploy.onboard_timeout
        args = [
            "onboard",
            "--flow", "quickstart",
            "--accept-risk",
            "--skip-skills",
            "--skip-channels",
            "--skip-ui",
            "--skip-health",
            "--non-interactive",
            "--gateway-port", str(meta.port),
        ]
        ctx.progress(22, "Running onboarding...")
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self._env(meta.id),
            )
        except FileNotFoundError as e:
            raise BackendUnavailableError(f"Agent binary {self._binary!r} not found") from e

        self._onboarding[meta.id] = proc
        self._persist_handle(meta.id, proc.pid)
        ctx.progress(30, "Onboarding...")

        percent = 30
        deadline = time.monotonic() + bound
        assert proc.stdout is not None
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise DeployTimeoutError(f"Onboarding did not complete within {bound:g}s")
                try:
                    raw = await asyncio.wait_for(proc.stdout.readline(), remaining)
                except asyncio.TimeoutError:
                    raise DeployTimeoutError(
                        f"Onboarding did not complete within {bound:g}s"
                    ) from None
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if line and percent < 78:
                    percent = min(percent + 3, 78)
                    ctx.progress(percent, _short(line))
            code = await proc.wait()
        finally:
            await self._kill_onboarding(meta.id)

        ctx.check()
        if code != 0:
            raise BackendError(f"Onboarding failed (exit {code})")
        marker.touch()

    async def _gateway_ready(self, proc: asyncio.subprocess.Process, meta: InstanceMeta) -> bool:
        if proc.returncode is not None:
            raise BackendError(f"Gateway exited with code {proc.returncode}")
        return await check_port(meta.port, timeout=self._config.deploy.probe_timeout)

    async def _halt(self, meta: InstanceMeta) -> None:
        self._persistent.discard(meta.id)
        await self._kill_onboarding(meta.id)
        current = self._store.get(meta.id) or meta
        await self._terminate(current)

    # -------------------------------------------------------------------------
    # lifecycle hooks
    # -------------------------------------------------------------------------

    async def _start_unit(self, meta: InstanceMeta) -> OperationResult:
        if self._is_running(meta):
            self._persistent.add(meta.id)
            return OperationResult(
                status=OperationStatus.ALREADY_RUNNING,
                message="Gateway already running",
            )
        await self._spawn_gateway(meta)
        self._persistent.add(meta.id)
        return OperationResult(status=OperationStatus.COMPLETED)

    async def _stop_unit(self, meta: InstanceMeta) -> OperationResult:
        self._persistent.discard(meta.id)
        await self._kill_onboarding(meta.id)
        if not await self._terminate(meta):
            return OperationResult(
                status=OperationStatus.ALREADY_STOPPED,
                message="Gateway was not running",
            )
        return OperationResult(status=OperationStatus.COMPLETED)

    async def _restart_unit(self, meta: InstanceMeta) -> None:
        await self._terminate(meta)
        await self._spawn_gateway(meta)

    async def _teardown_unit(self, meta: InstanceMeta) -> None:
        self._persistent.discard(meta.id)
        await self._kill_onboarding(meta.id)
        self._gateways.pop(meta.id, None)

    async def _probe_unit(self, meta: InstanceMeta) -> InstanceState:
        return InstanceState.RUNNING if self._is_running(meta) else InstanceState.STOPPED

    async def _gateway_address(self, meta: InstanceMeta) -> tuple[str, int] | None:
        return ("127.0.0.1", meta.port)

    # -------------------------------------------------------------------------
    # logs
    # -------------------------------------------------------------------------

    async def logs(
        self,
        instance_id: str,
        tail: int = 200,
        follow: bool = False,
    ) -> AsyncIterator[bytes] | None:
        if self._store.get(instance_id) is None:
            return None
        path = self._log_path(instance_id)
        if not path.exists():
            return None
        snapshot, offset = self._read_tail(path, tail)
        if not follow:
            return single_chunk(snapshot)
        return self._follow(path, snapshot, offset)

    @staticmethod
    def _read_tail(path: Path, tail: int) -> tuple[bytes, int]:
        """Last tail lines and the current size, reading backwards in blocks."""
        with open(path, "rb") as f:
            size = f.seek(0, os.SEEK_END)
            if tail <= 0:
                return b"", size
            data = b""
            position = size
            # tail + 1 newlines guarantee the kept lines are complete
            while position > 0 and data.count(b"\n") <= tail:
                step = min(TAIL_BLOCK, position)
                position -= step
                f.seek(position)
                data = f.read(step) + data
        lines = data.splitlines(keepends=True)
        return b"".join(lines[-tail:]), size

    async def _follow(self, path: Path, snapshot: bytes, offset: int) -> AsyncIterator[bytes]:
        if snapshot:
            yield snapshot
        while True:
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                return
            if size < offset:
                # Truncated or rotated
                offset = 0
            if size > offset:
                with open(path, "rb") as f:
                    f.seek(offset)
                    chunk = f.read(size - offset)
                offset += len(chunk)
                if chunk:
                    yield chunk
            await asyncio.sleep(FOLLOW_INTERVAL)

    async def close(self) -> None:
        """Stop supervising; gateways keep running detached."""
        for task in self._supervisors.values():
            task.cancel()
        self._supervisors.clear()
        for instance_id in list(self._onboarding):
            await self._kill_onboarding(instance_id)
