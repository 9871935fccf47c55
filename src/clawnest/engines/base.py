"""Engine contract and deploy orchestration shared by both backends.

Each deploy runs as one asyncio.Task. Progress is published on a bounded
channel that drops the oldest intermediate events when the consumer falls
behind, so the deploy never waits on its reader. Cancellation is
cooperative: cancel() sets a flag that is checked between phases and
between poll iterations, and fires best-effort stop callbacks for any
backend unit that is in flight.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, ClassVar

from pydantic import BaseModel

from clawnest.configure import (
    InstanceSettings,
    allow_channel_user,
    check_port,
    deep_merge,
    generate_config,
    read_instance_config,
    validate_channel,
    validate_instance_id,
    validate_port,
    write_instance_config,
)
from clawnest.engines.lock import InstanceLocks
from clawnest.engines.result import OperationResult
from clawnest.errors import (
    AbortedError,
    BackendUnavailableError,
    ConflictError,
    DeployTimeoutError,
    InstanceNotFoundError,
    InvalidArgumentError,
    NestError,
)
from clawnest.logging_schema import LogEvent
from clawnest.metrics import NEST_DEPLOY_DURATION, NEST_DEPLOY_TOTAL, NEST_STATUS_DRIFT
from clawnest.store import ConfigSummary, InstanceMeta, InstanceState, InstanceStore

if TYPE_CHECKING:
    from clawnest.config import NestConfig

logger = logging.getLogger(__name__)

ONBOARD_MARKER = ".nest-onboarded"


# =============================================================================
# Progress
# =============================================================================


class ProgressEvent(BaseModel):
    """One deploy progress update.

    percent=-1 with error=True is terminal failure, percent=100 with
    done=True is terminal success.
    """

    percent: int
    message: str
    done: bool = False
    error: bool = False
    port: int | None = None

    @property
    def terminal(self) -> bool:
        return self.done or self.error


class ProgressChannel:
    """Bounded progress queue that never blocks the publisher."""

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0

    def publish(self, event: ProgressEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                # Only intermediate events can be queued ahead of this one
                self._queue.get_nowait()
                self.dropped += 1

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in order until the terminal one."""
        while True:
            event = await self._queue.get()
            yield event
            if event.terminal:
                return


class DeployContext:
    """Cancellation token and progress sink for one deploy."""

    def __init__(
        self,
        instance_id: str,
        channel: ProgressChannel,
        poll_interval: float = 2.0,
    ) -> None:
        self.instance_id = instance_id
        self._channel = channel
        self._poll_interval = poll_interval
        self._cancelled = asyncio.Event()
        self._percent = 0
        self._cancel_callbacks: list[Callable[[], Awaitable[None]]] = []
        self._cancel_tasks: set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def dropped(self) -> int:
        """Intermediate events discarded because the reader fell behind."""
        return self._channel.dropped

    def progress(self, percent: float, message: str) -> None:
        """Publish an intermediate update; percent never goes backwards."""
        value = max(self._percent, min(int(percent), 99))
        self._percent = value
        logger.debug(
            "%s: %d%% %s",
            self.instance_id,
            value,
            message,
            extra={"event": LogEvent.DEPLOY_PHASE, "instance_id": self.instance_id},
        )
        self._channel.publish(ProgressEvent(percent=value, message=message))

    def succeed(self, port: int) -> None:
        self._percent = 100
        self._channel.publish(ProgressEvent(percent=100, message="Done", done=True, port=port))

    def fail(self, message: str) -> None:
        self._channel.publish(ProgressEvent(percent=-1, message=message, error=True))

    def check(self) -> None:
        """Raise AbortedError if the deploy was cancelled."""
        if self._cancelled.is_set():
            raise AbortedError(f'Deploy of "{self.instance_id}" aborted')

    def on_cancel(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Register a best-effort stop for an in-flight backend unit."""
        self._cancel_callbacks.append(callback)

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        for callback in self._cancel_callbacks:
            task = asyncio.ensure_future(callback())
            self._cancel_tasks.add(task)
            task.add_done_callback(self._cancel_done)

    def _cancel_done(self, task: asyncio.Task) -> None:
        self._cancel_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Stop on cancel failed: %s",
                task.exception(),
                extra={"event": LogEvent.CLEANUP_FAILED, "instance_id": self.instance_id},
            )

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early and raising AbortedError on cancel."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self.check()

    async def wait_until(
        self,
        probe: Callable[[], Awaitable[bool]],
        *,
        timeout: float,
        phase: str,
        start: float,
        end: float,
        message: str,
        bound: float | None = None,
    ) -> None:
        """Poll probe until it returns True, advancing progress from start to end.

        Raises DeployTimeoutError naming the bound once timeout elapses.
        """
        bound = timeout if bound is None else bound
        began = time.monotonic()
        while True:
            self.check()
            if await probe():
                return
            elapsed = time.monotonic() - began
            if elapsed >= timeout:
                raise DeployTimeoutError(
                    f"Gateway did not become reachable within {bound:g}s ({phase})"
                )
            self.progress(start + (end - start) * min(elapsed / timeout, 1.0), message)
            await self.sleep(min(self._poll_interval, max(timeout - elapsed, 0.0)))


class DeployHandle:
    """Handle returned by deploy_stream().

    completion resolves to {"port": port} or raises the deploy error
    (AbortedError after cancel()).
    """

    def __init__(
        self,
        context: DeployContext,
        channel: ProgressChannel,
        task: asyncio.Task,
    ) -> None:
        self._context = context
        self._channel = channel
        self._task = task

    @property
    def instance_id(self) -> str:
        return self._context.instance_id

    @property
    def completion(self) -> asyncio.Task:
        return self._task

    def events(self) -> AsyncIterator[ProgressEvent]:
        return self._channel.events()

    def cancel(self) -> None:
        self._context.cancel()

    async def wait(self) -> dict:
        return await self._task


# =============================================================================
# Engine contract
# =============================================================================


class Engine(ABC):
    """Instance lifecycle contract.

    Implementations: ProcessEngine, DockerEngine.

    The base class owns everything both backends share: id and port
    validation, metadata bookkeeping, the deploy task wrapper, status
    reconciliation and channel allowlists. Backends implement the _unit
    hooks that touch the actual process or container.
    """

    kind: ClassVar[str]

    # Gateway bind mode written into openclaw.json
    gateway_bind: ClassVar[str] = "loopback"

    def __init__(
        self,
        config: NestConfig,
        store: InstanceStore,
        locks: InstanceLocks | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._locks = locks or InstanceLocks()

    @property
    def store(self) -> InstanceStore:
        return self._store

    def _require(self, instance_id: str) -> InstanceMeta:
        meta = self._store.get(instance_id)
        if meta is None:
            raise InstanceNotFoundError(f'Instance "{instance_id}" not found')
        return meta

    def _lock(self, instance_id: str) -> asyncio.Lock:
        """Lock of an existing instance; unknown ids never get an entry."""
        self._require(instance_id)
        return self._locks.get(instance_id)

    def _gateway_port(self, meta: InstanceMeta) -> int:
        """Port the gateway listens on inside the backend unit."""
        return meta.port

    def desired_config(self, settings: InstanceSettings, port: int) -> dict:
        return generate_config(
            settings.api_key,
            settings.model_id,
            settings.channel,
            settings.channel_credentials(),
            port,
            bind=self.gateway_bind,
        )

    # -------------------------------------------------------------------------
    # create
    # -------------------------------------------------------------------------

    async def create(self, instance_id: str, settings: InstanceSettings) -> dict:
        """Record intent: validate, allocate a port, write initial config.

        No backend resource is created here.
        """
        validate_instance_id(instance_id)
        validate_channel(settings.channel)

        async with self._locks.get(instance_id):
            if self._store.get(instance_id) is not None:
                raise ConflictError(f'Instance "{instance_id}" already exists')

            if settings.port is not None:
                validate_port(settings.port)
                if settings.port in self._store.used_ports():
                    raise InvalidArgumentError(f"Port {settings.port} is already in use")
                port = settings.port
            else:
                port = self._store.next_available_port()

            meta = InstanceMeta(
                id=instance_id,
                engine=self.kind,
                port=port,
                config=ConfigSummary(model_id=settings.model_id, channel=settings.channel),
            )
            directory = self._store.instance_dir(instance_id)
            write_instance_config(directory, self.desired_config(settings, self._gateway_port(meta)))
            self._store.save(meta)

        logger.info(
            "Instance created",
            extra={
                "event": LogEvent.INSTANCE_CREATED,
                "instance_id": instance_id,
                "engine": self.kind,
                "port": port,
            },
        )
        return {"port": port}

    # -------------------------------------------------------------------------
    # deploy
    # -------------------------------------------------------------------------

    def deploy_stream(self, instance_id: str, settings: InstanceSettings) -> DeployHandle:
        """Start a deploy task and return its handle.

        Must be called from a running event loop. Failures never raise here;
        they arrive as the terminal -1 event and on handle.completion.
        """
        deploy = self._config.deploy
        channel = ProgressChannel(deploy.progress_buffer)
        context = DeployContext(instance_id, channel, deploy.poll_interval)
        task = asyncio.get_running_loop().create_task(
            self._run_deploy(context, settings),
            name=f"deploy-{instance_id}",
        )
        return DeployHandle(context, channel, task)

    async def _run_deploy(self, ctx: DeployContext, settings: InstanceSettings) -> dict:
        instance_id = ctx.instance_id
        began = time.monotonic()
        result = "failed"
        logger.info(
            "Deploy started",
            extra={"event": LogEvent.DEPLOY_STARTED, "instance_id": instance_id, "engine": self.kind},
        )
        try:
            validate_channel(settings.channel)
            async with self._lock(instance_id):
                try:
                    ctx.check()
                    meta = self._require(instance_id)
                    ctx.progress(0, "Starting deploy...")
                    await self._deploy(ctx, meta, settings)
                except AbortedError:
                    await self._after_abort(instance_id)
                    raise
            ctx.succeed(meta.port)
            result = "success"
            logger.info(
                "Deploy completed",
                extra={"event": LogEvent.DEPLOY_COMPLETED, "instance_id": instance_id, "port": meta.port},
            )
            return {"port": meta.port}
        except AbortedError as e:
            result = "aborted"
            logger.info(
                "Deploy cancelled",
                extra={"event": LogEvent.DEPLOY_CANCELLED, "instance_id": instance_id},
            )
            ctx.fail(e.message)
            raise
        except asyncio.CancelledError:
            result = "aborted"
            ctx.fail("Aborted")
            raise
        except Exception as e:
            if isinstance(e, DeployTimeoutError):
                result = "timeout"
            message = e.message if isinstance(e, NestError) else str(e) or type(e).__name__
            logger.warning(
                "Deploy failed: %s",
                message,
                extra={"event": LogEvent.DEPLOY_FAILED, "instance_id": instance_id, "percent": ctx.percent},
            )
            ctx.fail(message)
            raise
        finally:
            if ctx.dropped:
                logger.info(
                    "Dropped %d progress events for a slow reader",
                    ctx.dropped,
                    extra={"event": LogEvent.PROGRESS_DROPPED, "instance_id": instance_id},
                )
            NEST_DEPLOY_TOTAL.labels(engine=self.kind, result=result).inc()
            NEST_DEPLOY_DURATION.labels(engine=self.kind).observe(time.monotonic() - began)

    async def _after_abort(self, instance_id: str) -> None:
        """Leave the backend unit stopped (not removed) after a cancel."""
        meta = self._store.get(instance_id)
        if meta is None:
            return
        try:
            await self._halt(meta)
        except NestError as e:
            logger.warning(
                "Failed to stop unit after abort: %s",
                e.message,
                extra={"event": LogEvent.CLEANUP_FAILED, "instance_id": instance_id},
            )
        meta = self._store.get(instance_id)
        if meta is not None and meta.status != InstanceState.STOPPED:
            meta.status = InstanceState.STOPPED
            self._store.save(meta)

    def _finalize_config(self, ctx: DeployContext, meta: InstanceMeta, settings: InstanceSettings) -> None:
        """P3: merge desired config onto what onboarding produced."""
        ctx.progress(86, "Applying final configuration...")
        directory = self._store.instance_dir(meta.id)
        generated = self.desired_config(settings, self._gateway_port(meta))
        merged = deep_merge(read_instance_config(directory) or {}, generated)
        if settings.channel:
            plugins = merged.setdefault("plugins", {})
            entries = plugins.setdefault("entries", {})
            entries[settings.channel] = {"enabled": True}
        try:
            write_instance_config(directory, merged)
        except OSError as e:
            ctx.progress(88, f"Warning: failed to apply final config: {e}")
            return
        ctx.progress(90, "Configuration written")

    def _mark_running(self, meta: InstanceMeta) -> None:
        current = self._store.get(meta.id) or meta
        current.status = InstanceState.RUNNING
        self._store.save(current)

    def _mark_stopped(self, meta: InstanceMeta) -> None:
        current = self._store.get(meta.id) or meta
        current.status = InstanceState.STOPPED
        self._store.save(current)

    # -------------------------------------------------------------------------
    # lifecycle
    # -------------------------------------------------------------------------

    async def start(self, instance_id: str) -> OperationResult:
        async with self._lock(instance_id):
            meta = self._require(instance_id)
            result = await self._start_unit(meta)
            self._mark_running(meta)
        logger.info(
            "Instance started",
            extra={"event": LogEvent.INSTANCE_STARTED, "instance_id": instance_id, "status": result.status.value},
        )
        return result

    async def stop(self, instance_id: str) -> OperationResult:
        async with self._lock(instance_id):
            meta = self._require(instance_id)
            result = await self._stop_unit(meta)
            self._mark_stopped(meta)
        logger.info(
            "Instance stopped",
            extra={"event": LogEvent.INSTANCE_STOPPED, "instance_id": instance_id, "status": result.status.value},
        )
        return result

    async def remove(self, instance_id: str) -> None:
        """Stop, tear down, delete data directory, delete metadata."""
        async with self._lock(instance_id):
            meta = self._require(instance_id)

            try:
                await self._stop_unit(meta)
            except NestError as e:
                logger.warning(
                    "Stop before remove failed: %s",
                    e.message,
                    extra={"event": LogEvent.CLEANUP_FAILED, "instance_id": instance_id},
                )
            try:
                await self._teardown_unit(meta)
            except NestError as e:
                logger.warning(
                    "Backend teardown failed: %s",
                    e.message,
                    extra={"event": LogEvent.CLEANUP_FAILED, "instance_id": instance_id},
                )

            shutil.rmtree(self._store.instance_dir(instance_id), ignore_errors=True)
            self._store.delete(instance_id)
        self._locks.discard(instance_id)
        logger.info(
            "Instance removed",
            extra={"event": LogEvent.INSTANCE_REMOVED, "instance_id": instance_id},
        )

    async def status(self, instance_id: str) -> InstanceState:
        """Probe the backend unit and persist any drift.

        While a deploy or other lifecycle call holds the instance lock the
        live value is returned without being persisted.
        """
        meta = self._store.get(instance_id)
        if meta is None:
            return InstanceState.UNKNOWN

        try:
            live = await self._probe_unit(meta)
        except BackendUnavailableError as e:
            logger.warning("Status probe unavailable for %s: %s", instance_id, e.message)
            return InstanceState.UNKNOWN

        if meta.status != live and not self._locks.locked(instance_id):
            current = self._store.get(instance_id)
            if current is not None:
                NEST_STATUS_DRIFT.labels(engine=self.kind).inc()
                logger.info(
                    "Status reconciled",
                    extra={
                        "event": LogEvent.STATUS_RECONCILED,
                        "instance_id": instance_id,
                        "stored": meta.status.value,
                        "live": live.value,
                    },
                )
                current.status = live
                self._store.save(current)
        return live

    async def health(self, instance_id: str) -> bool:
        """Is the gateway inside the backend unit answering on its port."""
        meta = self._store.get(instance_id)
        if meta is None:
            return False
        try:
            address = await self._gateway_address(meta)
        except NestError:
            return False
        if address is None:
            return False
        host, port = address
        return await check_port(port, host=host, timeout=self._config.deploy.probe_timeout)

    async def list(self) -> list[str]:
        """Instance ids owned by this engine."""
        return self._store.ids_for_engine(self.kind)

    async def connect_channel_user(
        self,
        instance_id: str,
        user_id: str,
        channel: str = "telegram",
    ) -> None:
        """Allowlist a channel user and restart the gateway if it is running."""
        async with self._lock(instance_id):
            meta = self._require(instance_id)
            directory = self._store.instance_dir(instance_id)
            current = read_instance_config(directory)
            if current is None:
                raise InstanceNotFoundError(f"Config not found for instance: {instance_id}")
            write_instance_config(directory, allow_channel_user(current, channel, user_id))

            try:
                if await self._probe_unit(meta) == InstanceState.RUNNING:
                    await self._restart_unit(meta)
            except NestError as e:
                logger.warning(
                    "Gateway restart after allowlist change failed: %s",
                    e.message,
                    extra={"event": LogEvent.BACKEND_ERROR, "instance_id": instance_id},
                )
        logger.info(
            "Channel user connected",
            extra={"event": LogEvent.CHANNEL_USER_CONNECTED, "instance_id": instance_id, "channel": channel},
        )

    async def close(self) -> None:
        """Release engine resources."""

    # -------------------------------------------------------------------------
    # backend hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _deploy(self, ctx: DeployContext, meta: InstanceMeta, settings: InstanceSettings) -> None:
        """Run phases P0-P4, persisting status=running on success."""
        ...

    @abstractmethod
    async def _halt(self, meta: InstanceMeta) -> None:
        """Stop any backend unit of a cancelled deploy, keeping it for retry."""
        ...

    @abstractmethod
    async def _start_unit(self, meta: InstanceMeta) -> OperationResult:
        ...

    @abstractmethod
    async def _stop_unit(self, meta: InstanceMeta) -> OperationResult:
        ...

    @abstractmethod
    async def _restart_unit(self, meta: InstanceMeta) -> None:
        ...

    @abstractmethod
    async def _teardown_unit(self, meta: InstanceMeta) -> None:
        """Delete the backend unit; already gone is not an error."""
        ...

    @abstractmethod
    async def _probe_unit(self, meta: InstanceMeta) -> InstanceState:
        """Is the OS process or container alive."""
        ...

    @abstractmethod
    async def _gateway_address(self, meta: InstanceMeta) -> tuple[str, int] | None:
        """Host and port to probe for gateway readiness."""
        ...

    @abstractmethod
    async def logs(
        self,
        instance_id: str,
        tail: int = 200,
        follow: bool = False,
    ) -> AsyncIterator[bytes] | None:
        """Byte stream of unit output, or None when no unit exists yet."""
        ...


async def single_chunk(data: bytes) -> AsyncIterator[bytes]:
    """Wrap a static snapshot as a byte stream."""
    yield data
