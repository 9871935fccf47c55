"""Unit tests for DockerEngine.

Docker API calls are mocked; the gateway port probe is patched.
"""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from clawnest.config import DockerConfig, NestConfig
from clawnest.configure import InstanceSettings, read_instance_config
from clawnest.engines.docker import (
    POLICY_PERSISTENT,
    POLICY_TRANSIENT,
    DockerEngine,
    entrypoint_script,
    ping,
)
from clawnest.engines.lock import InstanceLocks
from clawnest.engines.result import OperationStatus
from clawnest.errors import (
    AbortedError,
    BackendError,
    BackendUnavailableError,
    DeployTimeoutError,
)
from clawnest.infra import ContainerConfig
from clawnest.store import InstanceState, InstanceStore

CONTAINER_ID = "c0ffee0123456789"


async def _aiter(items: list) -> AsyncIterator:
    for item in items:
        yield item


def _running(ip: str = "172.20.0.5", network: str = "nest-net") -> dict:
    return {
        "Id": CONTAINER_ID,
        "State": {"Running": True, "ExitCode": 0},
        "NetworkSettings": {"Networks": {network: {"IPAddress": ip}}},
    }


@pytest.fixture(autouse=True)
def not_in_container(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("clawnest.engines.docker.DOCKERENV", tmp_path / "no-dockerenv")


@pytest.fixture
def port_probe(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    probe = AsyncMock(return_value=True)
    monkeypatch.setattr("clawnest.engines.docker.check_port", probe)
    return probe


@pytest.fixture
def containers(mock_container_api: AsyncMock) -> dict[str, dict]:
    """Backing state for the mocked ContainerAPI, keyed by id or name."""
    state: dict[str, dict] = {}

    async def inspect(ref: str) -> dict | None:
        return state.get(ref)

    async def create(config: ContainerConfig) -> str:
        state[CONTAINER_ID] = _running()
        return CONTAINER_ID

    mock_container_api.inspect = AsyncMock(side_effect=inspect)
    mock_container_api.create = AsyncMock(side_effect=create)
    return state


@pytest.fixture
def engine(
    nest_config: NestConfig,
    store: InstanceStore,
    locks: InstanceLocks,
    mock_docker_client: AsyncMock,
    mock_container_api: AsyncMock,
    mock_image_api: AsyncMock,
    mock_system_api: AsyncMock,
) -> DockerEngine:
    mock_image_api.pull = MagicMock(side_effect=lambda ref: _aiter([{"status": "Pulling fs layer"}]))
    return DockerEngine(
        nest_config,
        store,
        locks,
        client=mock_docker_client,
        containers=mock_container_api,
        images=mock_image_api,
        system=mock_system_api,
    )


async def _deploy(engine: DockerEngine, settings: InstanceSettings):
    handle = engine.deploy_stream("bot1", settings)
    events = [event async for event in handle.events()]
    return handle, events


class TestEntrypoint:
    def test_onboards_only_without_marker(self) -> None:
        script = entrypoint_script(28789)
        assert 'if [ ! -f "/root/.openclaw/.nest-onboarded" ]' in script
        assert "--gateway-port 28789" in script
        assert script.endswith("exec openclaw gateway run --port 28789")


class TestCreate:
    async def test_config_uses_container_port_and_lan_bind(
        self, engine: DockerEngine, settings: InstanceSettings
    ) -> None:
        assert await engine.create("bot1", settings) == {"port": 18790}

        config = read_instance_config(engine.store.instance_dir("bot1"))
        assert config["gateway"]["port"] == 28789
        assert config["gateway"]["bind"] == "lan"


class TestDeploy:
    async def test_success(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_container_api: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)

        handle, events = await _deploy(engine, settings)

        assert await handle.wait() == {"port": 18790}
        assert events[-1].done and events[-1].port == 18790
        percents = [e.percent for e in events]
        assert percents == sorted(percents)

        config: ContainerConfig = mock_container_api.create.call_args.args[0]
        assert config.name == "oc-bot1"
        assert config.image == "openclaw/openclaw:test"
        assert config.host_config.port_bindings == {"28789/tcp": 18790}
        assert config.host_config.restart_policy == POLICY_TRANSIENT
        assert config.host_config.binds[0].endswith("/instances/bot1:/root/.openclaw")

        mock_container_api.start.assert_awaited_once_with(CONTAINER_ID)
        mock_container_api.restart.assert_awaited_once()
        mock_container_api.update_restart_policy.assert_awaited_once_with(CONTAINER_ID, POLICY_PERSISTENT)
        port_probe.assert_awaited_with(18790, host="127.0.0.1", timeout=0.1)

        meta = engine.store.get("bot1")
        assert meta.status == InstanceState.RUNNING
        assert meta.backend_handle == CONTAINER_ID

        final = read_instance_config(engine.store.instance_dir("bot1"))
        assert final["plugins"]["entries"]["telegram"] == {"enabled": True}

    async def test_removes_stale_container(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_container_api: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)
        containers["oc-bot1"] = {"State": {"Running": True}}

        handle, _ = await _deploy(engine, settings)
        await handle.wait()

        mock_container_api.stop.assert_any_await("oc-bot1", timeout=5)
        mock_container_api.remove.assert_any_await("oc-bot1", force=True)

    async def test_timeout(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)
        port_probe.return_value = False

        handle, events = await _deploy(engine, settings)

        assert events[-1].percent == -1
        assert events[-1].message == "Gateway did not become reachable within 0.3s (onboarding)"
        with pytest.raises(DeployTimeoutError):
            await handle.wait()
        assert engine.store.get("bot1").status == InstanceState.STOPPED

    async def test_container_exits_during_onboarding(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_container_api: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)

        async def create(config: ContainerConfig) -> str:
            containers[CONTAINER_ID] = {"State": {"Running": False, "ExitCode": 1}}
            return CONTAINER_ID

        mock_container_api.create.side_effect = create

        handle, events = await _deploy(engine, settings)

        assert events[-1].error
        assert "exited with code 1 during onboarding" in events[-1].message
        with pytest.raises(BackendError):
            await handle.wait()

    async def test_cancel_stops_container(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_container_api: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)
        port_probe.return_value = False
        handle = engine.deploy_stream("bot1", settings)

        async for event in handle.events():
            if event.percent >= 30:
                handle.cancel()
                break

        with pytest.raises(AbortedError):
            await handle.wait()
        mock_container_api.stop.assert_any_await(CONTAINER_ID, timeout=2)
        mock_container_api.remove.assert_not_awaited()
        assert engine.store.get("bot1").status == InstanceState.STOPPED

    async def test_cancel_during_pull_never_creates_container(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_container_api: AsyncMock,
        mock_image_api: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)
        released = asyncio.Event()

        async def slow_pull(ref: str) -> AsyncIterator[dict]:
            yield {"status": "Pulling fs layer"}
            await released.wait()
            yield {"status": "Downloading", "progress": "[=>   ]"}
            yield {"status": "Download complete"}

        mock_image_api.pull = MagicMock(side_effect=slow_pull)
        handle = engine.deploy_stream("bot1", settings)

        async for event in handle.events():
            if event.message.startswith("Pulling fs layer"):
                handle.cancel()
                released.set()
                break

        with pytest.raises(AbortedError):
            await handle.wait()
        mock_container_api.create.assert_not_awaited()
        mock_container_api.start.assert_not_awaited()
        assert engine.store.get("bot1").status == InstanceState.STOPPED
        assert await engine.status("bot1") == InstanceState.STOPPED

    async def test_pull_failure_uses_local_image(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_image_api: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)

        async def failing_pull(ref: str) -> AsyncIterator[dict]:
            raise BackendError("Image pull failed: registry unreachable")
            yield {}

        mock_image_api.pull = MagicMock(side_effect=failing_pull)
        mock_image_api.exists.return_value = True

        handle, events = await _deploy(engine, settings)

        assert await handle.wait() == {"port": 18790}
        assert any("using local image" in e.message for e in events)

    async def test_pull_failure_without_local_image(
        self,
        engine: DockerEngine,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_image_api: AsyncMock,
        mock_container_api: AsyncMock,
    ) -> None:
        await engine.create("bot1", settings)

        async def failing_pull(ref: str) -> AsyncIterator[dict]:
            raise BackendError("Image pull failed: not found")
            yield {}

        mock_image_api.pull = MagicMock(side_effect=failing_pull)
        mock_image_api.exists.return_value = False

        handle, events = await _deploy(engine, settings)

        assert events[-1].error
        with pytest.raises(BackendError):
            await handle.wait()
        mock_container_api.create.assert_not_awaited()

    async def test_sibling_topology_probes_container_ip(
        self,
        nest_config: NestConfig,
        store: InstanceStore,
        settings: InstanceSettings,
        containers: dict,
        port_probe: AsyncMock,
        mock_docker_client: AsyncMock,
        mock_container_api: AsyncMock,
        mock_image_api: AsyncMock,
    ) -> None:
        config = nest_config.model_copy(
            update={"docker": DockerConfig(network="nest-net", image="openclaw/openclaw:test")}
        )
        mock_image_api.pull = MagicMock(side_effect=lambda ref: _aiter([]))
        engine = DockerEngine(
            config,
            store,
            client=mock_docker_client,
            containers=mock_container_api,
            images=mock_image_api,
        )
        await engine.create("bot1", settings)

        handle, _ = await _deploy(engine, settings)
        await handle.wait()

        created: ContainerConfig = mock_container_api.create.call_args.args[0]
        assert created.host_config.network_mode == "nest-net"
        port_probe.assert_awaited_with(28789, host="172.20.0.5", timeout=0.1)


class TestLifecycle:
    async def test_start_without_container(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict
    ) -> None:
        await engine.create("bot1", settings)
        with pytest.raises(BackendError, match="deploy it first"):
            await engine.start("bot1")

    async def test_start_already_running(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict, mock_container_api: AsyncMock
    ) -> None:
        await engine.create("bot1", settings)
        containers["oc-bot1"] = {"State": {"Running": True}}

        result = await engine.start("bot1")

        assert result.status == OperationStatus.ALREADY_RUNNING
        mock_container_api.start.assert_not_awaited()
        assert engine.store.get("bot1").status == InstanceState.RUNNING

    async def test_stop_running(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict, mock_container_api: AsyncMock
    ) -> None:
        await engine.create("bot1", settings)
        containers["oc-bot1"] = {"State": {"Running": True}}

        result = await engine.stop("bot1")

        assert result.status == OperationStatus.COMPLETED
        mock_container_api.stop.assert_awaited_once_with("oc-bot1", timeout=10)
        assert engine.store.get("bot1").status == InstanceState.STOPPED

    async def test_stop_missing_container(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict
    ) -> None:
        await engine.create("bot1", settings)
        result = await engine.stop("bot1")
        assert result.status == OperationStatus.ALREADY_STOPPED

    async def test_remove_after_out_of_band_delete(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict, mock_container_api: AsyncMock
    ) -> None:
        await engine.create("bot1", settings)
        meta = engine.store.get("bot1")
        meta.backend_handle = CONTAINER_ID
        engine.store.save(meta)

        await engine.remove("bot1")

        mock_container_api.remove.assert_any_await(CONTAINER_ID, force=True)
        mock_container_api.remove.assert_any_await("oc-bot1", force=True)
        assert engine.store.get("bot1") is None
        assert not engine.store.instance_dir("bot1").exists()

    async def test_remove_tolerates_backend_errors(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict, mock_container_api: AsyncMock
    ) -> None:
        await engine.create("bot1", settings)
        mock_container_api.remove.side_effect = BackendError("driver failed")

        await engine.remove("bot1")

        assert engine.store.get("bot1") is None


class TestStatus:
    async def test_drift_to_stopped(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict
    ) -> None:
        await engine.create("bot1", settings)
        meta = engine.store.get("bot1")
        meta.status = InstanceState.RUNNING
        meta.backend_handle = CONTAINER_ID
        engine.store.save(meta)

        assert await engine.status("bot1") == InstanceState.STOPPED
        assert engine.store.get("bot1").status == InstanceState.STOPPED

    async def test_daemon_unreachable(
        self, engine: DockerEngine, settings: InstanceSettings, mock_container_api: AsyncMock
    ) -> None:
        await engine.create("bot1", settings)
        mock_container_api.inspect.side_effect = BackendUnavailableError("daemon down")

        assert await engine.status("bot1") == InstanceState.UNKNOWN


class TestLogs:
    async def test_no_container_yet(self, engine: DockerEngine, settings: InstanceSettings) -> None:
        await engine.create("bot1", settings)
        assert await engine.logs("bot1") is None
        assert await engine.logs("ghost") is None

    async def test_snapshot(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict, mock_container_api: AsyncMock
    ) -> None:
        await engine.create("bot1", settings)
        meta = engine.store.get("bot1")
        meta.backend_handle = CONTAINER_ID
        engine.store.save(meta)
        containers[CONTAINER_ID] = _running()
        mock_container_api.logs.return_value = b"gateway listening\n"

        stream = await engine.logs("bot1", tail=50)

        assert [chunk async for chunk in stream] == [b"gateway listening\n"]
        mock_container_api.logs.assert_awaited_once_with(CONTAINER_ID, tail=50)

    async def test_follow(
        self, engine: DockerEngine, settings: InstanceSettings, containers: dict, mock_container_api: AsyncMock
    ) -> None:
        await engine.create("bot1", settings)
        meta = engine.store.get("bot1")
        meta.backend_handle = CONTAINER_ID
        engine.store.save(meta)
        containers[CONTAINER_ID] = _running()
        mock_container_api.follow_logs = MagicMock(return_value=_aiter([b"a\n", b"b\n"]))

        stream = await engine.logs("bot1", follow=True)

        assert [chunk async for chunk in stream] == [b"a\n", b"b\n"]


class TestDaemon:
    async def test_info(self, engine: DockerEngine) -> None:
        assert await engine.info() == {
            "serverVersion": "26.1.0",
            "os": "Docker Desktop",
            "containers": 3,
            "containersRunning": 1,
        }

    async def test_ping_unreachable(self, monkeypatch: pytest.MonkeyPatch, mock_docker_client: AsyncMock) -> None:
        version = AsyncMock(side_effect=BackendUnavailableError("refused"))
        monkeypatch.setattr("clawnest.engines.docker.SystemAPI.version", version)
        assert await ping(mock_docker_client) is False

    async def test_close(self, engine: DockerEngine, mock_docker_client: AsyncMock) -> None:
        await engine.close()
        mock_docker_client.close.assert_awaited_once()
