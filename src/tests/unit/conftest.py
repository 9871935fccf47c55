"""Fixtures for clawnest unit tests."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from clawnest.config import DeployConfig, DockerConfig, NestConfig, StoreConfig
from clawnest.configure import InstanceSettings
from clawnest.engines.lock import InstanceLocks
from clawnest.infra import ContainerAPI, DockerClient, ImageAPI, SystemAPI
from clawnest.store import InstanceStore


@pytest.fixture
def nest_config(tmp_path: Path) -> NestConfig:
    """Config rooted at tmp_path with short deploy bounds."""
    return NestConfig(
        store=StoreConfig(data_dir=tmp_path),
        docker=DockerConfig(network=None, image="openclaw/openclaw:test"),
        deploy=DeployConfig(
            onboard_timeout=0.3,
            apply_timeout=0.3,
            poll_interval=0.05,
            probe_timeout=0.1,
            progress_buffer=256,
        ),
    )


@pytest.fixture
def store(nest_config: NestConfig) -> InstanceStore:
    return InstanceStore(nest_config.store.resolve_data_dir())


@pytest.fixture
def locks() -> InstanceLocks:
    return InstanceLocks()


@pytest.fixture
def settings() -> InstanceSettings:
    return InstanceSettings(
        api_key="sk-test",
        model_id="claude-sonnet-4-5-20250929",
        channel="telegram",
        bot_token="123:abc",
    )


@pytest.fixture
def mock_docker_client() -> AsyncMock:
    """Mock DockerClient for testing."""
    client = AsyncMock(spec=DockerClient)
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_container_api() -> AsyncMock:
    """Mock ContainerAPI for testing."""
    api = AsyncMock(spec=ContainerAPI)
    api.inspect = AsyncMock(return_value=None)
    api.create = AsyncMock(return_value="c0ffee0123456789")
    api.start = AsyncMock()
    api.stop = AsyncMock()
    api.restart = AsyncMock()
    api.remove = AsyncMock()
    api.update_restart_policy = AsyncMock()
    api.logs = AsyncMock(return_value=b"")
    return api


@pytest.fixture
def mock_image_api() -> AsyncMock:
    """Mock ImageAPI for testing."""
    api = AsyncMock(spec=ImageAPI)
    api.exists = AsyncMock(return_value=True)
    return api


@pytest.fixture
def mock_system_api() -> AsyncMock:
    """Mock SystemAPI for testing."""
    api = AsyncMock(spec=SystemAPI)
    api.version = AsyncMock(return_value={"ApiVersion": "1.45", "Version": "26.1.0"})
    api.info = AsyncMock(
        return_value={
            "ServerVersion": "26.1.0",
            "OperatingSystem": "Docker Desktop",
            "Containers": 3,
            "ContainersRunning": 1,
        }
    )
    return api
