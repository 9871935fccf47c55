"""Integration test fixtures.

Tests in this directory talk to a real Docker daemon and are skipped when
none is reachable.
"""

import uuid
from collections.abc import AsyncGenerator

import pytest

from clawnest.config import DockerConfig
from clawnest.engines.selector import is_docker_available
from clawnest.infra import ContainerAPI, DockerClient, ImageAPI, SystemAPI

TEST_PREFIX = "nest-int-"


@pytest.fixture
async def docker_config() -> DockerConfig:
    config = DockerConfig()
    if not await is_docker_available(config):
        pytest.skip("Docker daemon not reachable")
    return config


@pytest.fixture
def test_prefix() -> str:
    """Unique prefix for test resources, e.g. nest-int-a1b2c3d4-."""
    return f"{TEST_PREFIX}{uuid.uuid4().hex[:8]}-"


@pytest.fixture
async def docker_client(docker_config: DockerConfig) -> AsyncGenerator[DockerClient, None]:
    """Fresh DockerClient per test."""
    client = DockerClient(docker_config)
    yield client
    await client.close()


@pytest.fixture
def container_api(docker_client: DockerClient) -> ContainerAPI:
    return ContainerAPI(docker_client)


@pytest.fixture
def image_api(docker_client: DockerClient) -> ImageAPI:
    return ImageAPI(docker_client)


@pytest.fixture
def system_api(docker_client: DockerClient) -> SystemAPI:
    return SystemAPI(docker_client)
