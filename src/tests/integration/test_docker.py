"""Integration tests for the Docker infrastructure module."""

import pytest

from clawnest.infra import ContainerAPI, ContainerConfig, HostConfig, ImageAPI, SystemAPI

TEST_IMAGE = "busybox:latest"


@pytest.mark.integration
class TestSystemAPI:
    async def test_version(self, system_api: SystemAPI) -> None:
        version = await system_api.version()
        assert "ApiVersion" in version


@pytest.mark.integration
class TestContainerAPI:
    """ContainerAPI integration tests."""

    @pytest.fixture(autouse=True)
    async def image(self, image_api: ImageAPI) -> None:
        if not await image_api.exists(TEST_IMAGE):
            async for _ in image_api.pull(TEST_IMAGE):
                pass

    async def test_container_lifecycle(self, container_api: ContainerAPI, test_prefix: str) -> None:
        """Create, start, log, restart policy update, stop, remove."""
        name = f"{test_prefix}echo"
        config = ContainerConfig(
            image=TEST_IMAGE,
            name=name,
            cmd=["sh", "-c", "echo ready; sleep 60"],
            labels={"clawnest.test": "true"},
            host_config=HostConfig(restart_policy="no"),
        )

        container_id = await container_api.create(config)
        try:
            await container_api.start(container_id)
            info = await container_api.inspect(container_id)
            assert info is not None
            assert info["State"]["Running"] is True

            await container_api.update_restart_policy(container_id, "unless-stopped")
            info = await container_api.inspect(container_id)
            assert info["HostConfig"]["RestartPolicy"]["Name"] == "unless-stopped"

            logs = await container_api.logs(container_id, tail=10)
            assert logs is not None

            await container_api.stop(container_id, timeout=1)
            await container_api.stop(container_id, timeout=1)
            info = await container_api.inspect(container_id)
            assert info["State"]["Running"] is False
        finally:
            await container_api.remove(container_id)

        assert await container_api.inspect(container_id) is None
        await container_api.remove(container_id)

    async def test_inspect_missing(self, container_api: ContainerAPI, test_prefix: str) -> None:
        assert await container_api.inspect(f"{test_prefix}missing") is None
