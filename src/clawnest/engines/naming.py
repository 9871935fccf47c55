"""Resource naming utilities for engines."""

from pathlib import Path, PurePosixPath

from clawnest.config import NestConfig
from clawnest.store import InstanceStore


class ResourceNaming:
    """Centralized naming conventions for backend resources."""

    def __init__(self, config: NestConfig, store: InstanceStore) -> None:
        self._prefix = config.docker.container_prefix
        self._host_data_path = config.store.host_data_path
        self._store = store

    def container_name(self, instance_id: str) -> str:
        return f"{self._prefix}{instance_id}"

    def instance_dir(self, instance_id: str) -> Path:
        """State directory as seen by this process."""
        return self._store.instance_dir(instance_id)

    def host_instance_dir(self, instance_id: str) -> str:
        """State directory as seen by the Docker host (bind mount source)."""
        if self._host_data_path:
            root = self._host_data_path.replace("\\", "/")
            return str(PurePosixPath(root) / "instances" / instance_id)
        return self.instance_dir(instance_id).as_posix()
