"""Persisted instance registry and port allocator.

The registry is a single JSON document mapping instance id to metadata.
Every mutation reads the whole file and rewrites it; there is no
record-level locking, so the last writer wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class InstanceState(str, Enum):
    """Instance status values."""

    STOPPED = "stopped"
    RUNNING = "running"
    UNKNOWN = "unknown"


class ConfigSummary(BaseModel):
    """Config summary kept alongside metadata (no credentials)."""

    model_config = ConfigDict(populate_by_name=True)

    model_id: str | None = Field(default=None, alias="modelId")
    channel: str | None = None


class InstanceMeta(BaseModel):
    """Persisted instance metadata record."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    engine: str
    port: int
    backend_handle: str | None = Field(default=None, alias="backendHandle")
    config: ConfigSummary = Field(default_factory=ConfigSummary)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        alias="createdAt",
    )
    status: InstanceState = InstanceState.STOPPED

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class InstanceStore:
    """Flat id -> metadata registry backed by one JSON file."""

    def __init__(self, data_dir: Path, store_file: str = "instances.json", base_port: int = 18790) -> None:
        self._data_dir = Path(data_dir)
        self._path = self._data_dir / store_file
        self._base_port = base_port

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def path(self) -> Path:
        return self._path

    def instance_dir(self, instance_id: str) -> Path:
        """Instance-private state directory."""
        return self._data_dir / "instances" / instance_id

    def _load_raw(self) -> dict[str, dict]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("Unreadable instance store, treating as empty: %s", e)
            return {}
        if not isinstance(data, dict):
            return {}
        return data

    def _save_raw(self, data: dict[str, dict]) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._data_dir, prefix=".instances-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def all(self) -> dict[str, InstanceMeta]:
        """All instances, skipping records that fail validation."""
        result: dict[str, InstanceMeta] = {}
        for instance_id, record in self._load_raw().items():
            try:
                result[instance_id] = InstanceMeta.model_validate(record)
            except ValidationError as e:
                logger.warning("Skipping malformed record %s: %s", instance_id, e)
        return result

    def get(self, instance_id: str) -> InstanceMeta | None:
        record = self._load_raw().get(instance_id)
        if record is None:
            return None
        return InstanceMeta.model_validate(record)

    def save(self, meta: InstanceMeta) -> None:
        """Insert or replace a record."""
        data = self._load_raw()
        data[meta.id] = meta.to_record()
        self._save_raw(data)

    def delete(self, instance_id: str) -> None:
        data = self._load_raw()
        if data.pop(instance_id, None) is not None:
            self._save_raw(data)

    def ids_for_engine(self, engine: str) -> list[str]:
        return [
            instance_id
            for instance_id, record in self._load_raw().items()
            if isinstance(record, dict) and record.get("engine") == engine
        ]

    def used_ports(self) -> set[int]:
        ports: set[int] = set()
        for record in self._load_raw().values():
            if isinstance(record, dict) and isinstance(record.get("port"), int):
                ports.add(record["port"])
        return ports

    def next_available_port(self, base_port: int | None = None) -> int:
        """First port at or above the base that no stored instance uses.

        Nothing is reserved: two calls without saving a new instance in
        between return the same port.
        """
        used = self.used_ports()
        port = base_port or self._base_port
        while port in used:
            port += 1
        return port
