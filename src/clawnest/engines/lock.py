"""Per-instance locks for lifecycle operations."""

import asyncio


class InstanceLocks:
    """One asyncio.Lock per instance id.

    Serializes create, deploy, start, stop, remove and config edits on the
    same instance so that, for example, a remove waits for a running deploy.
    Owned by the runtime and shared with the selected engine.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, instance_id: str) -> asyncio.Lock:
        if instance_id not in self._locks:
            self._locks[instance_id] = asyncio.Lock()
        return self._locks[instance_id]

    def locked(self, instance_id: str) -> bool:
        lock = self._locks.get(instance_id)
        return lock is not None and lock.locked()

    def discard(self, instance_id: str) -> None:
        """Forget an idle lock (after the instance is removed)."""
        lock = self._locks.get(instance_id)
        if lock is not None and not lock.locked():
            del self._locks[instance_id]
