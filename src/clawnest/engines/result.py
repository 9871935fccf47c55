"""Operation result types for lifecycle calls."""

from enum import Enum

from pydantic import BaseModel


class OperationStatus(str, Enum):
    """Operation status values."""

    COMPLETED = "completed"
    ALREADY_RUNNING = "already_running"
    ALREADY_STOPPED = "already_stopped"


class OperationResult(BaseModel):
    """Result of start/stop.

    start and stop are idempotent: a backend unit that is already in the
    requested state is reported as success with an ALREADY_* status.
    """

    status: OperationStatus
    message: str = ""

    @property
    def is_success(self) -> bool:
        """Check if operation completed or was already in desired state."""
        return self.status in (
            OperationStatus.COMPLETED,
            OperationStatus.ALREADY_RUNNING,
            OperationStatus.ALREADY_STOPPED,
        )
