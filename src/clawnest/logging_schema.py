"""Log event types for structured logging."""

from enum import StrEnum


class LogEvent(StrEnum):
    """Log event types for clawnest.

    Used with logger.info/warning/error extra dict:
        logger.info("message", extra={"event": LogEvent.DEPLOY_STARTED, ...})
    """

    # Runtime lifecycle
    RUNTIME_STARTED = "runtime_started"
    RUNTIME_STOPPED = "runtime_stopped"
    ENGINE_SELECTED = "engine_selected"

    # Instance events
    INSTANCE_CREATED = "instance_created"
    INSTANCE_STARTED = "instance_started"
    INSTANCE_STOPPED = "instance_stopped"
    INSTANCE_REMOVED = "instance_removed"
    STATUS_RECONCILED = "status_reconciled"
    CHANNEL_USER_CONNECTED = "channel_user_connected"

    # Deploy events
    DEPLOY_STARTED = "deploy_started"
    DEPLOY_PHASE = "deploy_phase"
    DEPLOY_COMPLETED = "deploy_completed"
    DEPLOY_FAILED = "deploy_failed"
    DEPLOY_CANCELLED = "deploy_cancelled"
    PROGRESS_DROPPED = "progress_dropped"

    # Backend unit events
    CONTAINER_CREATED = "container_created"
    CONTAINER_STARTED = "container_started"
    CONTAINER_STOPPED = "container_stopped"
    CONTAINER_REMOVED = "container_removed"
    IMAGE_PULLED = "image_pulled"
    IMAGE_PULL_FAILED = "image_pull_failed"
    PROCESS_SPAWNED = "process_spawned"
    PROCESS_EXITED = "process_exited"
    PROCESS_RESTARTED = "process_restarted"

    # Ticket events
    TICKET_ISSUED = "ticket_issued"
    TICKETS_SWEPT = "tickets_swept"

    # Error events
    BACKEND_ERROR = "backend_error"
    CLEANUP_FAILED = "cleanup_failed"
