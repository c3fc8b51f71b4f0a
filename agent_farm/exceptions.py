"""Custom exceptions for Agent Farm."""

from __future__ import annotations


class FarmError(Exception):
    """Base exception for Agent Farm."""

    code = "FARM_ERROR"

    def __init__(self, message: str, status_code: int = 500, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if code is not None:
            self.code = code


class ConfigurationError(FarmError):
    """Raised when there's a configuration error."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=500)


class ValidationError(FarmError):
    """Raised when a submitted task or feedback item is malformed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=400)


class ClusterNotFoundError(FarmError):
    """Raised when a cluster is not registered."""

    code = "CLUSTER_NOT_FOUND"

    def __init__(self, cluster_id: str) -> None:
        super().__init__(f"Cluster not found: {cluster_id}", status_code=404)
        self.cluster_id = cluster_id


class WorkerNotFoundError(FarmError):
    """Raised when a worker is not registered."""

    code = "WORKER_NOT_FOUND"

    def __init__(self, worker_id: str) -> None:
        super().__init__(f"Worker not found: {worker_id}", status_code=404)
        self.worker_id = worker_id


class TaskNotFoundError(FarmError):
    """Raised when a task id is unknown."""

    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", status_code=404)
        self.task_id = task_id


class WorkerBusyError(FarmError):
    """Raised when removing a worker that still has work."""

    code = "WORKER_BUSY"

    def __init__(self, worker_id: str) -> None:
        super().__init__(f"Worker {worker_id} is not idle", status_code=409)
        self.worker_id = worker_id


class CapacityError(FarmError):
    """Raised when a cluster or worker has no room left."""

    code = "CAPACITY_EXCEEDED"

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=409)


class ExecutionError(FarmError):
    """Raised by an execution adapter when a task attempt fails."""

    code = "EXECUTION_ERROR"

    def __init__(self, message: str, code: str | None = None, status_code: int = 502) -> None:
        super().__init__(message, status_code=status_code, code=code)


class TaskFailedError(FarmError):
    """A task exhausted its retries."""

    code = "RETRIES_EXHAUSTED"

    def __init__(self, task_id: str, message: str, retry_count: int) -> None:
        super().__init__(
            f"Task {task_id} failed after {retry_count} attempts: {message}",
            status_code=500,
        )
        self.task_id = task_id
        self.last_error = message
        self.retry_count = retry_count
