"""Failures surfaced to callers of the runner.

Every error a cluster call can produce is mapped onto exactly one of these
before it leaves ``run_job`` or ``delete_object``.
"""

from __future__ import annotations


class ExecutionError(Exception):
    kind = "error"

    def __init__(self, message: str, *, execution_id: str | None = None) -> None:
        super().__init__(message)
        self.execution_id = execution_id
        # Set by the runner when the cleanup step failed after this error.
        self.cleanup_error: DeleteFailed | None = None


class InvalidSpec(ExecutionError):
    kind = "invalid_spec"


class SchedulingFailed(ExecutionError):
    kind = "scheduling_failed"

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message, execution_id=execution_id)
        self.reason = reason


class ExecutionTimeout(ExecutionError):
    kind = "timeout"

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        timeout_sec: float | None = None,
    ) -> None:
        super().__init__(message, execution_id=execution_id)
        self.timeout_sec = timeout_sec


class Canceled(ExecutionError):
    kind = "canceled"


class LogUnavailable(ExecutionError):
    kind = "log_unavailable"


class DeleteFailed(ExecutionError):
    kind = "delete_failed"


class AlreadyExists(ExecutionError):
    kind = "already_exists"


class ClusterApiError(Exception):
    """Normalized failure of a cluster call.

    ``status`` is the HTTP status of the API response, or ``None`` when the
    API could not be reached at all.
    """

    def __init__(
        self, status: int | None, reason: str = "", body: str | None = None
    ) -> None:
        super().__init__(f"cluster api error {status}: {reason}")
        self.status = status
        self.reason = reason
        self.body = body or ""

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def conflict(self) -> bool:
        return self.status == 409

    @property
    def transient(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500
