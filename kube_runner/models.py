from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class JobSpec(BaseModel):
    """What to run: an image and the shell commands to run inside it."""

    model_config = ConfigDict(frozen=True)

    image: str
    commands: tuple[str, ...] = Field(default_factory=tuple)
    env: dict[str, str] = Field(default_factory=dict)
    timeout_sec: int | None = Field(default=None, gt=0, le=3600)


class PodPhase(str, Enum):
    pending = "Pending"
    running = "Running"
    succeeded = "Succeeded"
    failed = "Failed"
    scheduling_failed = "SchedulingFailed"

    @property
    def terminal(self) -> bool:
        return self in (
            PodPhase.succeeded,
            PodPhase.failed,
            PodPhase.scheduling_failed,
        )

    @property
    def rank(self) -> int:
        return _PHASE_RANK[self]


_PHASE_RANK = {
    PodPhase.pending: 0,
    PodPhase.running: 1,
    PodPhase.succeeded: 2,
    PodPhase.failed: 2,
    PodPhase.scheduling_failed: 2,
}


class PodSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    image: str
    command: tuple[str, ...]
    container: str = "runner"
    env: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    restart_policy: Literal["Never"] = "Never"
    active_deadline_sec: int | None = None


class PodStatus(BaseModel):
    """Snapshot of a pod as reported by the cluster.

    ``phase`` is the raw pod phase string. ``waiting_reason`` and
    ``unschedulable`` carry the signals that turn a Pending pod into a
    scheduling failure.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    phase: str = "Pending"
    reason: str | None = None
    waiting_reason: str | None = None
    terminated_reason: str | None = None
    message: str | None = None
    exit_code: int | None = None
    unschedulable: bool = False


class PodRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    namespace: str
    created_at: datetime | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_id: str
    namespace: str
    status: Literal["succeeded", "failed"]
    output: str = ""
    exit_code: int | None = None
    started_at: datetime
    finished_at: datetime
    exec_time: float = 0.0
    cleanup_error: str | None = None


class ExecutionStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    error = "error"

    @property
    def finished(self) -> bool:
        return self in (
            ExecutionStatus.succeeded,
            ExecutionStatus.failed,
            ExecutionStatus.error,
        )


class ExecutionRecord(BaseModel):
    id: str
    spec: JobSpec
    status: ExecutionStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    error_kind: str | None = None
    error: str | None = None


class QueuedExecution(BaseModel):
    execution_id: str
    request: JobSpec
