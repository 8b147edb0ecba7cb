from kube_runner.errors import (
    AlreadyExists,
    Canceled,
    DeleteFailed,
    ExecutionError,
    ExecutionTimeout,
    InvalidSpec,
    LogUnavailable,
    SchedulingFailed,
)
from kube_runner.models import JobResult, JobSpec
from kube_runner.runner import KubeRunner, delete_object, run_job
from kube_runner.settings import Settings

__all__ = [
    "AlreadyExists",
    "Canceled",
    "DeleteFailed",
    "ExecutionError",
    "ExecutionTimeout",
    "InvalidSpec",
    "JobResult",
    "JobSpec",
    "KubeRunner",
    "LogUnavailable",
    "SchedulingFailed",
    "Settings",
    "delete_object",
    "run_job",
]
