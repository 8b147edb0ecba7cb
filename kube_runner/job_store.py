from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as redis

from kube_runner.errors import AlreadyExists, ExecutionError
from kube_runner.models import ExecutionRecord, ExecutionStatus, JobResult, JobSpec
from kube_runner.redis_client import get_redis

_ORDER = {
    ExecutionStatus.pending: 0,
    ExecutionStatus.running: 1,
    ExecutionStatus.succeeded: 2,
    ExecutionStatus.failed: 2,
    ExecutionStatus.error: 2,
}


class JobStore:
    """Redis-backed journal of executions, keyed by execution id.

    Status only moves forward; an update that would move a record back to
    an earlier status is dropped.
    """

    def __init__(self, client: redis.Redis | None = None) -> None:
        self.redis = client or get_redis()
        self.key_prefix = "execution:"

    def _key(self, execution_id: str) -> str:
        return f"{self.key_prefix}{execution_id}"

    async def create(
        self,
        execution_id: str,
        spec: JobSpec,
        status: ExecutionStatus = ExecutionStatus.pending,
    ) -> ExecutionRecord:
        """Start a record, replacing a finished one with the same id.

        Raises AlreadyExists while an unfinished record holds the id.
        """
        record = ExecutionRecord(
            id=execution_id,
            spec=spec,
            status=status,
            created_at=self._now(),
        )
        payload = record.model_dump_json()
        if await self.redis.set(self._key(execution_id), payload, nx=True):
            return record
        existing = await self.get(execution_id)
        if not existing.status.finished:
            raise AlreadyExists(
                f"execution {execution_id!r} is still {existing.status.value}",
                execution_id=execution_id,
            )
        await self.redis.set(self._key(execution_id), payload)
        return record

    async def get(self, execution_id: str) -> ExecutionRecord:
        raw = await self.redis.get(self._key(execution_id))
        if raw is None:
            raise KeyError(execution_id)
        return ExecutionRecord.model_validate_json(raw)

    async def mark_running(self, execution_id: str) -> ExecutionRecord:
        return await self._update(
            execution_id, status=ExecutionStatus.running, started_at=self._now()
        )

    async def mark_finished(self, execution_id: str, result: JobResult) -> ExecutionRecord:
        return await self._update(
            execution_id,
            status=ExecutionStatus(result.status),
            finished_at=result.finished_at,
            exit_code=result.exit_code,
            error=result.cleanup_error,
        )

    async def mark_error(self, execution_id: str, exc: ExecutionError) -> ExecutionRecord:
        return await self._update(
            execution_id,
            status=ExecutionStatus.error,
            finished_at=self._now(),
            error_kind=exc.kind,
            error=str(exc),
        )

    async def _update(self, execution_id: str, **kwargs) -> ExecutionRecord:
        record = await self.get(execution_id)
        status = kwargs.get("status")
        if status is not None and _ORDER[status] < _ORDER[record.status]:
            return record
        if record.status.finished and status is not None:
            return record
        record = record.model_copy(update=kwargs)
        await self.redis.set(self._key(execution_id), record.model_dump_json())
        return record

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)
