from __future__ import annotations

import redis.asyncio as redis

from kube_runner.models import JobResult
from kube_runner.redis_client import get_redis


class OutputStore:
    """Keeps the collected output of finished executions around for a while.

    One Redis hash per execution holds the output next to the outcome it
    belongs to, so a reader never sees output without knowing how the
    execution ended. Entries expire after ``retention_sec``.
    """

    def __init__(self, client: redis.Redis | None = None, retention_sec: int = 86400) -> None:
        self.redis = client or get_redis()
        self.retention_sec = retention_sec

    @staticmethod
    def _key(execution_id: str) -> str:
        return f"output:{execution_id}"

    async def save(self, result: JobResult) -> None:
        key = self._key(result.execution_id)
        await self.redis.hset(  # type: ignore[misc]
            key,
            mapping={
                "output": result.output,
                "status": result.status,
                "exit_code": "" if result.exit_code is None else str(result.exit_code),
                "exec_time": f"{result.exec_time:.3f}",
                "finished_at": result.finished_at.isoformat(),
            },
        )
        await self.redis.expire(key, self.retention_sec)

    async def text(self, execution_id: str) -> str | None:
        """Output of ``execution_id``, or None once it has expired."""
        value = await self.redis.hget(self._key(execution_id), "output")  # type: ignore[misc]
        return None if value is None else _decode(value)

    async def outcome(self, execution_id: str) -> dict[str, str]:
        raw = await self.redis.hgetall(self._key(execution_id))  # type: ignore[misc]
        return {_decode(k): _decode(v) for k, v in raw.items() if _decode(k) != "output"}

    async def forget(self, execution_id: str) -> bool:
        return bool(await self.redis.delete(self._key(execution_id)))


def _decode(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value
