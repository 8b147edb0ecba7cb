from __future__ import annotations

import asyncio
import logging

import redis.asyncio as redis

from kube_runner.errors import ExecutionError
from kube_runner.models import JobSpec, QueuedExecution
from kube_runner.naming import new_execution_id
from kube_runner.redis_client import get_redis
from kube_runner.runner import KubeRunner

logger = logging.getLogger(__name__)


class ExecutionQueue:
    """FIFO of execution requests waiting for a worker (LPUSH + BRPOP)."""

    def __init__(self, client: redis.Redis | None = None, name: str = "executions") -> None:
        self.redis = client or get_redis()
        self.key = f"queue:{name}"

    async def push(self, request: JobSpec, execution_id: str | None = None) -> str:
        item = QueuedExecution(
            execution_id=execution_id or new_execution_id("ci"),
            request=request,
        )
        await self.redis.lpush(self.key, item.model_dump_json())  # type: ignore[misc]
        return item.execution_id

    async def pop(self, timeout: int = 1) -> QueuedExecution | None:
        popped = await self.redis.brpop([self.key], timeout=timeout)  # type: ignore[misc]
        if popped is None:
            return None
        _, raw = popped
        return QueuedExecution.model_validate_json(raw)

    async def size(self) -> int:
        return await self.redis.llen(self.key)  # type: ignore[misc]


class Worker:
    """Pulls queued executions and runs up to ``concurrency`` at a time."""

    def __init__(self, runner: KubeRunner, queue: ExecutionQueue, concurrency: int = 4) -> None:
        self.runner = runner
        self.queue = queue
        self.slots = asyncio.Semaphore(concurrency)
        self.tasks: set[asyncio.Task] = set()
        self.stopping = asyncio.Event()

    async def run_forever(self) -> None:
        logger.info("Worker started")
        try:
            while not self.stopping.is_set():
                await self.slots.acquire()
                item = await self.queue.pop()
                if item is None:
                    self.slots.release()
                    continue
                task = asyncio.create_task(self._run(item))
                self.tasks.add(task)
                task.add_done_callback(self.tasks.discard)
        finally:
            await self.drain()
            logger.info("Worker stopped")

    async def drain(self) -> None:
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

    def stop(self) -> None:
        self.stopping.set()

    async def _run(self, item: QueuedExecution) -> None:
        try:
            result = await self.runner.run_job(item.request, item.execution_id)
            logger.info("Execution %s finished: %s", item.execution_id, result.status)
        except ExecutionError as exc:
            logger.warning("Execution %s ended with %s", item.execution_id, exc.kind)
        except Exception:
            logger.exception("Execution %s crashed", item.execution_id)
        finally:
            self.slots.release()
