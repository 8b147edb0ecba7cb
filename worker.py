import asyncio

from kube_runner.cluster import get_cluster
from kube_runner.job_store import JobStore
from kube_runner.logging_config import configure_logging
from kube_runner.output_store import OutputStore
from kube_runner.queue import ExecutionQueue, Worker
from kube_runner.redis_client import get_redis
from kube_runner.runner import KubeRunner
from kube_runner.settings import get_settings


async def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    client = get_redis(settings)
    runner = KubeRunner(
        get_cluster(settings),
        settings,
        job_store=JobStore(client),
        output_store=OutputStore(client, settings.output_retention_sec),
    )
    worker = Worker(runner, ExecutionQueue(client), concurrency=settings.worker_concurrency)
    await worker.run_forever()


if __name__ == "__main__":
    asyncio.run(main())
