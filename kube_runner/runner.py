from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Mapping

from kube_runner import builder
from kube_runner.cluster import ClusterClient, get_cluster
from kube_runner.collector import OutputCollector
from kube_runner.errors import (
    Canceled,
    ClusterApiError,
    DeleteFailed,
    ExecutionError,
    SchedulingFailed,
)
from kube_runner.job_store import JobStore
from kube_runner.lifecycle import PodLifecycleController
from kube_runner.output_store import OutputStore
from kube_runner.models import JobResult, JobSpec, PodPhase, PodSpec
from kube_runner.naming import sanitize_name
from kube_runner.reaper import Reaper
from kube_runner.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class KubeRunner:
    """Runs execution requests as pods: submit, poll, collect, clean up.

    One runner can drive any number of executions at once. Executions share
    nothing but the cluster client; each is keyed by its own execution id.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        settings: Settings | None = None,
        job_store: JobStore | None = None,
        output_store: OutputStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cluster = cluster
        self.controller = PodLifecycleController(
            cluster,
            poll_interval=self.settings.poll_interval,
            max_poll_interval=self.settings.max_poll_interval,
            delete_grace_sec=self.settings.delete_grace_sec,
            settle_timeout=self.settings.request_timeout,
        )
        self.collector = OutputCollector(cluster)
        self.reaper = Reaper(cluster, self.settings)
        self.job_store = job_store
        self.output_store = output_store

    async def run_job(
        self,
        request: JobSpec,
        execution_id: str,
        *,
        timeout_sec: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> JobResult:
        """Run ``request`` under ``execution_id`` and return its output.

        A pod that ran and exited non-zero still yields a result, with
        ``status="failed"``. Everything else raises an ExecutionError.
        """
        loop = asyncio.get_running_loop()
        timeout = timeout_sec or request.timeout_sec or self.settings.timeout_sec
        deadline = loop.time() + timeout
        started_at = datetime.now(timezone.utc)

        spec = builder.build(request, execution_id, self.settings, timeout)
        if self.job_store is not None:
            await self.job_store.create(spec.name, request)
        try:
            created = False
            if self.settings.per_execution_namespace:
                created = await builder.ensure_namespace(
                    self.cluster, spec.namespace, self.settings.request_timeout
                )
            result = await self._execute(spec, deadline, timeout, cancel, started_at, created)
        except ExecutionError as exc:
            logger.warning("Execution %s failed: %s", execution_id, exc)
            await self._journal_error(spec.name, exc)
            raise
        except asyncio.CancelledError:
            logger.info("Execution %s cancelled", execution_id)
            canceled = Canceled(f"execution {spec.name!r} was cancelled", execution_id=spec.name)
            await asyncio.shield(self._journal_error(spec.name, canceled))
            raise

        if self.job_store is not None:
            await self.job_store.mark_finished(spec.name, result)
        if self.output_store is not None:
            await self.output_store.save(result)
        return result

    async def _execute(
        self,
        spec: PodSpec,
        deadline: float,
        timeout: float,
        cancel: asyncio.Event | None,
        started_at: datetime,
        created_namespace: bool = False,
    ) -> JobResult:
        loop = asyncio.get_running_loop()
        begin = loop.time()
        # Nothing of ours exists until submit succeeds; an AlreadyExists pod
        # belongs to another execution and must not be reaped here.
        try:
            await self.controller.submit(spec)
        except (ExecutionError, asyncio.CancelledError):
            if created_namespace:
                await asyncio.shield(self._cleanup_namespace(spec.namespace))
            raise

        primary: BaseException | None = None
        try:
            if self.job_store is not None:
                await self.job_store.mark_running(spec.name)
            status = await self.controller.wait(spec, deadline, cancel)
            output = await self.controller.within(
                spec, self.collector.collect(spec), deadline, timeout
            )
        except BaseException as exc:
            primary = exc
            raise
        finally:
            cleanup_error = await self._cleanup(spec, primary)

        phase = PodPhase(status.phase)
        result = JobResult(
            execution_id=spec.name,
            namespace=spec.namespace,
            status="succeeded" if phase is PodPhase.succeeded else "failed",
            output=output,
            exit_code=status.exit_code,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            exec_time=loop.time() - begin,
            cleanup_error=str(cleanup_error) if cleanup_error else None,
        )
        logger.info(
            "Execution %s %s (exit code %s) in %.2fs",
            spec.name,
            result.status,
            result.exit_code,
            result.exec_time,
        )
        return result

    async def _cleanup(
        self, spec: PodSpec, primary: BaseException | None
    ) -> DeleteFailed | None:
        """Reap the pod; a failure here never replaces the primary outcome."""
        try:
            await asyncio.shield(self.reaper.delete(spec.namespace, spec.name))
        except DeleteFailed as exc:
            logger.error("Cleanup of %s/%s failed: %s", spec.namespace, spec.name, exc)
            if isinstance(primary, ExecutionError):
                primary.cleanup_error = exc
            return exc
        return None

    async def _cleanup_namespace(self, namespace: str) -> None:
        try:
            await self.reaper.delete_namespace(namespace)
        except DeleteFailed as exc:
            logger.error("Cleanup of namespace %s failed: %s", namespace, exc)

    async def _journal_error(self, execution_id: str, exc: ExecutionError) -> None:
        if self.job_store is None:
            return
        try:
            await self.job_store.mark_error(execution_id, exc)
        except KeyError:
            pass

    async def delete_object(self, namespace: str, name: str) -> None:
        await self.reaper.delete(sanitize_name(namespace), sanitize_name(name))

    async def run_many(
        self,
        requests: Mapping[str, JobSpec],
        *,
        timeout_sec: float | None = None,
    ) -> dict[str, JobResult | ExecutionError]:
        """Run every request concurrently and wait for all of them to finish."""
        ids = list(requests)
        if len(set(map(sanitize_name, ids))) != len(ids):
            raise ValueError("execution ids must be unique")
        outcomes = await asyncio.gather(
            *(
                self.run_job(requests[execution_id], execution_id, timeout_sec=timeout_sec)
                for execution_id in ids
            ),
            return_exceptions=True,
        )
        results: dict[str, JobResult | ExecutionError] = {}
        for execution_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, (JobResult, ExecutionError)):
                results[execution_id] = outcome
            else:
                raise outcome
        return results


async def run_job(
    request: JobSpec,
    execution_id: str,
    settings: Settings | None = None,
    cancel: asyncio.Event | None = None,
) -> str:
    """Run one request against the configured cluster and return its output."""
    runner = KubeRunner(_connect(settings or get_settings(), execution_id), settings)
    result = await runner.run_job(request, execution_id, cancel=cancel)
    return result.output


async def delete_object(
    namespace: str, name: str, settings: Settings | None = None
) -> None:
    settings = settings or get_settings()
    runner = KubeRunner(_connect(settings, name), settings)
    await runner.delete_object(namespace, name)


def _connect(settings: Settings, execution_id: str) -> ClusterClient:
    try:
        return get_cluster(settings)
    except ClusterApiError as exc:
        raise SchedulingFailed(
            f"cluster is not reachable: {exc.reason}",
            execution_id=execution_id,
            reason=exc.reason,
        ) from exc
