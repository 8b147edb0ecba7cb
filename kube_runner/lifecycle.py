"""Submit a pod and follow it until it reaches a terminal phase.

The controller polls the pod status with a bounded backoff. Every status read
is bounded by the deadline, and the wait between polls also races the
caller's cancellation token. A pod that times out or is cancelled is
deleted before the error is raised.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from kube_runner.cluster import ClusterClient
from kube_runner.errors import (
    AlreadyExists,
    Canceled,
    ClusterApiError,
    ExecutionTimeout,
    InvalidSpec,
    LogUnavailable,
    SchedulingFailed,
)
from kube_runner.models import PodPhase, PodSpec, PodStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Waiting reasons that will not resolve without a new spec.
SCHEDULING_FAILURES = frozenset(
    {
        "ErrImagePull",
        "ImagePullBackOff",
        "InvalidImageName",
        "ErrImageNeverPull",
        "CreateContainerConfigError",
        "CreateContainerError",
        "RunContainerError",
    }
)


def classify(status: PodStatus) -> PodPhase:
    if status.waiting_reason in SCHEDULING_FAILURES or status.unschedulable:
        return PodPhase.scheduling_failed
    try:
        return PodPhase(status.phase)
    except ValueError:
        # "Unknown" and anything newer: keep polling.
        return PodPhase.pending


def classify_create_error(exc: ClusterApiError, execution_id: str) -> Exception:
    detail = exc.body or exc.reason
    if exc.conflict:
        return AlreadyExists(
            f"pod {execution_id!r} already exists", execution_id=execution_id
        )
    if exc.status == 403 and "being terminated" in detail:
        return AlreadyExists(
            f"namespace for {execution_id!r} is still being cleaned up",
            execution_id=execution_id,
        )
    if exc.status in (400, 422):
        return InvalidSpec(
            f"pod {execution_id!r} rejected: {detail}", execution_id=execution_id
        )
    return SchedulingFailed(
        f"could not submit pod {execution_id!r}: {detail}",
        execution_id=execution_id,
        reason=exc.reason,
    )


class PodLifecycleController:
    def __init__(
        self,
        cluster: ClusterClient,
        poll_interval: float = 0.5,
        max_poll_interval: float = 5.0,
        backoff: float = 1.5,
        delete_grace_sec: int = 0,
        settle_timeout: float = 30.0,
    ) -> None:
        self.cluster = cluster
        self.poll_interval = poll_interval
        self.max_poll_interval = max(max_poll_interval, poll_interval)
        self.backoff = backoff
        self.delete_grace_sec = delete_grace_sec
        self.settle_timeout = settle_timeout

    async def submit(self, spec: PodSpec) -> None:
        """Create the pod for ``spec``.

        If the caller is cancelled while the create request is in flight, the
        request is allowed to settle and a pod it created is deleted again
        before the cancellation propagates.
        """
        create = asyncio.ensure_future(self.cluster.create_pod(spec))
        try:
            await asyncio.shield(create)
        except asyncio.CancelledError:
            await asyncio.shield(self._withdraw(spec, create))
            raise
        except ClusterApiError as exc:
            raise classify_create_error(exc, spec.name) from exc
        logger.info("Submitted pod %s/%s (image %s)", spec.namespace, spec.name, spec.image)

    async def _withdraw(self, spec: PodSpec, create: asyncio.Future) -> None:
        done, _ = await asyncio.wait([create], timeout=self.settle_timeout)
        if not done:
            logger.warning(
                "Create of pod %s/%s still in flight after cancel; leaving it to the sweep",
                spec.namespace,
                spec.name,
            )
            return
        if not create.cancelled() and create.exception() is None:
            await self._abort(spec)

    async def run(
        self,
        spec: PodSpec,
        deadline: float,
        cancel: asyncio.Event | None = None,
    ) -> PodStatus:
        """Submit ``spec`` and wait for it to finish.

        ``deadline`` is an absolute ``loop.time()`` value. Returns the terminal
        status of a pod that ran (Succeeded or Failed); every other outcome is
        raised as an ExecutionError.
        """
        await self.submit(spec)
        try:
            return await self.wait(spec, deadline, cancel)
        except asyncio.CancelledError:
            await asyncio.shield(self._abort(spec))
            raise

    async def within(
        self,
        spec: PodSpec,
        call: Awaitable[T],
        deadline: float,
        timeout_sec: float | None = None,
    ) -> T:
        """Await ``call`` until ``deadline`` at the latest.

        On expiry the pod is deleted and ExecutionTimeout is raised.
        """
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(call, timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            await self._abort(spec)
            raise _timed_out(spec, timeout_sec) from None

    async def wait(
        self,
        spec: PodSpec,
        deadline: float,
        cancel: asyncio.Event | None = None,
    ) -> PodStatus:
        loop = asyncio.get_running_loop()
        timeout = max(deadline - loop.time(), 0.0)
        interval = self.poll_interval
        current = PodPhase.pending

        while True:
            if cancel is not None and cancel.is_set():
                await self._abort(spec)
                raise Canceled(f"execution {spec.name!r} was canceled", execution_id=spec.name)

            status = await self.within(spec, self._observe(spec), deadline, timeout)
            if status is not None:
                # The pod outlived its activeDeadlineSeconds.
                if status.phase == "Failed" and status.reason == "DeadlineExceeded":
                    await self._abort(spec)
                    raise _timed_out(spec, timeout)
                phase = classify(status)
                if phase.rank > current.rank:
                    logger.info("Pod %s/%s is %s", spec.namespace, spec.name, phase.value)
                    current = phase
                elif phase != current:
                    logger.debug(
                        "Ignoring stale phase %s for %s (already %s)",
                        phase.value,
                        spec.name,
                        current.value,
                    )
                if current is PodPhase.scheduling_failed:
                    reason = status.waiting_reason or "Unschedulable"
                    detail = f"{reason}: {status.message}" if status.message else reason
                    raise SchedulingFailed(
                        f"pod {spec.name!r} could not start: {detail}",
                        execution_id=spec.name,
                        reason=reason,
                    )
                if current.terminal:
                    return status

            remaining = deadline - loop.time()
            if remaining <= 0:
                await self._abort(spec)
                raise _timed_out(spec, timeout)
            if await self._sleep(min(interval, remaining), cancel):
                continue
            interval = min(interval * self.backoff, self.max_poll_interval)

    async def _observe(self, spec: PodSpec) -> PodStatus | None:
        try:
            return await self.cluster.read_pod_status(spec.namespace, spec.name)
        except ClusterApiError as exc:
            if exc.not_found:
                raise LogUnavailable(
                    f"pod {spec.name!r} disappeared before it finished",
                    execution_id=spec.name,
                ) from exc
            if exc.transient:
                logger.warning("Polling %s failed, will retry: %s", spec.name, exc)
                return None
            raise SchedulingFailed(
                f"could not read status of pod {spec.name!r}: {exc.reason}",
                execution_id=spec.name,
                reason=exc.reason,
            ) from exc

    @staticmethod
    async def _sleep(seconds: float, cancel: asyncio.Event | None) -> bool:
        """Sleep for ``seconds``; return True early if ``cancel`` gets set."""
        if cancel is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _abort(self, spec: PodSpec) -> None:
        try:
            await self.cluster.delete_pod(spec.namespace, spec.name, self.delete_grace_sec)
        except ClusterApiError as exc:
            if not exc.not_found:
                logger.error("Could not delete pod %s/%s: %s", spec.namespace, spec.name, exc)
        else:
            logger.info("Deleted pod %s/%s", spec.namespace, spec.name)


def _timed_out(spec: PodSpec, timeout: float | None) -> ExecutionTimeout:
    limit = f" within {timeout:.1f}s" if timeout is not None else ""
    return ExecutionTimeout(
        f"execution {spec.name!r} did not finish{limit}",
        execution_id=spec.name,
        timeout_sec=timeout,
    )
