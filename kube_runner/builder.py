from __future__ import annotations

import asyncio
import logging
import math

from kube_runner.cluster import ClusterClient
from kube_runner.errors import ClusterApiError, InvalidSpec, SchedulingFailed
from kube_runner.models import JobSpec, PodSpec
from kube_runner.naming import MANAGED_BY_LABEL, MANAGED_BY_VALUE, managed_labels, sanitize_name
from kube_runner.settings import Settings

logger = logging.getLogger(__name__)

SHELL = ("/bin/sh", "-c")


def shell_command(commands: tuple[str, ...] | list[str]) -> tuple[str, ...]:
    """Run all commands, in order, in one shell.

    Commands are newline separated so a failing one does not stop the rest;
    callers that want fail-fast behaviour put ``set -e`` or ``&&`` in the
    commands themselves.
    """
    return (*SHELL, "\n".join(commands))


def build(
    request: JobSpec,
    execution_id: str,
    settings: Settings,
    timeout_sec: float | None = None,
) -> PodSpec:
    """Turn a request into a pod spec.

    ``timeout_sec`` also becomes the pod's active deadline, so the cluster
    stops the container even if this process is gone by then.
    """
    if not request.image or not request.image.strip():
        raise InvalidSpec("image must not be empty", execution_id=execution_id)
    name = sanitize_name(execution_id)
    namespace = name if settings.per_execution_namespace else settings.namespace
    return PodSpec(
        name=name,
        namespace=namespace,
        image=request.image.strip(),
        command=shell_command(request.commands),
        container=settings.container_name,
        env=dict(request.env),
        labels=managed_labels(name),
        active_deadline_sec=math.ceil(timeout_sec) if timeout_sec else None,
    )


async def ensure_namespace(
    cluster: ClusterClient, namespace: str, settle_timeout: float = 30.0
) -> bool:
    """Create ``namespace`` unless it exists. Returns True if it was created.

    A cancelled caller does not leave a namespace behind: the create request
    is given ``settle_timeout`` seconds to land and is then undone.
    """
    create = asyncio.ensure_future(
        cluster.create_namespace(namespace, {MANAGED_BY_LABEL: MANAGED_BY_VALUE})
    )
    try:
        await asyncio.shield(create)
    except asyncio.CancelledError:
        await asyncio.shield(_withdraw_namespace(cluster, namespace, create, settle_timeout))
        raise
    except ClusterApiError as exc:
        if exc.conflict:
            return False
        if exc.status == 422:
            raise InvalidSpec(
                f"namespace {namespace!r} rejected: {exc.reason}",
                execution_id=namespace,
            ) from exc
        raise SchedulingFailed(
            f"could not create namespace {namespace!r}: {exc.reason}",
            execution_id=namespace,
            reason=exc.reason,
        ) from exc
    logger.debug("Created namespace %s", namespace)
    return True


async def _withdraw_namespace(
    cluster: ClusterClient,
    namespace: str,
    create: asyncio.Future,
    settle_timeout: float,
) -> None:
    done, _ = await asyncio.wait([create], timeout=settle_timeout)
    if not done or create.cancelled() or create.exception() is not None:
        return
    try:
        await cluster.delete_namespace(namespace)
    except ClusterApiError as exc:
        if not exc.not_found:
            logger.error("Could not delete namespace %s: %s", namespace, exc)
