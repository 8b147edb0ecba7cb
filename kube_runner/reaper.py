from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from kube_runner.cluster import ClusterClient
from kube_runner.errors import ClusterApiError, DeleteFailed
from kube_runner.models import PodRef
from kube_runner.naming import managed_selector
from kube_runner.settings import Settings

logger = logging.getLogger(__name__)


class Reaper:
    """Deletes the objects an execution created. Safe to call repeatedly."""

    def __init__(self, cluster: ClusterClient, settings: Settings) -> None:
        self.cluster = cluster
        self.settings = settings

    async def delete(self, namespace: str, name: str) -> None:
        """Delete pod ``name`` and, for per-execution namespaces, its namespace.

        Objects that do not exist are skipped. The namespace is deleted even
        when the pod could not be; every failure is reported in one
        DeleteFailed.
        """
        failures: list[DeleteFailed] = []
        try:
            await self.delete_pod(namespace, name)
        except DeleteFailed as exc:
            failures.append(exc)
        if self.settings.per_execution_namespace and namespace == name:
            try:
                await self.delete_namespace(namespace)
            except DeleteFailed as exc:
                failures.append(exc)
        if len(failures) == 1:
            raise failures[0]
        if failures:
            raise DeleteFailed(
                "; ".join(str(exc) for exc in failures), execution_id=name
            ) from failures[0]

    async def delete_pod(self, namespace: str, name: str) -> None:
        try:
            await self.cluster.delete_pod(namespace, name, self.settings.delete_grace_sec)
        except ClusterApiError as exc:
            if not exc.not_found:
                raise DeleteFailed(
                    f"could not delete pod {namespace}/{name}: {exc.reason}",
                    execution_id=name,
                ) from exc
        else:
            logger.info("Deleted pod %s/%s", namespace, name)

    async def delete_namespace(self, namespace: str) -> None:
        try:
            await self.cluster.delete_namespace(namespace)
        except ClusterApiError as exc:
            if not exc.not_found:
                raise DeleteFailed(
                    f"could not delete namespace {namespace}: {exc.reason}",
                    execution_id=namespace,
                ) from exc
        else:
            logger.info("Deleted namespace %s", namespace)

    async def sweep(self, older_than: timedelta) -> list[PodRef]:
        """Delete managed pods created more than ``older_than`` ago."""
        try:
            pods = await self.cluster.list_pods(
                managed_selector(), namespace=self.settings.namespace
            )
        except ClusterApiError as exc:
            raise DeleteFailed(f"could not list pods: {exc.reason}") from exc

        cutoff = datetime.now(timezone.utc) - older_than
        stale = [p for p in pods if p.created_at is None or p.created_at <= cutoff]
        failures = []
        for pod in stale:
            try:
                await self.delete(pod.namespace, pod.name)
            except DeleteFailed as exc:
                logger.error("%s", exc)
                failures.append(exc)
        if failures:
            raise DeleteFailed(f"{len(failures)} of {len(stale)} stale pods could not be deleted")
        logger.info("Swept %d stale pods", len(stale))
        return stale
