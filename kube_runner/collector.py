from __future__ import annotations

import logging

from kube_runner.cluster import ClusterClient
from kube_runner.errors import ClusterApiError, LogUnavailable
from kube_runner.models import PodSpec

logger = logging.getLogger(__name__)


class OutputCollector:
    """Reads the combined stdout/stderr of a finished pod, byte for byte."""

    def __init__(self, cluster: ClusterClient) -> None:
        self.cluster = cluster

    async def collect(self, spec: PodSpec) -> str:
        try:
            output = await self.cluster.read_pod_log(
                spec.namespace, spec.name, spec.container
            )
        except ClusterApiError as exc:
            raise LogUnavailable(
                f"logs of pod {spec.name!r} are unavailable: {exc.body or exc.reason}",
                execution_id=spec.name,
            ) from exc
        logger.debug("Collected %d chars from %s/%s", len(output), spec.namespace, spec.name)
        return output
