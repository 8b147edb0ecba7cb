"""Access to the cluster API.

The runner only talks to the cluster through :class:`ClusterClient`.
:class:`KubernetesCluster` implements it on top of the official ``kubernetes``
client, whose calls are blocking and are therefore pushed to worker threads.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from kube_runner.config import kubeconfig_path
from kube_runner.errors import ClusterApiError
from kube_runner.models import PodRef, PodSpec, PodStatus
from kube_runner.settings import Settings

logger = logging.getLogger(__name__)


class ClusterClient(Protocol):
    async def create_namespace(self, name: str, labels: dict[str, str]) -> None: ...

    async def delete_namespace(self, name: str) -> None: ...

    async def create_pod(self, spec: PodSpec) -> None: ...

    async def read_pod_status(self, namespace: str, name: str) -> PodStatus: ...

    async def read_pod_log(self, namespace: str, name: str, container: str) -> str: ...

    async def delete_pod(self, namespace: str, name: str, grace_sec: int = 0) -> None: ...

    async def list_pods(
        self, label_selector: str, namespace: str | None = None
    ) -> list[PodRef]: ...


def pod_manifest(spec: PodSpec) -> client.V1Pod:
    env = [client.V1EnvVar(name=k, value=v) for k, v in spec.env.items()]
    container = client.V1Container(
        name=spec.container,
        image=spec.image,
        image_pull_policy="IfNotPresent",
        command=list(spec.command),
        env=env or None,
    )
    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=spec.name,
            namespace=spec.namespace,
            labels=dict(spec.labels),
        ),
        spec=client.V1PodSpec(
            restart_policy=spec.restart_policy,
            active_deadline_seconds=spec.active_deadline_sec,
            containers=[container],
        ),
    )


def pod_status(pod: client.V1Pod, container: str | None = None) -> PodStatus:
    """Flatten a V1Pod into the fields the lifecycle controller looks at."""
    status = pod.status
    waiting_reason = terminated_reason = message = None
    exit_code = None
    unschedulable = False
    phase = "Pending"
    reason = None

    if status is not None:
        phase = status.phase or "Pending"
        reason = status.reason
        for cs in status.container_statuses or []:
            if container and cs.name != container:
                continue
            state = cs.state
            if state is None:
                continue
            if state.waiting is not None:
                waiting_reason = state.waiting.reason
                message = state.waiting.message
            if state.terminated is not None:
                terminated_reason = state.terminated.reason
                exit_code = state.terminated.exit_code
                message = state.terminated.message or message
        for cond in status.conditions or []:
            if (
                cond.type == "PodScheduled"
                and cond.status == "False"
                and cond.reason == "Unschedulable"
            ):
                unschedulable = True
                message = message or cond.message

    return PodStatus(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        phase=phase,
        reason=reason,
        waiting_reason=waiting_reason,
        terminated_reason=terminated_reason,
        message=message,
        exit_code=exit_code,
        unschedulable=unschedulable,
    )


class KubernetesCluster:
    """ClusterClient backed by ``kubernetes.client.CoreV1Api``.

    A single instance is shared by all concurrent executions; each call is
    keyed by namespace and name and holds no state of its own.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        container: str | None = None,
        request_timeout: float | None = None,
    ) -> None:
        self.core = core_api
        self.container = container
        self.request_timeout = request_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "KubernetesCluster":
        path = kubeconfig_path(settings)
        try:
            if path.is_file():
                api_client = config.new_client_from_config(
                    config_file=str(path), context=settings.kube_context
                )
                logger.info("Loaded kubeconfig from %s", path)
            else:
                config.load_incluster_config()
                api_client = client.ApiClient()
                logger.info("Loaded in-cluster config")
        except config.ConfigException as exc:
            raise ClusterApiError(None, f"no usable cluster config: {exc}") from exc
        return cls(
            client.CoreV1Api(api_client),
            container=settings.container_name,
            request_timeout=settings.request_timeout,
        )

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        # The worker thread cannot be cancelled, so every request carries its
        # own socket timeout.
        if self.request_timeout is not None:
            kwargs.setdefault("_request_timeout", self.request_timeout)
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as exc:
            raise ClusterApiError(exc.status, exc.reason or "", exc.body) from exc
        except (HTTPError, OSError) as exc:
            raise ClusterApiError(None, str(exc)) from exc

    async def create_namespace(self, name: str, labels: dict[str, str]) -> None:
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, labels=dict(labels))
        )
        await self._call(self.core.create_namespace, body)

    async def delete_namespace(self, name: str) -> None:
        await self._call(
            self.core.delete_namespace,
            name,
            body=client.V1DeleteOptions(propagation_policy="Background"),
        )

    async def create_pod(self, spec: PodSpec) -> None:
        await self._call(
            self.core.create_namespaced_pod, spec.namespace, pod_manifest(spec)
        )

    async def read_pod_status(self, namespace: str, name: str) -> PodStatus:
        pod = await self._call(self.core.read_namespaced_pod_status, name, namespace)
        return pod_status(pod, self.container)

    async def read_pod_log(self, namespace: str, name: str, container: str) -> str:
        # Preloaded content goes through the client's deserializer, which can
        # rewrite log lines that look like JSON; read the raw body instead.
        resp = await self._call(
            self.core.read_namespaced_pod_log,
            name,
            namespace,
            container=container,
            _preload_content=False,
        )
        try:
            return resp.data.decode("utf-8", errors="replace")
        finally:
            resp.release_conn()

    async def delete_pod(self, namespace: str, name: str, grace_sec: int = 0) -> None:
        await self._call(
            self.core.delete_namespaced_pod,
            name,
            namespace,
            body=client.V1DeleteOptions(
                grace_period_seconds=grace_sec, propagation_policy="Background"
            ),
        )

    async def list_pods(
        self, label_selector: str, namespace: str | None = None
    ) -> list[PodRef]:
        if namespace is None:
            pods = await self._call(
                self.core.list_pod_for_all_namespaces, label_selector=label_selector
            )
        else:
            pods = await self._call(
                self.core.list_namespaced_pod, namespace, label_selector=label_selector
            )
        return [
            PodRef(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                created_at=pod.metadata.creation_timestamp,
                labels=pod.metadata.labels or {},
            )
            for pod in pods.items or []
        ]


def get_cluster(settings: Settings) -> ClusterClient:
    if settings.use_fake_cluster:
        from kube_runner.fake_cluster import FakeCluster

        return FakeCluster()
    return KubernetesCluster.from_settings(settings)
