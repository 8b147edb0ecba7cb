"""In-memory ClusterClient for tests and local runs without a cluster.

A pod is emulated by running its command in a local subprocess with stderr
folded into stdout, the way a single-container pod's log reads. The image is
only checked against the set of images the fake can "pull"; it is not used to
isolate anything.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from kube_runner.errors import ClusterApiError
from kube_runner.models import PodRef, PodSpec, PodStatus

logger = logging.getLogger(__name__)

DEFAULT_IMAGES = frozenset(
    {"golang", "busybox", "alpine", "ubuntu", "debian", "python", "bash"}
)


@dataclass
class FakePod:
    spec: PodSpec
    created_at: datetime
    phase: str = "Pending"
    reason: str | None = None
    waiting_reason: str | None = None
    terminated_reason: str | None = None
    message: str | None = None
    exit_code: int | None = None
    log: bytearray = field(default_factory=bytearray)
    terminating: bool = False
    task: asyncio.Task | None = None


class FakeCluster:
    def __init__(
        self,
        images: Iterable[str] | None = None,
        schedule_delay: float = 0.0,
        deletion_delay: float = 0.0,
        max_pods: int | None = None,
    ) -> None:
        self.images = frozenset(images) if images is not None else DEFAULT_IMAGES
        self.schedule_delay = schedule_delay
        self.deletion_delay = deletion_delay
        self.max_pods = max_pods
        self.namespaces: dict[str, dict[str, str]] = {"default": {}}
        self.terminating_namespaces: set[str] = set()
        self.pods: dict[tuple[str, str], FakePod] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.tasks: list[asyncio.Task] = []

    def image_available(self, image: str) -> bool:
        return image.split(":", 1)[0].split("@", 1)[0] in self.images

    def live_pods(self) -> list[tuple[str, str]]:
        return [key for key, pod in self.pods.items() if not pod.terminating]

    async def create_namespace(self, name: str, labels: dict[str, str]) -> None:
        self.calls.append(("create_namespace", name, name))
        if name in self.namespaces:
            raise ClusterApiError(409, "AlreadyExists")
        self.namespaces[name] = dict(labels)

    async def delete_namespace(self, name: str) -> None:
        self.calls.append(("delete_namespace", name, name))
        if name not in self.namespaces:
            raise ClusterApiError(404, "NotFound")
        if name in self.terminating_namespaces:
            return
        for namespace, pod_name in list(self.pods):
            if namespace == name:
                await self.delete_pod(namespace, pod_name)
        self.terminating_namespaces.add(name)
        self._later(self._drop_namespace, name)

    async def create_pod(self, spec: PodSpec) -> None:
        self.calls.append(("create_pod", spec.namespace, spec.name))
        if spec.namespace not in self.namespaces:
            raise ClusterApiError(404, "NotFound", f'namespaces "{spec.namespace}" not found')
        if spec.namespace in self.terminating_namespaces:
            raise ClusterApiError(
                403,
                "Forbidden",
                f"unable to create new content in namespace {spec.namespace} "
                "because it is being terminated",
            )
        key = (spec.namespace, spec.name)
        if key in self.pods:
            raise ClusterApiError(409, "AlreadyExists", f'pods "{spec.name}" already exists')
        if self.max_pods is not None and len(self.live_pods()) >= self.max_pods:
            raise ClusterApiError(403, "Forbidden", "exceeded quota: pods")
        pod = FakePod(spec=spec, created_at=datetime.now(timezone.utc))
        self.pods[key] = pod
        pod.task = asyncio.create_task(self._run(pod))
        self.tasks.append(pod.task)

    async def read_pod_status(self, namespace: str, name: str) -> PodStatus:
        pod = self._get(namespace, name)
        return PodStatus(
            name=name,
            namespace=namespace,
            phase=pod.phase,
            reason=pod.reason,
            waiting_reason=pod.waiting_reason,
            terminated_reason=pod.terminated_reason,
            message=pod.message,
            exit_code=pod.exit_code,
        )

    async def read_pod_log(self, namespace: str, name: str, container: str) -> str:
        pod = self._get(namespace, name)
        if container != pod.spec.container:
            raise ClusterApiError(400, "BadRequest", f"container {container} is not valid")
        if pod.phase == "Pending":
            raise ClusterApiError(400, "BadRequest", f"container {container} is waiting to start")
        return pod.log.decode(errors="replace")

    async def delete_pod(self, namespace: str, name: str, grace_sec: int = 0) -> None:
        self.calls.append(("delete_pod", namespace, name))
        pod = self._get(namespace, name)
        if pod.terminating:
            return
        pod.terminating = True
        if pod.task is not None and not pod.task.done():
            pod.task.cancel()
        self._later(self._drop_pod, (namespace, name))

    async def list_pods(
        self, label_selector: str, namespace: str | None = None
    ) -> list[PodRef]:
        wanted = dict(
            part.split("=", 1) for part in label_selector.split(",") if "=" in part
        )
        refs = []
        for (ns, name), pod in self.pods.items():
            if namespace is not None and ns != namespace:
                continue
            if all(pod.spec.labels.get(k) == v for k, v in wanted.items()):
                refs.append(
                    PodRef(
                        name=name,
                        namespace=ns,
                        created_at=pod.created_at,
                        labels=dict(pod.spec.labels),
                    )
                )
        return refs

    def evict(self, namespace: str, name: str) -> None:
        """Remove a pod and its log at once, as a node eviction would."""
        pod = self.pods.pop((namespace, name))
        if pod.task is not None and not pod.task.done():
            pod.task.cancel()

    async def wait_idle(self) -> None:
        """Wait until every emulated container has exited."""
        await asyncio.gather(*self.tasks, return_exceptions=True)

    def _get(self, namespace: str, name: str) -> FakePod:
        pod = self.pods.get((namespace, name))
        if pod is None:
            raise ClusterApiError(404, "NotFound", f'pods "{name}" not found')
        return pod

    def _later(self, fn, arg) -> None:
        if self.deletion_delay > 0:
            asyncio.get_running_loop().call_later(self.deletion_delay, fn, arg)
        else:
            fn(arg)

    def _drop_pod(self, key: tuple[str, str]) -> None:
        pod = self.pods.get(key)
        if pod is not None and pod.terminating:
            del self.pods[key]

    def _drop_namespace(self, name: str) -> None:
        self.terminating_namespaces.discard(name)
        self.namespaces.pop(name, None)

    async def _run(self, pod: FakePod) -> None:
        spec = pod.spec
        if self.schedule_delay:
            await asyncio.sleep(self.schedule_delay)
        if not self.image_available(spec.image):
            pod.waiting_reason = "ErrImagePull"
            pod.message = f'failed to pull image "{spec.image}": not found'
            return

        env = os.environ.copy()
        env.update(spec.env)
        pod.phase = "Running"
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except (FileNotFoundError, PermissionError) as exc:
            pod.phase = "Failed"
            pod.terminated_reason = "StartError"
            pod.message = str(exc)
            pod.exit_code = 128
            return

        try:
            exit_code = await asyncio.wait_for(
                self._drain(process, pod), timeout=spec.active_deadline_sec
            )
        except asyncio.TimeoutError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            pod.phase = "Failed"
            pod.reason = "DeadlineExceeded"
            pod.message = f"Pod was active on the node longer than {spec.active_deadline_sec}s"
            return
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        pod.exit_code = exit_code
        if exit_code == 0:
            pod.phase = "Succeeded"
            pod.terminated_reason = "Completed"
        else:
            pod.phase = "Failed"
            pod.terminated_reason = "Error"
        logger.debug("Fake pod %s/%s exited with %s", spec.namespace, spec.name, exit_code)

    @staticmethod
    async def _drain(process: asyncio.subprocess.Process, pod: FakePod) -> int:
        assert process.stdout is not None
        while True:
            chunk = await process.stdout.read(4096)
            if not chunk:
                break
            pod.log.extend(chunk)
        return await process.wait()
