from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from kube_runner import cluster as cluster_module
from kube_runner.cluster import KubernetesCluster, get_cluster, pod_manifest, pod_status
from kube_runner.config import kubeconfig_path
from kube_runner.errors import ClusterApiError
from kube_runner.fake_cluster import FakeCluster
from kube_runner.models import PodSpec

SPEC = PodSpec(
    name="ci0",
    namespace="ci0",
    image="golang",
    command=("/bin/sh", "-c", 'echo -n "0"'),
    env={"A": "1"},
    labels={"app.kubernetes.io/managed-by": "kube-runner"},
)


def make_pod(phase="Pending", state=None, conditions=None, container="runner"):
    statuses = None
    if state is not None:
        statuses = [
            client.V1ContainerStatus(
                name=container,
                image="golang",
                image_id="",
                ready=False,
                restart_count=0,
                state=state,
            )
        ]
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name="ci0", namespace="ci0"),
        status=client.V1PodStatus(
            phase=phase, container_statuses=statuses, conditions=conditions
        ),
    )


def test_pod_manifest():
    pod = pod_manifest(SPEC)

    assert pod.metadata.name == "ci0"
    assert pod.metadata.namespace == "ci0"
    assert pod.metadata.labels == {"app.kubernetes.io/managed-by": "kube-runner"}
    assert pod.spec.restart_policy == "Never"
    (container,) = pod.spec.containers
    assert container.name == "runner"
    assert container.image == "golang"
    assert container.command == ["/bin/sh", "-c", 'echo -n "0"']
    assert [(e.name, e.value) for e in container.env] == [("A", "1")]


def test_pod_status_waiting_on_image():
    state = client.V1ContainerState(
        waiting=client.V1ContainerStateWaiting(reason="ErrImagePull", message="not found")
    )

    status = pod_status(make_pod(state=state), "runner")

    assert status.phase == "Pending"
    assert status.waiting_reason == "ErrImagePull"
    assert status.message == "not found"


def test_pod_status_terminated():
    state = client.V1ContainerState(
        terminated=client.V1ContainerStateTerminated(exit_code=3, reason="Error")
    )

    status = pod_status(make_pod("Failed", state=state), "runner")

    assert status.phase == "Failed"
    assert status.exit_code == 3
    assert status.terminated_reason == "Error"


def test_pod_status_unschedulable():
    conditions = [
        client.V1PodCondition(
            type="PodScheduled",
            status="False",
            reason="Unschedulable",
            message="0/3 nodes are available",
        )
    ]

    status = pod_status(make_pod(conditions=conditions))

    assert status.unschedulable
    assert status.message == "0/3 nodes are available"


def test_pod_status_ignores_other_containers():
    state = client.V1ContainerState(
        waiting=client.V1ContainerStateWaiting(reason="ErrImagePull")
    )

    status = pod_status(make_pod(state=state, container="sidecar"), "runner")

    assert status.waiting_reason is None


def test_pod_status_without_status_is_pending():
    pod = client.V1Pod(metadata=client.V1ObjectMeta(name="ci0", namespace="ci0"))
    assert pod_status(pod).phase == "Pending"


@pytest.fixture
def core():
    return MagicMock(spec=client.CoreV1Api)


@pytest.mark.asyncio
async def test_create_pod_sends_manifest(core):
    await KubernetesCluster(core, "runner").create_pod(SPEC)

    namespace, body = core.create_namespaced_pod.call_args.args
    assert namespace == "ci0"
    assert body.metadata.name == "ci0"


@pytest.mark.asyncio
async def test_api_exceptions_are_normalized(core):
    core.create_namespaced_pod.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ClusterApiError) as info:
        await KubernetesCluster(core).create_pod(SPEC)

    assert info.value.conflict
    assert info.value.reason == "Conflict"


@pytest.mark.asyncio
async def test_connection_errors_are_transient(core):
    core.read_namespaced_pod_status.side_effect = ConnectionRefusedError("refused")

    with pytest.raises(ClusterApiError) as info:
        await KubernetesCluster(core).read_pod_status("ci0", "ci0")

    assert info.value.status is None
    assert info.value.transient


@pytest.mark.asyncio
async def test_read_pod_status(core):
    state = client.V1ContainerState(
        terminated=client.V1ContainerStateTerminated(exit_code=0, reason="Completed")
    )
    core.read_namespaced_pod_status.return_value = make_pod("Succeeded", state=state)

    status = await KubernetesCluster(core, "runner").read_pod_status("ci0", "ci0")

    core.read_namespaced_pod_status.assert_called_once_with("ci0", "ci0")
    assert status.phase == "Succeeded"
    assert status.exit_code == 0


@pytest.mark.asyncio
async def test_read_pod_log_is_raw(core):
    response = MagicMock()
    response.data = b'{"not": "json-parsed"}\n'
    core.read_namespaced_pod_log.return_value = response

    log = await KubernetesCluster(core).read_pod_log("ci0", "ci0", "runner")

    assert log == '{"not": "json-parsed"}\n'
    assert core.read_namespaced_pod_log.call_args.kwargs["_preload_content"] is False
    response.release_conn.assert_called_once()


@pytest.mark.asyncio
async def test_delete_pod_uses_grace_period(core):
    await KubernetesCluster(core).delete_pod("ci0", "ci0", grace_sec=0)

    args = core.delete_namespaced_pod.call_args
    assert args.args == ("ci0", "ci0")
    assert args.kwargs["body"].grace_period_seconds == 0


@pytest.mark.asyncio
async def test_list_pods(core):
    core.list_namespaced_pod.return_value = client.V1PodList(
        items=[make_pod()]
    )

    refs = await KubernetesCluster(core).list_pods("a=b", namespace="ci0")

    assert [(r.namespace, r.name) for r in refs] == [("ci0", "ci0")]
    core.list_namespaced_pod.assert_called_once_with("ci0", label_selector="a=b")


def test_kubeconfig_defaults_to_home(monkeypatch, settings, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    assert kubeconfig_path(settings) == tmp_path / ".kube" / "config"
    explicit = replace(settings, kubeconfig=str(tmp_path / "cfg"))
    assert kubeconfig_path(explicit) == tmp_path / "cfg"


def test_get_cluster_fake(settings):
    assert isinstance(get_cluster(settings), FakeCluster)


def test_missing_cluster_config_is_cluster_error(monkeypatch, settings, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))

    def no_incluster():
        raise cluster_module.config.ConfigException("not in a cluster")

    monkeypatch.setattr(cluster_module.config, "load_incluster_config", no_incluster)

    with pytest.raises(ClusterApiError):
        get_cluster(replace(settings, use_fake_cluster=False))


def test_pod_manifest_carries_active_deadline():
    pod = pod_manifest(SPEC.model_copy(update={"active_deadline_sec": 30}))

    assert pod.spec.active_deadline_seconds == 30
    assert pod_manifest(SPEC).spec.active_deadline_seconds is None


def test_pod_status_keeps_pod_level_reason():
    pod = make_pod("Failed")
    pod.status.reason = "DeadlineExceeded"

    assert pod_status(pod).reason == "DeadlineExceeded"


@pytest.mark.asyncio
async def test_every_request_carries_a_socket_timeout(core):
    core.read_namespaced_pod_status.return_value = make_pod("Running")
    cluster = KubernetesCluster(core, "runner", request_timeout=7.5)

    await cluster.read_pod_status("ci0", "ci0")
    await cluster.delete_pod("ci0", "ci0")

    assert core.read_namespaced_pod_status.call_args.kwargs["_request_timeout"] == 7.5
    assert core.delete_namespaced_pod.call_args.kwargs["_request_timeout"] == 7.5
