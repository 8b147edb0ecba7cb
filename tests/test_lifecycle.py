import asyncio

import pytest

from kube_runner.errors import (
    AlreadyExists,
    Canceled,
    ClusterApiError,
    ExecutionTimeout,
    InvalidSpec,
    LogUnavailable,
    SchedulingFailed,
)
from kube_runner.lifecycle import PodLifecycleController, classify
from kube_runner.models import PodPhase, PodSpec, PodStatus

SPEC = PodSpec(
    name="job-1",
    namespace="job-1",
    image="golang",
    command=("/bin/sh", "-c", "true"),
)


def status(phase="Pending", **kwargs):
    return PodStatus(name="job-1", namespace="job-1", phase=phase, **kwargs)


class ScriptedCluster:
    """Replays a fixed sequence of status observations."""

    def __init__(self, observations=(), create_error=None):
        self.observations = list(observations)
        self.create_error = create_error
        self.created = []
        self.deleted = []
        self.reads = 0

    async def create_pod(self, spec):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(spec.name)

    async def read_pod_status(self, namespace, name):
        self.reads += 1
        item = self.observations.pop(0) if len(self.observations) > 1 else self.observations[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def delete_pod(self, namespace, name, grace_sec=0):
        self.deleted.append(name)


def controller(cluster, **kwargs):
    kwargs.setdefault("poll_interval", 0.001)
    kwargs.setdefault("max_poll_interval", 0.005)
    return PodLifecycleController(cluster, **kwargs)


def deadline(seconds=5.0):
    return asyncio.get_running_loop().time() + seconds


def test_classify_phases():
    assert classify(status("Pending")) is PodPhase.pending
    assert classify(status("Running")) is PodPhase.running
    assert classify(status("Succeeded")) is PodPhase.succeeded
    assert classify(status("Failed")) is PodPhase.failed
    assert classify(status("Unknown")) is PodPhase.pending
    assert classify(status("Pending", waiting_reason="ImagePullBackOff")) is PodPhase.scheduling_failed
    assert classify(status("Pending", waiting_reason="ContainerCreating")) is PodPhase.pending
    assert classify(status("Pending", unschedulable=True)) is PodPhase.scheduling_failed


def test_terminal_phases():
    assert not PodPhase.pending.terminal
    assert not PodPhase.running.terminal
    assert PodPhase.succeeded.terminal
    assert PodPhase.failed.terminal
    assert PodPhase.scheduling_failed.terminal


@pytest.mark.asyncio
async def test_run_follows_phases_to_success():
    cluster = ScriptedCluster(
        [status("Pending"), status("Running"), status("Succeeded", exit_code=0)]
    )

    final = await controller(cluster).run(SPEC, deadline())

    assert final.phase == "Succeeded"
    assert cluster.created == ["job-1"]
    assert cluster.deleted == []


@pytest.mark.asyncio
async def test_failed_pod_is_terminal_not_an_error():
    cluster = ScriptedCluster([status("Running"), status("Failed", exit_code=2)])

    final = await controller(cluster).run(SPEC, deadline())

    assert final.phase == "Failed"
    assert final.exit_code == 2


@pytest.mark.asyncio
async def test_stale_earlier_phase_is_ignored():
    cluster = ScriptedCluster(
        [status("Running"), status("Pending"), status("Succeeded")]
    )

    final = await controller(cluster).run(SPEC, deadline())

    assert final.phase == "Succeeded"
    assert cluster.reads == 3


@pytest.mark.asyncio
async def test_transient_poll_errors_are_retried():
    cluster = ScriptedCluster(
        [
            ClusterApiError(503, "ServiceUnavailable"),
            ClusterApiError(None, "connection reset"),
            status("Succeeded"),
        ]
    )

    final = await controller(cluster).run(SPEC, deadline())

    assert final.phase == "Succeeded"


@pytest.mark.asyncio
async def test_pod_gone_while_polling_is_log_unavailable():
    cluster = ScriptedCluster([status("Running"), ClusterApiError(404, "NotFound")])

    with pytest.raises(LogUnavailable):
        await controller(cluster).run(SPEC, deadline())


@pytest.mark.asyncio
async def test_permanent_poll_error_is_classified():
    cluster = ScriptedCluster([ClusterApiError(403, "Forbidden")])

    with pytest.raises(SchedulingFailed):
        await controller(cluster).run(SPEC, deadline())


@pytest.mark.asyncio
async def test_image_pull_error_is_not_retried():
    cluster = ScriptedCluster(
        [
            status("Pending", waiting_reason="ErrImagePull", message="not found"),
            status("Running"),
        ]
    )

    with pytest.raises(SchedulingFailed) as info:
        await controller(cluster).run(SPEC, deadline())

    assert info.value.reason == "ErrImagePull"
    assert "not found" in str(info.value)
    assert cluster.reads == 1


@pytest.mark.asyncio
async def test_unschedulable_pod_fails():
    cluster = ScriptedCluster(
        [status("Pending", unschedulable=True, message="0/3 nodes are available")]
    )

    with pytest.raises(SchedulingFailed) as info:
        await controller(cluster).run(SPEC, deadline())

    assert info.value.reason == "Unschedulable"


@pytest.mark.asyncio
async def test_deadline_deletes_pod_and_times_out():
    cluster = ScriptedCluster([status("Running")])

    with pytest.raises(ExecutionTimeout) as info:
        await controller(cluster).run(SPEC, deadline(0.05))

    assert info.value.execution_id == "job-1"
    assert cluster.deleted == ["job-1"]


@pytest.mark.asyncio
async def test_cancel_token_interrupts_poll_wait():
    cluster = ScriptedCluster([status("Running")])
    cancel = asyncio.Event()
    slow = controller(cluster, poll_interval=10, max_poll_interval=10)

    task = asyncio.create_task(slow.run(SPEC, deadline(60), cancel))
    await asyncio.sleep(0.05)
    cancel.set()

    with pytest.raises(Canceled):
        await asyncio.wait_for(task, timeout=1)
    assert cluster.deleted == ["job-1"]


@pytest.mark.asyncio
async def test_task_cancel_deletes_pod_and_propagates():
    cluster = ScriptedCluster([status("Running")])
    task = asyncio.create_task(controller(cluster).run(SPEC, deadline(60)))
    await asyncio.sleep(0.05)

    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert cluster.deleted == ["job-1"]


@pytest.mark.asyncio
async def test_backoff_is_bounded():
    cluster = ScriptedCluster([status("Running")])
    ctl = controller(cluster, poll_interval=0.01, max_poll_interval=0.02)

    with pytest.raises(ExecutionTimeout):
        await ctl.run(SPEC, deadline(0.3))

    # Never slower than max_poll_interval, never a busy loop.
    assert 5 <= cluster.reads <= 40


@pytest.mark.parametrize(
    "error, expected",
    [
        (ClusterApiError(409, "AlreadyExists"), AlreadyExists),
        (
            ClusterApiError(
                403,
                "Forbidden",
                "unable to create new content in namespace job-1 because it is being terminated",
            ),
            AlreadyExists,
        ),
        (ClusterApiError(422, "Invalid"), InvalidSpec),
        (ClusterApiError(403, "Forbidden", "exceeded quota: pods"), SchedulingFailed),
        (ClusterApiError(None, "connection refused"), SchedulingFailed),
    ],
)
@pytest.mark.asyncio
async def test_submit_errors_are_classified(error, expected):
    cluster = ScriptedCluster([status("Running")], create_error=error)

    with pytest.raises(expected):
        await controller(cluster).run(SPEC, deadline())

    assert cluster.reads == 0
    assert cluster.deleted == []


class HungStatusCluster(ScriptedCluster):
    async def read_pod_status(self, namespace, name):
        self.reads += 1
        await asyncio.sleep(3)
        return status("Running")


@pytest.mark.asyncio
async def test_hung_status_read_is_cut_off_at_deadline():
    cluster = HungStatusCluster()
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(ExecutionTimeout) as info:
        await controller(cluster).run(SPEC, deadline(0.2))

    assert loop.time() - started < 1
    assert info.value.timeout_sec == pytest.approx(0.2, abs=0.05)
    assert cluster.deleted == ["job-1"]


@pytest.mark.asyncio
async def test_pod_side_deadline_is_a_timeout():
    cluster = ScriptedCluster([status("Failed", reason="DeadlineExceeded")])

    with pytest.raises(ExecutionTimeout):
        await controller(cluster).run(SPEC, deadline())

    assert cluster.deleted == ["job-1"]


class SlowCreateCluster(ScriptedCluster):
    """The create request lands on the cluster well after it was sent."""

    async def create_pod(self, spec):
        await asyncio.sleep(0.2)
        await super().create_pod(spec)


@pytest.mark.asyncio
async def test_cancel_while_create_in_flight_deletes_late_pod():
    cluster = SlowCreateCluster([status("Running")])
    task = asyncio.create_task(controller(cluster).run(SPEC, deadline(60)))
    await asyncio.sleep(0.05)

    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert cluster.created == ["job-1"]
    assert cluster.deleted == ["job-1"]
    assert cluster.reads == 0


@pytest.mark.asyncio
async def test_cancel_while_create_in_flight_spares_foreign_pod():
    cluster = SlowCreateCluster(
        [status("Running")], create_error=ClusterApiError(409, "AlreadyExists")
    )
    task = asyncio.create_task(controller(cluster).run(SPEC, deadline(60)))
    await asyncio.sleep(0.05)

    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert cluster.deleted == []
