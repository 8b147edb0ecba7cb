import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import fakeredis.aioredis as fakeredis  # noqa: E402

from kube_runner.fake_cluster import FakeCluster  # noqa: E402
from kube_runner.runner import KubeRunner  # noqa: E402
from kube_runner.settings import Settings  # noqa: E402


@pytest.fixture
def settings():
    """Fast polling, one namespace per execution."""
    return Settings(
        kubeconfig=None,
        namespace=None,
        poll_interval=0.01,
        max_poll_interval=0.05,
        timeout_sec=10,
        use_fake_cluster=True,
        use_fake_redis=True,
    )


@pytest_asyncio.fixture
async def cluster():
    fake = FakeCluster()
    yield fake
    await fake.wait_idle()


@pytest.fixture
def runner(cluster, settings):
    return KubeRunner(cluster, settings)


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()


async def wait_for_phase(cluster, namespace, name, phase="Running", timeout=5.0):
    """Block until the fake pod reaches ``phase``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        pod = cluster.pods.get((namespace, name))
        if pod is not None and pod.phase == phase:
            return pod
        await asyncio.sleep(0.01)
    raise AssertionError(f"pod {namespace}/{name} never reached {phase}")
