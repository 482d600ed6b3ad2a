"""
Pytest configuration and fixtures for jupytercon tests.

The fakes below stand in for the remote services: a provisioner that counts
server launches and a kernel client that keeps a set of "alive" kernel ids.
"""

import asyncio
import itertools

import pytest

from jupytercon.config import JupyterConSettings
from jupytercon.errors import NotFoundError
from jupytercon.kernel_client import ExecutionResult, KernelSession
from jupytercon.models import KernelModel, KernelSpecs, ServerConnection, ServerInfo
from jupytercon.session_cache import MemoryStorage, SessionCache
from jupytercon.session_manager import SessionManager


class FakeProvisioner:
    """Counts start_server() calls and hands out a fixed server."""

    def __init__(self, url="http://binder.test/user/abc/", token="tok"):
        self.url = url
        self.token = token
        self.calls = 0
        self.error = None
        # When set, start_server() blocks until the event fires
        self.gate = None

    async def start_server(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return ServerInfo(url=self.url, token=self.token)


class FakeKernelClient:
    """In-memory Jupyter server: kernels are alive while their id is in `alive`."""

    def __init__(self):
        self.alive = set()
        self.start_calls = []
        self.lookups = []
        self.shut_down = []
        self.executed = []
        # code -> list of IOPub messages the kernel answers with
        self.iopub = {}
        self.list_kinds_error = None
        self._ids = itertools.count(1)

    async def list_kinds(self, connection):
        if self.list_kinds_error is not None:
            raise self.list_kinds_error
        return KernelSpecs(default="python3", kernelspecs={"python3": {}})

    async def start(self, kind, connection):
        kernel_id = f"kernel-{next(self._ids)}"
        self.start_calls.append((kind, connection))
        self.alive.add(kernel_id)
        return KernelSession(self, KernelModel(id=kernel_id, name=kind), connection)

    async def connect_by_id(self, kernel_id, connection):
        self.lookups.append(kernel_id)
        if kernel_id not in self.alive:
            raise NotFoundError(f"Kernel {kernel_id} not found")
        return KernelModel(id=kernel_id, name="python3")

    def connect_to(self, model, connection):
        return KernelSession(self, model, connection)

    async def shutdown(self, session):
        self.alive.discard(session.id)
        self.shut_down.append(session.id)

    async def execute(self, session, code, timeout=None):
        self.executed.append((session.id, code))
        # Yield so concurrent run() calls genuinely overlap
        await asyncio.sleep(0)
        result = ExecutionResult(msg_id=f"msg-{len(self.executed)}")
        for msg in self.iopub.get(code, []):
            result.add(msg)
        return result

    async def aclose(self):
        pass


async def _wait_until(predicate, timeout=2.0, step=0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(step)


@pytest.fixture
def wait_until():
    """Poll a predicate until it is true or fail the test."""
    return _wait_until


@pytest.fixture
def connection():
    return ServerConnection.from_base_url("http://example.test:8888", "secret")


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def kernel_client():
    return FakeKernelClient()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(storage):
    return SessionCache(storage)


@pytest.fixture
def test_settings(tmp_path):
    return JupyterConSettings(
        HEARTBEAT_INTERVAL=0.01,
        HEARTBEAT_ON_RUN=False,
        CACHE_PATH=tmp_path / "session.json",
    )


@pytest.fixture
def manager(provisioner, kernel_client, cache, test_settings):
    return SessionManager(
        provisioner=provisioner,
        client=kernel_client,
        cache=cache,
        settings=test_settings,
    )
