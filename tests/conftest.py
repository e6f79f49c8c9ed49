# Copyright 2026 Firefly Software Solutions Inc
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures for SnapLeader tests."""

import asyncio
import io
from typing import Callable, Dict, List, Optional

import pytest
from PIL import Image

from snapleader.capture.backend import CaptureBackend, CaptureRecord, UploadTarget
from snapleader.capture.source import CaptureSource
from snapleader.coordination.config import CoordinatorConfig
from snapleader.coordination.coordinator import Coordinator, Role
from snapleader.coordination.lease import LeaseStore
from snapleader.coordination.storage import MemoryStorageArea
from snapleader.coordination.transport import ChannelHub, LocalChannelTransport
from snapleader.exceptions import (
    FrameRenderError,
    MetadataPersistError,
    SourceAcquisitionDeniedError,
    UploadTargetRequestError,
    UploadTransferError,
)


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 10) -> None:
    """Let call_soon deliveries and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until predicate() holds, failing the test after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeSleep:
    """Injectable sleep that records delays and blocks until released."""

    def __init__(self) -> None:
        self.delays: List[float] = []
        self.waiting = 0
        self._gate = asyncio.Semaphore(0)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.waiting += 1
        try:
            await self._gate.acquire()
        finally:
            self.waiting -= 1

    def release(self, count: int = 1) -> None:
        for _ in range(count):
            self._gate.release()


def make_frame(width: int = 640, height: int = 480) -> bytes:
    """PNG of random noise, large enough to survive JPEG encoding."""
    image = Image.effect_noise((width, height), 64).convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class FakeSource(CaptureSource):
    """Capture source serving a fixed frame."""

    name = "fake"

    def __init__(self, frame: Optional[bytes] = None, deny: bool = False) -> None:
        super().__init__()
        self.frame = frame if frame is not None else make_frame()
        self.deny = deny
        self.acquired = 0
        self.released = 0
        self.grabs = 0
        self.fail_grab = False

    async def acquire(self) -> None:
        if self.deny:
            raise SourceAcquisitionDeniedError()
        self.acquired += 1
        self._live = True

    async def grab_frame(self) -> bytes:
        self.grabs += 1
        if self.fail_grab:
            raise FrameRenderError("grab failed")
        return self.frame

    async def release(self) -> None:
        if self._live:
            self.released += 1
        await super().release()

    def end(self) -> None:
        self._ended()


class FakeBackend(CaptureBackend):
    """In-memory backend with per-stage failure injection."""

    def __init__(self) -> None:
        self.targets: List[str] = []
        self.uploads: List[bytes] = []
        self.records: List[CaptureRecord] = []
        self.fail_stage: Optional[str] = None
        self.calls = 0
        self.closed = False
        # Set to block the upload step until released
        self.upload_gate: Optional[asyncio.Event] = None

    async def request_upload_target(self, activity_id: str) -> UploadTarget:
        self.calls += 1
        if self.fail_stage == "upload_target":
            raise UploadTargetRequestError("no target", status=500)
        url = f"https://storage.test/uploads/{activity_id}-{self.calls}.jpg?sig=abc"
        self.targets.append(url)
        return UploadTarget(upload_url=url)

    async def upload(self, target: UploadTarget, data: bytes, content_type: str = "image/jpeg") -> None:
        if self.upload_gate is not None:
            await self.upload_gate.wait()
        if self.fail_stage == "upload":
            raise UploadTransferError("upload refused", status=503)
        self.uploads.append(data)

    async def persist_metadata(self, record: CaptureRecord) -> None:
        if self.fail_stage == "persist":
            raise MetadataPersistError("persist refused", status=500)
        self.records.append(record)

    async def close(self) -> None:
        self.closed = True


class Cluster:
    """Coordinators sharing one in-process hub and one memory storage area."""

    channel = "test-channel"

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.hub = ChannelHub()
        self.area = MemoryStorageArea()
        self.nodes: List[Coordinator] = []
        self.role_changes: Dict[str, List[Role]] = {}

    def config(self, node_id: str, **overrides) -> CoordinatorConfig:
        params = {"node_id": node_id, "channel_name": self.channel, "clock": self.clock}
        params.update(overrides)
        return CoordinatorConfig(**params)

    async def spawn(
        self,
        node_id: str,
        start: bool = True,
        on_state_sync: Optional[Callable] = None,
        on_activity_ping: Optional[Callable] = None,
        **overrides,
    ) -> Coordinator:
        config = self.config(node_id, **overrides)
        transport = LocalChannelTransport(self.hub, config.channel_name)
        await transport.start()
        changes = self.role_changes.setdefault(node_id, [])
        coordinator = Coordinator(
            config,
            transport=transport,
            lease_store=LeaseStore(self.area.context(), config.lease_key),
            on_role_change=changes.append,
            on_state_sync=on_state_sync,
            on_activity_ping=on_activity_ping,
        )
        self.nodes.append(coordinator)
        if start:
            await coordinator.start()
        return coordinator

    def lease_store(self) -> LeaseStore:
        return LeaseStore(self.area.context())

    def leaders(self) -> List[str]:
        return [c.node_id for c in self.nodes if c.is_leader and not c.is_destroyed]

    async def shutdown(self) -> None:
        for coordinator in self.nodes:
            await coordinator.destroy()
            await coordinator.transport.stop()


@pytest.fixture
def clock():
    """Fake clock starting at t=1000s."""
    return FakeClock()


@pytest.fixture
def cluster(clock):
    """In-process cluster on the fake clock."""
    return Cluster(clock)


@pytest.fixture
def fake_sleep():
    """Gated sleep for the capture scheduler."""
    return FakeSleep()


@pytest.fixture
def fake_sleep_cls():
    """The FakeSleep class, for tests that run several schedulers."""
    return FakeSleep


@pytest.fixture
def fake_backend():
    """Recording capture backend."""
    return FakeBackend()


@pytest.fixture
def fake_source():
    """Capture source with a valid frame."""
    return FakeSource()


@pytest.fixture
def fake_source_cls():
    """The FakeSource class, for tests that need several or a denying one."""
    return FakeSource


@pytest.fixture
def frame_bytes():
    """A decodable PNG frame."""
    return make_frame()


@pytest.fixture
def settle_loop():
    """Coroutine function that drains pending callbacks."""
    return settle


@pytest.fixture
def wait_until():
    """Coroutine function that polls a predicate until it holds."""
    return eventually
