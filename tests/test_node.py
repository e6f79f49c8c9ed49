# Copyright 2026 Firefly Software Solutions Inc
# SPDX-License-Identifier: Apache-2.0

"""Tests for TrackingNode: leadership-gated capture and state mirroring."""

import asyncio
import os
from unittest.mock import patch

import pytest

from snapleader.capture.backend import HTTPCaptureBackend
from snapleader.capture.config import CaptureConfig
from snapleader.capture.scheduler import CaptureState
from snapleader.coordination.config import CoordinatorConfig
from snapleader.coordination.coordinator import Role
from snapleader.coordination.lease import LeaseStore
from snapleader.coordination.storage import MemoryStorage
from snapleader.coordination.transport import LocalChannelTransport, NullTransport
from snapleader.exceptions import ConfigurationError, UploadTransferError
from snapleader.node import (
    ActivityStatus,
    TrackedActivity,
    TrackingNode,
    TrackingNodeConfig,
)


class NodeHarness:
    """Builds TrackingNodes on a test cluster, each with its own fakes."""

    def __init__(self, cluster, backend, source_cls, sleep_cls):
        self.cluster = cluster
        self.backend = backend
        self.source_cls = source_cls
        self.sleep_cls = sleep_cls
        self.nodes = []
        self.sources = {}
        self.sleeps = {}
        self.roles = {}
        self.syncs = {}

    async def spawn(self, node_id, start=True, sync_interval_ms=60000, **kwargs):
        coordinator = self.cluster.config(node_id)
        config = TrackingNodeConfig(coordinator=coordinator, sync_interval_ms=sync_interval_ms)
        transport = LocalChannelTransport(self.cluster.hub, coordinator.channel_name)
        await transport.start()

        sources = self.sources.setdefault(node_id, [])

        def source_factory():
            source = self.source_cls()
            sources.append(source)
            return source

        sleep = self.sleeps[node_id] = self.sleep_cls()
        node = TrackingNode(
            config,
            transport=transport,
            lease_store=LeaseStore(self.cluster.area.context(), coordinator.lease_key),
            backend=self.backend,
            source_factory=source_factory,
            on_role_change=self.roles.setdefault(node_id, []).append,
            on_state_sync=self.syncs.setdefault(node_id, []).append,
            sleep=sleep,
            **kwargs,
        )
        self.nodes.append(node)
        if start:
            await node.start()
        return node

    async def shutdown(self):
        for node in self.nodes:
            await node.stop()


@pytest.fixture
def harness(cluster, fake_backend, fake_source_cls, fake_sleep_cls):
    return NodeHarness(cluster, fake_backend, fake_source_cls, fake_sleep_cls)


class TestTrackedActivity:
    """Tests for TrackedActivity duration bookkeeping."""

    def test_running_duration(self):
        activity = TrackedActivity("entry-1", accumulated_seconds=60.0, resumed_at=100.0)

        assert activity.duration(130.0) == 90.0

    def test_pause_banks_time(self):
        activity = TrackedActivity("entry-1", resumed_at=100.0)

        activity.pause(145.0)
        activity.pause(500.0)

        assert activity.status == ActivityStatus.PAUSED
        assert activity.duration(1000.0) == 45.0

    def test_resume_continues(self):
        activity = TrackedActivity("entry-1", resumed_at=0.0)
        activity.pause(10.0)

        activity.resume(50.0)

        assert activity.is_running
        assert activity.duration(55.0) == 15.0

    def test_clock_going_backwards(self):
        """A clock reading before the resume point adds nothing."""
        activity = TrackedActivity("entry-1", accumulated_seconds=5.0, resumed_at=100.0)

        assert activity.duration(90.0) == 5.0


class TestTrackingNodeConfig:
    """Tests for TrackingNodeConfig."""

    def test_defaults(self):
        config = TrackingNodeConfig()

        assert config.sync_interval == 1.0
        assert config.capture_enabled is True
        assert config.validate() == []

    def test_validate_collects_all_sections(self):
        config = TrackingNodeConfig(
            coordinator=CoordinatorConfig(heartbeat_interval_ms=5000),
            capture=CaptureConfig(jpeg_quality=0),
            sync_interval_ms=0,
        )

        errors = config.validate()

        assert len(errors) == 3
        assert "sync_interval_ms must be positive" in errors

    def test_from_env(self):
        env = {
            "SNAPLEADER_SYNC_INTERVAL": "250",
            "SNAPLEADER_CAPTURE_ENABLED": "false",
            "SNAPLEADER_CHANNEL": "team-room",
            "SNAPLEADER_BACKEND_URL": "https://tracker.example.com",
        }
        with patch.dict(os.environ, env, clear=True):
            config = TrackingNodeConfig.from_env()

        assert config.sync_interval_ms == 250
        assert config.capture_enabled is False
        assert config.coordinator.channel_name == "team-room"
        assert config.capture.backend_url == "https://tracker.example.com"

    def test_invalid_config_rejected(self, fake_backend, fake_source_cls):
        config = TrackingNodeConfig(sync_interval_ms=-1)

        with pytest.raises(ConfigurationError):
            TrackingNode(
                config,
                transport=NullTransport("room"),
                lease_store=LeaseStore(MemoryStorage()),
                backend=fake_backend,
                source_factory=fake_source_cls,
            )


class TestLeaderCapture:
    """Only the leader captures."""

    @pytest.mark.asyncio
    async def test_leader_captures_follower_mirrors(self, harness, fake_backend, wait_until):
        """The leader captures and publishes; the follower only mirrors."""
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b")

        await a.track("entry-1", "proj-1")
        await b.track("entry-1", "proj-1")
        await wait_until(lambda: len(fake_backend.records) == 1)
        await wait_until(lambda: b.mirrored_state is not None)

        assert a.is_leader and not b.is_leader
        assert a.is_capturing
        assert b.scheduler.state == CaptureState.IDLE
        assert harness.sources.get("node-b") == []
        assert b.mirrored_state.active_entry_id == "entry-1"
        assert b.mirrored_state.is_running is True
        assert b.mirrored_state.is_capturing is True
        assert harness.syncs["node-a"] == []

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_capture_follows_leadership_handover(self, harness, wait_until):
        """When the leader stops, the follower takes over and starts capturing."""
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b")
        await a.track("entry-1")
        await b.track("entry-1")

        await a.stop()
        await wait_until(lambda: b.is_capturing)

        assert b.is_leader
        assert harness.roles["node-b"] == [Role.LEADER]
        assert harness.sources["node-a"][0].released == 1
        assert len(harness.sources["node-b"]) == 1

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_losing_leadership_pauses_then_resumes(self, harness, cluster, clock, wait_until):
        """A deposed leader pauses capture and resumes on the same source later."""
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b")
        await a.track("entry-1")
        await b.track("entry-1")
        await wait_until(lambda: harness.sleeps["node-a"].waiting == 1)

        # node-a drops off the channel and its lease goes stale
        cluster.hub.partitioned.add(a.coordinator.transport)
        clock.advance(9.0)
        b.coordinator.check_leader_alive()
        await wait_until(lambda: b.is_capturing)

        cluster.hub.partitioned.clear()
        a.coordinator.check_leader_alive()

        assert not a.is_leader
        assert a.scheduler.state == CaptureState.PAUSED
        assert a.scheduler.has_source
        assert a.scheduler.consecutive_failures == 0
        assert b.is_leader

        await b.stop()
        await wait_until(lambda: a.is_capturing)

        assert a.is_leader
        assert len(harness.sources["node-a"]) == 1
        assert harness.sources["node-a"][0].acquired == 1
        assert harness.roles["node-a"] == [Role.LEADER, Role.FOLLOWER, Role.LEADER]

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_leadership_lost_while_acquiring(
        self, harness, fake_backend, fake_source_cls, settle_loop, wait_until
    ):
        """A source granted after the role is gone leaves capture paused."""
        gate = asyncio.Event()

        class SlowSource(fake_source_cls):
            async def acquire(self):
                await gate.wait()
                await super().acquire()

        harness.source_cls = SlowSource
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b")

        tracking = asyncio.create_task(a.track("entry-1"))
        await wait_until(lambda: len(harness.sources["node-a"]) == 1)

        a.coordinator.release_leadership()
        await wait_until(lambda: b.is_leader)
        gate.set()
        await tracking
        await settle_loop()

        assert not a.is_leader
        assert a.scheduler.state == CaptureState.PAUSED
        assert a.scheduler.has_source
        assert fake_backend.calls == 0
        assert fake_backend.uploads == []

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_activity_paused_while_acquiring(
        self, harness, fake_backend, fake_source_cls, settle_loop, wait_until
    ):
        gate = asyncio.Event()

        class SlowSource(fake_source_cls):
            async def acquire(self):
                await gate.wait()
                await super().acquire()

        harness.source_cls = SlowSource
        a = await harness.spawn("node-a")

        tracking = asyncio.create_task(a.track("entry-1"))
        await wait_until(lambda: len(harness.sources["node-a"]) == 1)

        a.pause_activity()
        gate.set()
        await tracking
        await settle_loop()

        assert a.is_leader
        assert a.scheduler.state == CaptureState.PAUSED
        assert fake_backend.calls == 0

        await a.resume_activity()
        assert a.is_capturing

        await wait_until(lambda: harness.sleeps["node-a"].waiting == 1)
        harness.sleeps["node-a"].release()
        await wait_until(lambda: fake_backend.calls == 1)

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_capture_error_clears_on_restart(self, harness, fake_backend, wait_until):
        """Restarting capture clears an error reported by the previous run."""
        fake_backend.fail_stage = "upload"
        cleared = []
        a = await harness.spawn("node-a", on_capture_error_cleared=lambda: cleared.append(True))

        await a.track("entry-1")
        await wait_until(lambda: a.last_capture_error is not None)

        await a.disable_capture()
        assert a.last_capture_error is not None

        fake_backend.fail_stage = None
        await a.enable_capture()

        assert a.is_capturing
        assert a.last_capture_error is None
        assert cleared == [True]
        assert a.get_status()["last_capture_error"] is None

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_capture_disabled(self, harness, wait_until):
        """With capture disabled the leader tracks without capturing."""
        a = await harness.spawn("node-a")
        await a.disable_capture()

        await a.track("entry-1")
        assert a.scheduler.state == CaptureState.IDLE
        assert harness.sources["node-a"] == []

        await a.enable_capture()
        assert a.is_capturing

        await a.disable_capture()
        assert a.scheduler.state == CaptureState.IDLE
        assert harness.sources["node-a"][0].released == 1

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_capture_errors_surface(self, harness, fake_backend, wait_until):
        """Capture errors reach the node and clear after a success."""
        fake_backend.fail_stage = "upload"
        errors = []
        cleared = []
        a = await harness.spawn(
            "node-a",
            on_capture_error=errors.append,
            on_capture_error_cleared=lambda: cleared.append(True),
        )

        await a.track("entry-1")
        await wait_until(lambda: a.last_capture_error is not None)

        assert isinstance(a.last_capture_error, UploadTransferError)
        assert errors == [a.last_capture_error]

        fake_backend.fail_stage = None
        harness.sleeps["node-a"].release()
        await wait_until(lambda: a.last_capture_error is None)
        assert cleared == [True]

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_retry_capture(self, harness, wait_until):
        """Only a leader holding a source can retry."""
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b")

        assert a.retry_capture() is False
        assert b.retry_capture() is False

        await a.track("entry-1")
        assert a.retry_capture() is True

        await harness.shutdown()


class TestActivity:
    """Tests for the tracked activity lifecycle on a node."""

    @pytest.mark.asyncio
    async def test_pause_and_resume_activity(self, harness, clock, wait_until):
        """Pausing the activity pauses capture; resuming picks it up again."""
        a = await harness.spawn("node-a")
        await a.track("entry-1", accumulated_seconds=60.0)
        await wait_until(lambda: harness.sleeps["node-a"].waiting == 1)

        clock.advance(30.0)
        a.pause_activity()
        clock.advance(10.0)

        assert a.scheduler.state == CaptureState.PAUSED
        payload = a.build_payload()
        assert payload.is_paused is True
        assert payload.display_duration_seconds == 90

        await a.resume_activity()

        assert a.is_capturing
        assert len(harness.sources["node-a"]) == 1
        assert a.scheduler.consecutive_failures == 0

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_clear_activity(self, harness, wait_until):
        """Clearing stops capture and releases the source."""
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b")
        await a.track("entry-1")

        await a.clear_activity()
        await wait_until(lambda: b.mirrored_state is not None and b.mirrored_state.active_entry_id is None)

        assert a.activity is None
        assert a.scheduler.state == CaptureState.IDLE
        assert harness.sources["node-a"][0].released == 1
        assert b.mirrored_state.is_running is False

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_sync_loop_publishes_while_running(self, harness, wait_until):
        """The leader republishes state on its sync interval."""
        a = await harness.spawn("node-a", sync_interval_ms=20)
        await harness.spawn("node-b")
        await a.track("entry-1")

        await wait_until(lambda: len(harness.syncs["node-b"]) >= 3)

        assert all(p.active_entry_id == "entry-1" for p in harness.syncs["node-b"])

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_user_activity_ping(self, harness, clock, settle_loop):
        """User presence on one node reaches the others."""
        pings = []
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b", on_activity_ping=pings.append)

        clock.advance(5.0)
        a.record_user_activity()
        await settle_loop()

        assert a.last_user_activity == clock()
        assert b.last_user_activity == clock()
        assert pings == [clock()]

        await harness.shutdown()


class TestNodeLifecycle:
    """Tests for creation, start and stop."""

    @pytest.mark.asyncio
    async def test_create_with_hub(self, cluster, fake_backend, fake_source_cls):
        """create() wires the requested transport and the given storage."""
        config = TrackingNodeConfig(coordinator=cluster.config("node-a", transport="local"))

        node = await TrackingNode.create(
            config,
            source_factory=fake_source_cls,
            backend=fake_backend,
            storage=cluster.area.context(),
            hub=cluster.hub,
        )
        async with node:
            assert node.is_leader
            assert isinstance(node.coordinator.transport, LocalChannelTransport)
            assert cluster.lease_store().get().holder_id == "node-a"

        assert fake_backend.closed
        assert cluster.lease_store().get() is None

    @pytest.mark.asyncio
    async def test_create_falls_back_to_memory_storage(self, tmp_path, fake_source_cls):
        """An unusable storage directory leaves the node leading alone."""
        blocker = tmp_path / "file"
        blocker.write_text("x")
        config = TrackingNodeConfig(
            coordinator=CoordinatorConfig(transport="none", storage_dir=str(blocker / "sub")),
        )

        node = await TrackingNode.create(config, source_factory=fake_source_cls)
        async with node:
            assert node.is_leader
            assert isinstance(node.coordinator.transport, NullTransport)
            assert isinstance(node._storage, MemoryStorage)
            assert isinstance(node._backend, HTTPCaptureBackend)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, harness):
        a = await harness.spawn("node-a")
        await a.track("entry-1")

        await a.stop()
        await a.stop()

        assert a.coordinator.is_destroyed
        assert a.scheduler.is_destroyed

    @pytest.mark.asyncio
    async def test_follower_does_not_publish(self, harness, settle_loop):
        a = await harness.spawn("node-a")
        b = await harness.spawn("node-b")
        await b.track("entry-1")
        await settle_loop()

        assert a.mirrored_state is None

        await harness.shutdown()

    @pytest.mark.asyncio
    async def test_status(self, harness, clock):
        a = await harness.spawn("node-a")
        await a.track("entry-1", "proj-1")
        clock.advance(12.0)

        status = a.get_status()

        assert status["role"] == "leader"
        assert status["activity"] == {
            "activity_id": "entry-1",
            "project_id": "proj-1",
            "status": "running",
            "duration_seconds": 12,
        }
        assert status["capture"]["state"] == "capturing"
        assert status["coordinator"]["lease"]["holder_id"] == "node-a"
        assert status["mirrored_state"] is None
        assert status["last_capture_error"] is None

        await harness.shutdown()
