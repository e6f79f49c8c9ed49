# Copyright 2026 Firefly Software Solutions Inc
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Tracking Node for SnapLeader.

This module provides the TrackingNode class which integrates:
- Leader election between the nodes of one channel
- The tracked activity and its running duration
- Periodic state publishing from the leader to followers
- The capture scheduler, run only while this node leads

The TrackingNode is the main entry point for running a SnapLeader node.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from snapleader.capture.backend import CaptureBackend, HTTPCaptureBackend
from snapleader.capture.config import CaptureConfig
from snapleader.capture.scheduler import CaptureScheduler, CaptureState
from snapleader.capture.source import CaptureSource
from snapleader.coordination.config import CoordinatorConfig
from snapleader.coordination.coordinator import Coordinator, Role
from snapleader.coordination.lease import LeaseStore
from snapleader.coordination.messages import SyncPayload
from snapleader.coordination.storage import FileStorage, MemoryStorage, SharedStorage
from snapleader.coordination.transport import ChannelHub, Transport, open_transport
from snapleader.exceptions import CaptureError, ConfigurationError, StorageError
from snapleader.utils.logger import logger


class ActivityStatus(str, Enum):
    """Status of the tracked activity."""
    RUNNING = "running"
    PAUSED = "paused"


@dataclass
class TrackedActivity:
    """The activity this node is tracking time for.

    Attributes:
        activity_id: Backend id of the activity (time entry)
        project_id: Project the activity belongs to
        status: Running or paused
        accumulated_seconds: Duration banked before the current run
        resumed_at: Clock reading when the current run started
    """
    activity_id: str
    project_id: Optional[str] = None
    status: ActivityStatus = ActivityStatus.RUNNING
    accumulated_seconds: float = 0.0
    resumed_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self.status == ActivityStatus.RUNNING

    def duration(self, now: float) -> float:
        """Total tracked seconds as of now."""
        if self.is_running and self.resumed_at is not None:
            return self.accumulated_seconds + max(0.0, now - self.resumed_at)
        return self.accumulated_seconds

    def pause(self, now: float) -> None:
        if not self.is_running:
            return
        self.accumulated_seconds = self.duration(now)
        self.resumed_at = None
        self.status = ActivityStatus.PAUSED

    def resume(self, now: float) -> None:
        if self.is_running:
            return
        self.resumed_at = now
        self.status = ActivityStatus.RUNNING


@dataclass
class TrackingNodeConfig:
    """Configuration for a tracking node.

    Attributes:
        coordinator: Leader election settings
        capture: Capture scheduling and backend settings
        sync_interval_ms: Leader state publishing period
        capture_enabled: Whether the leader captures at all
    """
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    sync_interval_ms: int = 1000
    capture_enabled: bool = True

    @property
    def sync_interval(self) -> float:
        """State publishing period in seconds."""
        return self.sync_interval_ms / 1000.0

    @classmethod
    def from_env(cls) -> "TrackingNodeConfig":
        """Create TrackingNodeConfig from environment variables.

        Environment variables:
            SNAPLEADER_SYNC_INTERVAL: State publishing period (ms)
            SNAPLEADER_CAPTURE_ENABLED: "false" disables capture

        Plus everything read by CoordinatorConfig.from_env() and
        CaptureConfig.from_env().
        """
        return cls(
            coordinator=CoordinatorConfig.from_env(),
            capture=CaptureConfig.from_env(),
            sync_interval_ms=int(os.environ.get("SNAPLEADER_SYNC_INTERVAL", "1000")),
            capture_enabled=os.environ.get("SNAPLEADER_CAPTURE_ENABLED", "true").lower()
            not in ("0", "false", "no"),
        )

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = self.coordinator.validate() + self.capture.validate()
        if self.sync_interval_ms <= 0:
            errors.append("sync_interval_ms must be positive")
        return errors


class TrackingNode:
    """One node of a SnapLeader channel.

    Every node tracks the same activity; only the leader captures and
    publishes state, followers mirror it.

    Example:
        >>> node = await TrackingNode.create(
        ...     TrackingNodeConfig(),
        ...     source_factory=DesktopCaptureSource,
        ...     on_role_change=lambda role: print(role),
        ... )
        >>> await node.start()
        >>> await node.track("entry-1", project_id="project-1")
        >>> await node.stop()
    """

    def __init__(
        self,
        config: TrackingNodeConfig,
        transport: Transport,
        lease_store: LeaseStore,
        backend: CaptureBackend,
        source_factory: Callable[[], CaptureSource],
        storage: Optional[SharedStorage] = None,
        on_role_change: Optional[Callable[[Role], None]] = None,
        on_state_sync: Optional[Callable[[SyncPayload], None]] = None,
        on_activity_ping: Optional[Callable[[float], None]] = None,
        on_capture_state_change: Optional[Callable[[CaptureState], None]] = None,
        on_capture_error: Optional[Callable[[CaptureError], None]] = None,
        on_capture_error_cleared: Optional[Callable[[], None]] = None,
        **scheduler_options: Any,
    ) -> None:
        """Initialize the tracking node.

        Args:
            config: Node configuration
            transport: Started broadcast transport
            lease_store: Shared lease slot
            backend: Capture backend
            source_factory: Creates a capture source when capture starts
            storage: Storage owned by this node, closed on stop()
            on_role_change: UI callback for role transitions
            on_state_sync: UI callback for leader snapshots (followers)
            on_activity_ping: UI callback for user presence on other nodes
            on_capture_state_change: UI callback for capture state
            on_capture_error: UI callback for capture errors
            on_capture_error_cleared: UI callback when capture errors clear
            **scheduler_options: Passed to CaptureScheduler (sleep, rng, clock)

        Raises:
            ConfigurationError: If config fails validation
        """
        errors = config.validate()
        if errors:
            raise ConfigurationError("Invalid node configuration", errors=errors)

        self.config = config
        self.node_id = config.coordinator.node_id
        self._clock = config.coordinator.clock

        self._transport = transport
        self._backend = backend
        self._storage = storage

        self._coordinator = Coordinator(
            config.coordinator,
            transport=transport,
            lease_store=lease_store,
            on_role_change=self._handle_role_change,
            on_state_sync=self._handle_state_sync,
            on_activity_ping=self._handle_activity_ping,
        )
        self._scheduler = CaptureScheduler(
            backend=backend,
            source_factory=source_factory,
            config=config.capture,
            on_state_change=self._handle_capture_state_change,
            on_error=self._handle_capture_error,
            on_error_cleared=self._handle_capture_error_cleared,
            **scheduler_options,
        )

        self.activity: Optional[TrackedActivity] = None
        self.capture_enabled = config.capture_enabled
        self.last_user_activity: Optional[float] = None
        self.last_capture_error: Optional[CaptureError] = None

        self._running = False
        self._sync_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

        self._on_role_change = on_role_change
        self._on_state_sync = on_state_sync
        self._on_activity_ping = on_activity_ping
        self._on_capture_state_change = on_capture_state_change
        self._on_capture_error = on_capture_error
        self._on_capture_error_cleared = on_capture_error_cleared

    @classmethod
    async def create(
        cls,
        config: TrackingNodeConfig,
        source_factory: Callable[[], CaptureSource],
        backend: Optional[CaptureBackend] = None,
        storage: Optional[SharedStorage] = None,
        hub: Optional[ChannelHub] = None,
        **kwargs: Any,
    ) -> "TrackingNode":
        """Build a node with its storage, transport and backend.

        Without an explicit storage a FileStorage on
        config.coordinator.storage_dir holds the lease; if that directory
        is unusable the node falls back to private in-memory storage and
        can only ever lead itself.
        """
        owned: Optional[SharedStorage] = None
        if storage is None:
            try:
                storage = FileStorage(
                    config.coordinator.storage_dir,
                    config.coordinator.storage_poll_interval_ms,
                )
            except StorageError as e:
                logger.warning(f"{e.message}, using private in-memory storage")
                storage = MemoryStorage()
            owned = storage

        transport = await open_transport(config.coordinator, storage=storage, hub=hub)
        return cls(
            config,
            transport=transport,
            lease_store=LeaseStore(storage, config.coordinator.lease_key),
            backend=backend or HTTPCaptureBackend.from_config(config.capture),
            source_factory=source_factory,
            storage=owned,
            **kwargs,
        )

    # ==================== Properties ====================

    @property
    def coordinator(self) -> Coordinator:
        return self._coordinator

    @property
    def scheduler(self) -> CaptureScheduler:
        return self._scheduler

    @property
    def role(self) -> Role:
        """Get current role."""
        return self._coordinator.role

    @property
    def is_leader(self) -> bool:
        """Check if this node is the leader."""
        return self._coordinator.is_leader

    @property
    def is_capturing(self) -> bool:
        return self._scheduler.state == CaptureState.CAPTURING

    @property
    def mirrored_state(self) -> Optional[SyncPayload]:
        """Last snapshot received from the leader."""
        return self._coordinator.mirrored_state

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Join the channel and start publishing state."""
        if self._running:
            return

        logger.info(f"Starting tracking node {self.node_id}")
        self._running = True

        await self._coordinator.start()
        self._sync_task = asyncio.create_task(self._sync_loop())

        logger.info(f"Tracking node {self.node_id} started as {self.role.value}")

    async def stop(self) -> None:
        """Stop capture, release leadership and close the transport."""
        if not self._running:
            return

        logger.info(f"Stopping tracking node {self.node_id}")
        self._running = False

        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

        await self._scheduler.destroy()
        await self._coordinator.destroy()

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        await self._transport.stop()
        await self._backend.close()
        if self._storage is not None:
            await self._storage.close()

        logger.info(f"Tracking node {self.node_id} stopped")

    async def __aenter__(self) -> "TrackingNode":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.stop()

    # ==================== Activity ====================

    async def track(self, activity_id: str, project_id: Optional[str] = None,
                    accumulated_seconds: float = 0.0) -> None:
        """Start tracking a running activity.

        Args:
            activity_id: Backend id of the activity
            project_id: Project the activity belongs to
            accumulated_seconds: Duration already tracked elsewhere
        """
        self.activity = TrackedActivity(
            activity_id=activity_id,
            project_id=project_id,
            accumulated_seconds=accumulated_seconds,
            resumed_at=self._clock(),
        )
        self._scheduler.set_activity(activity_id, project_id)
        logger.info(f"Tracking activity {activity_id}")

        await self._ensure_capture()
        self.publish_state()

    def pause_activity(self) -> None:
        """Pause the activity; capture pauses without counting a failure."""
        if self.activity is None:
            return
        self.activity.pause(self._clock())
        self._scheduler.pause_scheduling()
        self.publish_state()

    async def resume_activity(self) -> None:
        """Resume a paused activity and, on the leader, its capture."""
        if self.activity is None:
            return
        self.activity.resume(self._clock())
        await self._ensure_capture()
        self.publish_state()

    async def clear_activity(self) -> None:
        """Stop tracking; capture stops and the source is released."""
        if self.activity is None:
            return
        logger.info(f"Stopped tracking activity {self.activity.activity_id}")
        self.activity = None
        self._scheduler.set_activity(None)
        await self._scheduler.stop()
        self.publish_state()

    def record_user_activity(self) -> None:
        """Note local user presence and tell the other nodes."""
        self.last_user_activity = self._clock()
        self._coordinator.broadcast_activity()

    # ==================== Capture ====================

    async def enable_capture(self) -> None:
        self.capture_enabled = True
        await self._ensure_capture()

    async def disable_capture(self) -> None:
        self.capture_enabled = False
        await self._scheduler.stop()
        self.publish_state()

    def retry_capture(self) -> bool:
        """Lift the failure ceiling and resume capture on the held source."""
        if not self.is_leader:
            return False
        return self._scheduler.retry()

    async def _ensure_capture(self) -> None:
        """Start or resume capture if this node should be capturing."""
        if not self._running or not self.is_leader or not self.capture_enabled:
            return
        if self.activity is None or not self.activity.is_running:
            return

        state = self._scheduler.state
        if state == CaptureState.PAUSED and self._scheduler.has_source:
            self._scheduler.resume_scheduling()
        elif state == CaptureState.IDLE:
            await self._scheduler.start(self.activity.activity_id, self.activity.project_id)
            # Leadership or the activity may have changed while the source was acquired
            if not self.is_leader or self.activity is None or not self.activity.is_running:
                self._scheduler.pause_scheduling()

    # ==================== State Publishing ====================

    def build_payload(self) -> SyncPayload:
        """Snapshot of this node's view for followers."""
        activity = self.activity
        if activity is None:
            return SyncPayload(is_capturing=self.is_capturing)
        return SyncPayload(
            is_running=activity.is_running,
            is_paused=not activity.is_running,
            active_entry_id=activity.activity_id,
            project_id=activity.project_id,
            is_capturing=self.is_capturing,
            display_duration_seconds=int(activity.duration(self._clock())),
        )

    def publish_state(self) -> None:
        """Publish a snapshot if this node leads."""
        if not self._running or not self.is_leader:
            return
        self._coordinator.broadcast_state(self.build_payload())

    async def _sync_loop(self) -> None:
        """Background loop that publishes state while an activity runs."""
        while self._running:
            try:
                await asyncio.sleep(self.config.sync_interval)
                if self.activity is not None and self.activity.is_running:
                    self.publish_state()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"State sync loop error: {e}")

    # ==================== Callbacks ====================

    def _handle_role_change(self, role: Role) -> None:
        """Start capture on becoming leader; pause it on losing the role."""
        logger.info(f"Node {self.node_id} role changed to: {role.value}")
        if role == Role.LEADER:
            self._spawn(self._on_became_leader())
        else:
            self._scheduler.pause_scheduling()
        self._emit(self._on_role_change, role)

    async def _on_became_leader(self) -> None:
        await self._ensure_capture()
        self.publish_state()

    def _handle_state_sync(self, payload: SyncPayload) -> None:
        self._emit(self._on_state_sync, payload)

    def _handle_activity_ping(self, timestamp: float) -> None:
        self.last_user_activity = self._clock()
        self._emit(self._on_activity_ping, timestamp)

    def _handle_capture_state_change(self, state: CaptureState) -> None:
        logger.debug(f"Capture state changed to: {state.value}")
        self._emit(self._on_capture_state_change, state)

    def _handle_capture_error(self, error: CaptureError) -> None:
        self.last_capture_error = error
        self._emit(self._on_capture_error, error)

    def _handle_capture_error_cleared(self) -> None:
        self.last_capture_error = None
        self._emit(self._on_capture_error_cleared)

    def _spawn(self, coro: Any) -> None:
        if not self._running:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _emit(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Node callback error: {e}")

    # ==================== Status ====================

    def get_status(self) -> Dict[str, Any]:
        """Get node status."""
        mirrored = self.mirrored_state
        activity = self.activity
        return {
            "node_id": self.node_id,
            "role": self.role.value,
            "is_leader": self.is_leader,
            "coordinator": self._coordinator.get_status(),
            "capture": self._scheduler.get_status(),
            "capture_enabled": self.capture_enabled,
            "activity": {
                "activity_id": activity.activity_id,
                "project_id": activity.project_id,
                "status": activity.status.value,
                "duration_seconds": int(activity.duration(self._clock())),
            } if activity else None,
            "mirrored_state": mirrored.to_dict() if mirrored else None,
            "last_capture_error": str(self.last_capture_error) if self.last_capture_error else None,
        }
