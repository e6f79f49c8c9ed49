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
Leader Election Coordinator for SnapLeader.

This module implements lease-based leader election between equal nodes
sharing one broadcast channel and one lease slot:
- Claim on start when the lease is absent, stale or already ours
- Leader heartbeats renew the lease and announce liveness
- Followers check lease liveness and take over a stale lease
- Explicit release hands the role over without waiting for the TTL
- Leader-to-follower state mirroring and activity pings

The lease store offers no compare-and-swap, so two nodes may briefly both
lead after a near-simultaneous claim. A leader that hears another node's
heartbeat re-reads the lease and yields if the other write landed last;
within one heartbeat period the overlap is tolerated, not prevented.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from snapleader.coordination.config import CoordinatorConfig, describe
from snapleader.coordination.lease import LeaseRecord, LeaseStore
from snapleader.coordination.messages import (
    ActivityPing,
    Claim,
    Heartbeat,
    Message,
    Release,
    StateSync,
    SyncPayload,
)
from snapleader.coordination.transport import Transport
from snapleader.exceptions import ConfigurationError
from snapleader.utils.logger import logger


class Role(str, Enum):
    """Role of a node on the channel."""
    FOLLOWER = "follower"
    LEADER = "leader"


class Coordinator:
    """One node's leader election and state broadcast.

    Example:
        >>> config = CoordinatorConfig(channel_name="session-1")
        >>> coordinator = Coordinator(
        ...     config,
        ...     transport=transport,
        ...     lease_store=LeaseStore(storage, config.lease_key),
        ...     on_role_change=lambda role: print(role),
        ... )
        >>> await coordinator.start()
        >>> if coordinator.is_leader:
        ...     coordinator.broadcast_state(SyncPayload(is_running=True))
        >>> await coordinator.destroy()
    """

    def __init__(
        self,
        config: CoordinatorConfig,
        transport: Transport,
        lease_store: LeaseStore,
        on_role_change: Optional[Callable[[Role], None]] = None,
        on_state_sync: Optional[Callable[[SyncPayload], None]] = None,
        on_activity_ping: Optional[Callable[[float], None]] = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Coordinator configuration
            transport: Broadcast medium shared with the other nodes
            lease_store: Shared lease slot
            on_role_change: Called with the new role on every transition
            on_state_sync: Called on followers with each leader state snapshot
            on_activity_ping: Called with the timestamp of each activity ping

        Raises:
            ConfigurationError: If config fails validation
        """
        errors = config.validate()
        if errors:
            raise ConfigurationError("Invalid coordinator configuration", errors=errors)

        self.config = config
        self.node_id = config.node_id
        self._clock = config.clock

        self._transport = transport
        self._lease_store = lease_store

        self._role = Role.FOLLOWER
        # Last heartbeat heard from another node: the local view of the lease
        self._known_lease: Optional[LeaseRecord] = None
        self._mirrored_state: Optional[SyncPayload] = None

        self._running = False
        self._destroyed = False
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._check_task: Optional[asyncio.Task] = None

        self._on_role_change = on_role_change
        self._on_state_sync = on_state_sync
        self._on_activity_ping = on_activity_ping

    # ==================== Properties ====================

    @property
    def role(self) -> Role:
        """Get current role."""
        return self._role

    @property
    def is_leader(self) -> bool:
        """Check if this node is the leader."""
        return self._role == Role.LEADER

    @property
    def is_destroyed(self) -> bool:
        """Check if destroy() has been called."""
        return self._destroyed

    @property
    def known_leader(self) -> Optional[str]:
        """Best local guess of the current leader's node id."""
        if self.is_leader:
            return self.node_id
        record = self._freshest_lease()
        return record.holder_id if record else None

    @property
    def mirrored_state(self) -> Optional[SyncPayload]:
        """Last state snapshot received from the leader."""
        return self._mirrored_state

    @property
    def transport(self) -> Transport:
        """Get the broadcast transport."""
        return self._transport

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Attach to the channel, attempt a claim and start the liveness check."""
        if self._running or self._destroyed:
            return

        self._running = True
        self._transport.set_handler(self._handle_message)

        self.try_claim()

        self._check_task = asyncio.create_task(self._check_loop())
        logger.info(f"Coordinator started as {self._role.value} ({describe(self.config)})")

    async def destroy(self) -> None:
        """Release leadership if held, cancel every loop and detach listeners."""
        if self._destroyed:
            return

        if self._role == Role.LEADER:
            self.release_leadership()

        self._destroyed = True
        self._running = False
        self._transport.set_handler(None)

        for task in [self._heartbeat_task, self._check_task]:
            if task and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat_task = None
        self._check_task = None

        logger.info(f"Coordinator {self.node_id} destroyed")

    # ==================== Election ====================

    def try_claim(self) -> Role:
        """Attempt to take the lease.

        Becomes leader when no lease exists, the lease is stale, or the
        lease is already held by this node; otherwise stays follower.

        Returns:
            The role after the attempt
        """
        if self._destroyed:
            return self._role

        now = self._clock()
        existing = self._lease_store.get()

        if existing is None or existing.is_stale(now, self.config.lease_ttl):
            self._become_leader(announce_claim=True)
        elif existing.holder_id == self.node_id:
            if self._role != Role.LEADER:
                self._become_leader(announce_claim=False)
        else:
            self._become_follower()

        return self._role

    def check_leader_alive(self) -> None:
        """Liveness check run every check interval.

        Followers take over an empty or stale lease. A node that finds its
        own id in a fresh lease without being leader resumes the role.
        """
        if self._destroyed:
            return

        now = self._clock()

        if self._role == Role.LEADER:
            # Another node renewed the lease after our last heartbeat
            stored = self._lease_store.get()
            if (
                stored is not None
                and stored.holder_id != self.node_id
                and not stored.is_stale(now, self.config.lease_ttl)
            ):
                self._yield_to(stored.holder_id)
            return

        existing = self._freshest_lease()

        if existing is None or existing.is_stale(now, self.config.lease_ttl):
            logger.info(f"Leader expired, node {self.node_id} attempting takeover")
            self.try_claim()
        elif existing.holder_id == self.node_id:
            self._become_leader(announce_claim=False)

    def send_heartbeat(self) -> None:
        """Renew the lease and broadcast a heartbeat (leader only)."""
        if self._destroyed or self._role != Role.LEADER:
            return
        now = self._clock()
        self._lease_store.set(self.node_id, now)
        self._transport.broadcast(Heartbeat(sender_id=self.node_id, timestamp=now))

    def release_leadership(self) -> None:
        """Give up the leader role explicitly (e.g. before shutdown)."""
        if self._destroyed or self._role != Role.LEADER:
            return

        self._transport.broadcast(Release(sender_id=self.node_id, timestamp=self._clock()))
        self._lease_store.clear(self.node_id)
        self._become_follower()

    def _freshest_lease(self) -> Optional[LeaseRecord]:
        """The stored lease, or the cached heartbeat view when it is newer."""
        stored = self._lease_store.get()
        cached = self._known_lease
        if cached is None:
            return stored
        if stored is None or cached.timestamp > stored.timestamp:
            return cached
        return stored

    def _become_leader(self, announce_claim: bool) -> None:
        """Transition to leader state."""
        if self._destroyed:
            return

        was_follower = self._role == Role.FOLLOWER
        self._role = Role.LEADER
        self._known_lease = None

        now = self._clock()
        self._lease_store.set(self.node_id, now)

        if announce_claim:
            self._transport.broadcast(Claim(sender_id=self.node_id, timestamp=now))

        # Restart heartbeat
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        self._heartbeat_task = None
        if self._running:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        # Announce immediately
        self.send_heartbeat()

        if was_follower:
            logger.info(f"Node {self.node_id} became leader")
            self._emit_role_change(Role.LEADER)

    def _yield_to(self, holder_id: str) -> None:
        logger.info(f"Node {self.node_id} yielding leadership to {holder_id}")
        self._become_follower()

    def _become_follower(self) -> None:
        """Transition to follower state."""
        was_leader = self._role == Role.LEADER
        self._role = Role.FOLLOWER

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        if was_leader:
            logger.info(f"Node {self.node_id} became follower")
            self._emit_role_change(Role.FOLLOWER)

    # ==================== Loops ====================

    async def _heartbeat_loop(self) -> None:
        """Background loop that renews the lease as leader."""
        while self._running and self._role == Role.LEADER:
            try:
                await asyncio.sleep(self.config.heartbeat_interval)
                self.send_heartbeat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Heartbeat loop error: {e}")

    async def _check_loop(self) -> None:
        """Background loop that checks leader liveness."""
        while self._running:
            try:
                await asyncio.sleep(self.config.check_interval)
                self.check_leader_alive()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Leader check loop error: {e}")

    # ==================== Messages ====================

    def _handle_message(self, message: Message) -> None:
        """Handle a message from another node."""
        if self._destroyed:
            return

        if isinstance(message, Heartbeat):
            self._handle_heartbeat(message)
        elif isinstance(message, Claim):
            self._handle_claim(message)
        elif isinstance(message, Release):
            self._handle_release(message)
        elif isinstance(message, StateSync):
            self._handle_state_sync(message)
        elif isinstance(message, ActivityPing):
            self._emit(self._on_activity_ping, message.timestamp)

    def _handle_heartbeat(self, message: Heartbeat) -> None:
        if message.sender_id == self.node_id:
            return

        # Stamped with the local clock; the sender's clock may not be comparable
        self._known_lease = LeaseRecord(holder_id=message.sender_id, timestamp=self._clock())

        if self._role == Role.LEADER:
            # Two leaders: whoever wrote the lease last keeps the role
            stored = self._lease_store.get()
            if stored is not None and stored.holder_id == message.sender_id:
                self._yield_to(message.sender_id)

    def _handle_claim(self, message: Claim) -> None:
        if message.sender_id == self.node_id:
            return
        if self._role == Role.LEADER:
            # Defend the role
            self.send_heartbeat()

    def _handle_release(self, message: Release) -> None:
        if message.sender_id == self.node_id:
            return
        if self._known_lease and self._known_lease.holder_id == message.sender_id:
            self._known_lease = None
        self.try_claim()

    def _handle_state_sync(self, message: StateSync) -> None:
        if message.sender_id == self.node_id or self._role == Role.LEADER:
            return
        self._mirrored_state = message.payload
        self._emit(self._on_state_sync, message.payload)

    # ==================== Public API ====================

    def broadcast_state(self, payload: SyncPayload) -> None:
        """Publish the leader's state to followers (no-op unless leader)."""
        if self._destroyed or self._role != Role.LEADER:
            return
        self._transport.broadcast(
            StateSync(sender_id=self.node_id, timestamp=self._clock(), payload=payload)
        )

    def broadcast_activity(self) -> None:
        """Signal user presence to the other nodes (any role)."""
        if self._destroyed:
            return
        self._transport.broadcast(ActivityPing(sender_id=self.node_id, timestamp=self._clock()))

    def get_status(self) -> Dict[str, Any]:
        """Get coordinator status."""
        lease = self._lease_store.get()
        return {
            "node_id": self.node_id,
            "role": self._role.value,
            "known_leader": self.known_leader,
            "lease": {"holder_id": lease.holder_id, "timestamp": lease.timestamp} if lease else None,
            "transport": self._transport.name,
            "destroyed": self._destroyed,
        }

    # ==================== Callbacks ====================

    def _emit_role_change(self, role: Role) -> None:
        self._emit(self._on_role_change, role)

    def _emit(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None or self._destroyed:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Coordinator callback error: {e}")


def leaders(coordinators: List[Coordinator]) -> List[str]:
    """Node ids of every coordinator that currently believes it leads."""
    return [c.node_id for c in coordinators if c.is_leader and not c.is_destroyed]
