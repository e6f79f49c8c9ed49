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
Coordinator Configuration for SnapLeader.

This module provides the configuration for leader election between nodes
sharing one channel: lease timing, channel and storage names, and the
transport backend to use.
"""

from __future__ import annotations

import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

DEFAULT_CHANNEL_NAME = "snapleader-time-tracking"
DEFAULT_LEASE_KEY = "snapleader-leader"

TRANSPORT_CHOICES = ("auto", "local", "multicast", "storage", "none")


def generate_node_id() -> str:
    """Generate an identifier unique to one execution context."""
    return f"node-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass
class CoordinatorConfig:
    """Configuration for leader election.

    Timing parameters must satisfy heartbeat_interval < lease_ttl / 2 so a
    single missed heartbeat never triggers a takeover.

    Attributes:
        node_id: Unique identifier for this node (generated when empty)
        channel_name: Channel shared by every node of one logical session
        lease_key: Storage key holding the lease record
        lease_ttl_ms: Age after which a lease is considered stale
        heartbeat_interval_ms: Leader heartbeat period
        check_interval_ms: Follower liveness check period (defaults to TTL)
        transport: Backend selection, one of TRANSPORT_CHOICES
        storage_dir: Directory for file-backed shared storage
        multicast_group: UDP multicast group for the multicast backend
        multicast_port: UDP port (0 derives one from the channel name)
        storage_poll_interval_ms: Poll period for file change notifications
        clock: Time source for lease timestamps, in seconds
    """

    node_id: str = ""
    channel_name: str = DEFAULT_CHANNEL_NAME
    lease_key: str = DEFAULT_LEASE_KEY

    # Timing
    lease_ttl_ms: int = 8000         # leader must heartbeat within this window
    heartbeat_interval_ms: int = 3000
    check_interval_ms: int = 0       # 0 means "same as lease_ttl_ms"

    # Transport
    transport: str = "auto"
    storage_dir: str = "./.snapleader"
    multicast_group: str = "239.255.42.99"
    multicast_port: int = 0
    storage_poll_interval_ms: int = 100

    # Runtime only, not loaded from env
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Generate node_id and check interval if not provided."""
        if not self.node_id:
            self.node_id = generate_node_id()
        if not self.check_interval_ms:
            self.check_interval_ms = self.lease_ttl_ms

    @property
    def lease_ttl(self) -> float:
        """Lease TTL in seconds."""
        return self.lease_ttl_ms / 1000.0

    @property
    def heartbeat_interval(self) -> float:
        """Heartbeat period in seconds."""
        return self.heartbeat_interval_ms / 1000.0

    @property
    def check_interval(self) -> float:
        """Liveness check period in seconds."""
        return self.check_interval_ms / 1000.0

    @property
    def message_key(self) -> str:
        """Storage key used by the shared-storage transport."""
        return f"{self.channel_name}-msg"

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        """Create CoordinatorConfig from environment variables.

        Environment variables:
            SNAPLEADER_NODE_ID: Unique node identifier
            SNAPLEADER_CHANNEL: Channel name
            SNAPLEADER_LEASE_KEY: Lease storage key
            SNAPLEADER_LEASE_TTL: Lease TTL (ms)
            SNAPLEADER_HEARTBEAT_INTERVAL: Heartbeat interval (ms)
            SNAPLEADER_CHECK_INTERVAL: Follower check interval (ms)
            SNAPLEADER_TRANSPORT: auto, local, multicast, storage or none
            SNAPLEADER_STORAGE_DIR: Directory for shared storage
            SNAPLEADER_MULTICAST_GROUP: Multicast group address
            SNAPLEADER_MULTICAST_PORT: Multicast port

        Returns:
            CoordinatorConfig with values from environment
        """
        return cls(
            node_id=os.environ.get("SNAPLEADER_NODE_ID", ""),
            channel_name=os.environ.get("SNAPLEADER_CHANNEL", DEFAULT_CHANNEL_NAME),
            lease_key=os.environ.get("SNAPLEADER_LEASE_KEY", DEFAULT_LEASE_KEY),
            lease_ttl_ms=int(os.environ.get("SNAPLEADER_LEASE_TTL", "8000")),
            heartbeat_interval_ms=int(
                os.environ.get("SNAPLEADER_HEARTBEAT_INTERVAL", "3000")
            ),
            check_interval_ms=int(os.environ.get("SNAPLEADER_CHECK_INTERVAL", "0")),
            transport=os.environ.get("SNAPLEADER_TRANSPORT", "auto"),
            storage_dir=os.environ.get("SNAPLEADER_STORAGE_DIR", "./.snapleader"),
            multicast_group=os.environ.get("SNAPLEADER_MULTICAST_GROUP", "239.255.42.99"),
            multicast_port=int(os.environ.get("SNAPLEADER_MULTICAST_PORT", "0")),
        )

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.node_id:
            errors.append("node_id is required")

        if not self.channel_name:
            errors.append("channel_name is required")

        if not self.lease_key:
            errors.append("lease_key is required")

        if self.lease_ttl_ms <= 0:
            errors.append("lease_ttl_ms must be positive")

        if self.heartbeat_interval_ms <= 0:
            errors.append("heartbeat_interval_ms must be positive")

        # At least one heartbeat may be missed without a spurious takeover
        if self.heartbeat_interval_ms * 2 >= self.lease_ttl_ms:
            errors.append("heartbeat_interval_ms must be less than half of lease_ttl_ms")

        if self.check_interval_ms <= 0:
            errors.append("check_interval_ms must be positive")

        if self.transport not in TRANSPORT_CHOICES:
            errors.append(f"transport must be one of {', '.join(TRANSPORT_CHOICES)}")

        if self.multicast_port < 0 or self.multicast_port > 65535:
            errors.append("multicast_port must be between 0 and 65535")

        return errors

    def resolved_multicast_port(self) -> int:
        """Return the configured port, or one derived from the channel name."""
        if self.multicast_port:
            return self.multicast_port
        # Stable across processes, unlike hash()
        digest = sum(ord(ch) * (i + 1) for i, ch in enumerate(self.channel_name))
        return 40000 + digest % 20000


def describe(config: Optional[CoordinatorConfig]) -> str:
    """Short human-readable summary used in log lines."""
    if config is None:
        return "<no config>"
    return (
        f"node={config.node_id} channel={config.channel_name} "
        f"ttl={config.lease_ttl_ms}ms heartbeat={config.heartbeat_interval_ms}ms "
        f"transport={config.transport}"
    )
