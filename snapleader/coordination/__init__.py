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
Peer Coordination for SnapLeader.

Lets exactly one of several equal nodes drive the capture task while the
others mirror its state.

Key Components:
- Coordinator: Lease-based leader election and state broadcast
- LeaseStore: The shared, racy leader slot
- Transport: Broadcast medium (in-process, multicast, shared storage)
- SharedStorage: Key/value areas with cross-context change notifications
- CoordinatorConfig: Timing, channel and backend settings
"""

from snapleader.coordination.config import CoordinatorConfig
from snapleader.coordination.coordinator import Coordinator, Role
from snapleader.coordination.lease import LeaseRecord, LeaseStore
from snapleader.coordination.messages import (
    ActivityPing,
    Claim,
    Heartbeat,
    MessageType,
    Release,
    StateSync,
    SyncPayload,
)
from snapleader.coordination.storage import (
    FileStorage,
    MemoryStorage,
    MemoryStorageArea,
    SharedStorage,
)
from snapleader.coordination.transport import (
    ChannelHub,
    LocalChannelTransport,
    MulticastTransport,
    NullTransport,
    StorageTransport,
    Transport,
    open_transport,
)

__all__ = [
    "ActivityPing",
    "ChannelHub",
    "Claim",
    "Coordinator",
    "CoordinatorConfig",
    "FileStorage",
    "Heartbeat",
    "LeaseRecord",
    "LeaseStore",
    "LocalChannelTransport",
    "MemoryStorage",
    "MemoryStorageArea",
    "MessageType",
    "MulticastTransport",
    "NullTransport",
    "Release",
    "Role",
    "SharedStorage",
    "StateSync",
    "StorageTransport",
    "SyncPayload",
    "Transport",
    "open_transport",
]
