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
Coordination Messages for SnapLeader.

This module defines the messages exchanged between nodes on one channel:
- Heartbeat: Leader liveness, sent every heartbeat interval
- Claim: Announces that a node has just taken the lease
- Release: Leader gives up the role voluntarily
- StateSync: Leader's authoritative view of the tracked activity
- ActivityPing: User presence signal from any node

Messages are transient and JSON-serializable. They are never persisted.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class MessageType(str, Enum):
    """Wire tags of coordination messages."""
    HEARTBEAT = "leader-heartbeat"
    CLAIM = "leader-claim"
    RELEASE = "leader-release"
    STATE_SYNC = "state-sync"
    ACTIVITY_PING = "activity-ping"


@dataclass
class SyncPayload:
    """Authoritative snapshot of background-task state, published by the leader.

    Attributes:
        is_running: Whether the tracked activity is running
        is_paused: Whether the tracked activity is paused
        active_entry_id: Identifier of the tracked activity, if any
        project_id: Project of the tracked activity, if any
        is_capturing: Whether the capture scheduler holds a live source
        display_duration_seconds: Elapsed tracked time to display
    """
    is_running: bool = False
    is_paused: bool = False
    active_entry_id: Optional[str] = None
    project_id: Optional[str] = None
    is_capturing: bool = False
    display_duration_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "isRunning": self.is_running,
            "isPaused": self.is_paused,
            "activeEntryId": self.active_entry_id,
            "projectId": self.project_id,
            "isCapturing": self.is_capturing,
            "displayDurationSeconds": self.display_duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncPayload":
        """Deserialize from dictionary."""
        return cls(
            is_running=bool(data.get("isRunning", False)),
            is_paused=bool(data.get("isPaused", False)),
            active_entry_id=data.get("activeEntryId"),
            project_id=data.get("projectId"),
            is_capturing=bool(data.get("isCapturing", False)),
            display_duration_seconds=int(data.get("displayDurationSeconds", 0)),
        )


@dataclass
class CoordinationMessage:
    """Base class for coordination messages."""
    sender_id: str
    timestamp: float = field(default_factory=time.monotonic)

    message_type = MessageType.HEARTBEAT

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "type": self.message_type.value,
            "senderId": self.sender_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoordinationMessage":
        """Deserialize from dictionary."""
        return cls(
            sender_id=data.get("senderId", ""),
            timestamp=float(data.get("timestamp", 0.0)),
        )

    def to_json(self) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict())


@dataclass
class Heartbeat(CoordinationMessage):
    """Periodic liveness proof from the current leader."""

    message_type = MessageType.HEARTBEAT


@dataclass
class Claim(CoordinationMessage):
    """Announcement that the sender has just taken the lease."""

    message_type = MessageType.CLAIM


@dataclass
class Release(CoordinationMessage):
    """Voluntary release of the leader role."""

    message_type = MessageType.RELEASE


@dataclass
class ActivityPing(CoordinationMessage):
    """User presence signal; forwarded to a callback, never stored."""

    message_type = MessageType.ACTIVITY_PING


@dataclass
class StateSync(CoordinationMessage):
    """Leader-to-follower state mirror."""
    payload: SyncPayload = field(default_factory=SyncPayload)

    message_type = MessageType.STATE_SYNC

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        data = super().to_dict()
        data["payload"] = self.payload.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSync":
        """Deserialize from dictionary."""
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError(f"State sync payload must be an object, got {type(payload).__name__}")
        return cls(
            sender_id=data.get("senderId", ""),
            timestamp=float(data.get("timestamp", 0.0)),
            payload=SyncPayload.from_dict(payload),
        )


Message = Union[Heartbeat, Claim, Release, StateSync, ActivityPing]


def parse_message(data: Dict[str, Any]) -> Message:
    """Parse a dictionary into the appropriate message type."""
    msg_type = MessageType(data.get("type", ""))

    parsers = {
        MessageType.HEARTBEAT: Heartbeat.from_dict,
        MessageType.CLAIM: Claim.from_dict,
        MessageType.RELEASE: Release.from_dict,
        MessageType.STATE_SYNC: StateSync.from_dict,
        MessageType.ACTIVITY_PING: ActivityPing.from_dict,
    }

    return parsers[msg_type](data)


def decode_message(raw: Union[str, bytes]) -> Optional[Message]:
    """Decode a JSON message, returning None for malformed input."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        if not isinstance(data, dict):
            return None
        return parse_message(data)
    except (ValueError, TypeError, KeyError, AttributeError, OverflowError):
        return None
