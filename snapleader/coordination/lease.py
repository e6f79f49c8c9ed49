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
Leader Lease Store for SnapLeader.

The lease lives in one well-known key of the shared storage as JSON
``{"holderId": str, "timestamp": float}``. There is no compare-and-swap:
concurrent writers race and the last write wins. Unreadable storage or a
malformed record reads as "no lease", favouring availability over
exclusivity.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from snapleader.coordination.config import DEFAULT_LEASE_KEY
from snapleader.coordination.storage import SharedStorage
from snapleader.exceptions import LeaseUnreadableError, StorageError
from snapleader.utils.logger import logger


@dataclass(frozen=True)
class LeaseRecord:
    """The current leader claim."""
    holder_id: str
    timestamp: float

    def age(self, now: float) -> float:
        """Seconds since the record was written."""
        return now - self.timestamp

    def is_stale(self, now: float, ttl: float) -> bool:
        """Check whether the lease has outlived its TTL."""
        return self.age(now) > ttl

    def to_json(self) -> str:
        """Serialize to the wire JSON."""
        return json.dumps({"holderId": self.holder_id, "timestamp": self.timestamp})

    @classmethod
    def from_json(cls, raw: str) -> "LeaseRecord":
        """Parse the wire JSON.

        Raises:
            LeaseUnreadableError: If raw is not a valid lease record
        """
        try:
            data = json.loads(raw)
            return cls(holder_id=str(data["holderId"]), timestamp=float(data["timestamp"]))
        except (ValueError, TypeError, KeyError) as e:
            raise LeaseUnreadableError(f"Malformed lease record: {e}", raw=raw) from e


class LeaseStore:
    """Narrow get/set view over the shared lease slot.

    Example:
        >>> store = LeaseStore(MemoryStorage())
        >>> store.set("node-a", 10.0)
        >>> store.get()
        LeaseRecord(holder_id='node-a', timestamp=10.0)
    """

    def __init__(self, storage: SharedStorage, key: str = DEFAULT_LEASE_KEY) -> None:
        self.storage = storage
        self.key = key

    def get(self) -> Optional[LeaseRecord]:
        """Read the current lease, or None if absent or unreadable."""
        try:
            raw = self.storage.get(self.key)
        except StorageError as e:
            logger.debug(f"Lease read failed, treating as absent: {e}")
            return None
        if not raw:
            return None
        try:
            return LeaseRecord.from_json(raw)
        except LeaseUnreadableError as e:
            logger.debug(f"{e.message}, treating as absent")
            return None

    def set(self, holder_id: str, timestamp: float) -> None:
        """Write the lease. Storage failures are logged and swallowed."""
        record = LeaseRecord(holder_id=holder_id, timestamp=timestamp)
        try:
            self.storage.set(self.key, record.to_json())
        except StorageError as e:
            logger.debug(f"Lease write failed: {e}")

    def clear(self, holder_id: str) -> bool:
        """Remove the lease if it is held by holder_id.

        Returns:
            True if a lease held by holder_id was removed
        """
        current = self.get()
        if current is None or current.holder_id != holder_id:
            return False
        try:
            self.storage.remove(self.key)
        except StorageError as e:
            logger.debug(f"Lease removal failed: {e}")
            return False
        return True
