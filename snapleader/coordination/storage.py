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
Shared Key/Value Storage for SnapLeader.

A storage *context* is one node's handle onto a storage area shared with
other nodes. Every context can read and write every key, and each context
can subscribe to change notifications. Notifications for a write are
delivered to every context except the one that wrote it; the
shared-storage transport relies on that to avoid self-delivery.

Two implementations are provided:
- MemoryStorage: contexts on one in-process MemoryStorageArea
- FileStorage: contexts on one directory, one file per key, change
  detection by polling
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional

from snapleader.exceptions import StorageError
from snapleader.utils.logger import logger

# (key, new_value); new_value is None when the key was removed
ChangeListener = Callable[[str, Optional[str]], None]


class SharedStorage(ABC):
    """One context's view of a shared key/value area."""

    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Read a key. Raises StorageError when the area is unavailable."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Write a key. Raises StorageError when the area is unavailable."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete a key if present. Raises StorageError on failure."""

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener.

        Args:
            listener: Called with (key, new_value) for writes by other contexts

        Returns:
            A function that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def watch(self, key: str) -> None:
        """Ask for notifications about key. Contexts that notify on every key ignore this."""

    def _notify(self, key: str, value: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception as e:
                logger.error(f"Storage listener error for {key}: {e}")

    async def close(self) -> None:
        """Release resources and drop listeners."""
        self._listeners.clear()


class MemoryStorageArea:
    """An in-process storage area shared by several MemoryStorage contexts.

    Example:
        >>> area = MemoryStorageArea()
        >>> a, b = area.context(), area.context()
        >>> a.set("k", "v")
        >>> b.get("k")
        'v'
    """

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self._contexts: List["MemoryStorage"] = []
        # Simulates a full or disabled area
        self.available = True

    def context(self) -> "MemoryStorage":
        """Create a new context on this area."""
        return MemoryStorage(self)

    def _attach(self, context: "MemoryStorage") -> None:
        self._contexts.append(context)

    def _detach(self, context: "MemoryStorage") -> None:
        if context in self._contexts:
            self._contexts.remove(context)

    def _broadcast_change(self, writer: "MemoryStorage", key: str, value: Optional[str]) -> None:
        for context in list(self._contexts):
            if context is writer:
                continue
            context._deliver(key, value)


class MemoryStorage(SharedStorage):
    """A context on an in-process MemoryStorageArea.

    Notifications are scheduled on the running event loop so a write never
    re-enters the writer's call stack; without a running loop they are
    delivered synchronously.
    """

    def __init__(self, area: Optional[MemoryStorageArea] = None) -> None:
        super().__init__()
        self.area = area or MemoryStorageArea()
        self.area._attach(self)

    def _check_available(self, key: str) -> None:
        if not self.area.available:
            raise StorageError("Memory storage area unavailable", key=key)

    def get(self, key: str) -> Optional[str]:
        self._check_available(key)
        return self.area.data.get(key)

    def set(self, key: str, value: str) -> None:
        self._check_available(key)
        self.area.data[key] = value
        self.area._broadcast_change(self, key, value)

    def remove(self, key: str) -> None:
        self._check_available(key)
        if self.area.data.pop(key, None) is not None:
            self.area._broadcast_change(self, key, None)

    def _deliver(self, key: str, value: Optional[str]) -> None:
        if not self._listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._notify(key, value)
            return
        loop.call_soon(self._notify, key, value)

    async def close(self) -> None:
        await super().close()
        self.area._detach(self)


class FileStorage(SharedStorage):
    """A context on a directory shared between processes.

    Each key is stored in its own file and written atomically through a
    temporary file and rename. Change notifications come from a polling
    task that starts with the first subscriber; a change whose content
    equals this context's own last write is not reported.

    Example:
        >>> storage = FileStorage("/tmp/snapleader")
        >>> storage.set("snapleader-leader", '{"holderId": "a", "timestamp": 1.0}')
        >>> unsubscribe = storage.subscribe(lambda k, v: print(k, v))
        >>> await storage.close()
    """

    def __init__(self, directory: str, poll_interval_ms: int = 100) -> None:
        """Initialize file storage.

        Args:
            directory: Directory holding one file per key
            poll_interval_ms: Poll period for change detection

        Raises:
            StorageError: If the directory cannot be created
        """
        super().__init__()
        self.directory = Path(directory)
        self.poll_interval_ms = poll_interval_ms

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {directory}: {e}") from e

        self._own_writes: Dict[str, Optional[str]] = {}
        self._seen: Dict[str, Optional[str]] = {}
        self._watched: set = set()
        self._poll_task: Optional[asyncio.Task] = None

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}", key=key) from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(self.directory), prefix=".tmp-")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}", key=key) from e
        self._own_writes[key] = value
        self._seen[key] = value

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Cannot remove {path}: {e}", key=key) from e
        self._own_writes[key] = None
        self._seen[key] = None

    def watch(self, key: str) -> None:
        """Report changes to key to subscribers (starts polling if needed)."""
        if key not in self._seen:
            try:
                self._seen[key] = self.get(key)
            except StorageError:
                self._seen[key] = None
        self._watched.add(key)
        self._ensure_polling()

    def _ensure_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        """Background loop that turns file changes into notifications."""
        interval = self.poll_interval_ms / 1000.0
        while True:
            try:
                await asyncio.sleep(interval)
                self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Storage poll loop error: {e}")

    def poll_once(self) -> None:
        """Check watched keys once and notify about foreign changes."""
        for key in list(self._watched):
            try:
                current = self.get(key)
            except StorageError as e:
                logger.debug(f"Storage poll skipped {key}: {e}")
                continue
            if current == self._seen.get(key):
                continue
            self._seen[key] = current
            if key in self._own_writes and current == self._own_writes[key]:
                continue
            self._notify(key, current)

    async def close(self) -> None:
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        self._watched.clear()
        await super().close()
