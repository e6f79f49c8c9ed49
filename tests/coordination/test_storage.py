# Copyright 2026 Firefly Software Solutions Inc
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for shared storage contexts."""

import pytest

from snapleader.coordination.storage import FileStorage, MemoryStorage, MemoryStorageArea
from snapleader.exceptions import StorageError


class TestMemoryStorage:
    """Tests for MemoryStorage contexts."""

    def test_shared_area(self):
        """Contexts on one area see each other's writes."""
        area = MemoryStorageArea()
        a, b = area.context(), area.context()

        a.set("k", "v")

        assert b.get("k") == "v"
        assert a.get("missing") is None

    def test_private_area_by_default(self):
        """A bare MemoryStorage has its own area."""
        a, b = MemoryStorage(), MemoryStorage()
        a.set("k", "v")

        assert b.get("k") is None

    def test_notifies_other_contexts_only(self):
        """The writer never hears its own change."""
        area = MemoryStorageArea()
        a, b = area.context(), area.context()
        heard_a, heard_b = [], []
        a.subscribe(lambda k, v: heard_a.append((k, v)))
        b.subscribe(lambda k, v: heard_b.append((k, v)))

        a.set("k", "v1")
        a.remove("k")

        assert heard_a == []
        assert heard_b == [("k", "v1"), ("k", None)]

    @pytest.mark.asyncio
    async def test_notification_is_deferred_inside_loop(self, settle_loop):
        """With a running loop, listeners run after the write returns."""
        area = MemoryStorageArea()
        a, b = area.context(), area.context()
        heard = []
        b.subscribe(lambda k, v: heard.append(v))

        a.set("k", "v")
        assert heard == []

        await settle_loop()
        assert heard == ["v"]

    def test_unsubscribe(self):
        """Unsubscribed listeners are not called."""
        area = MemoryStorageArea()
        a, b = area.context(), area.context()
        heard = []
        unsubscribe = b.subscribe(lambda k, v: heard.append(v))

        unsubscribe()
        unsubscribe()
        a.set("k", "v")

        assert heard == []

    def test_listener_error_isolated(self):
        """One failing listener does not stop the others."""
        area = MemoryStorageArea()
        a, b = area.context(), area.context()
        heard = []

        def boom(key, value):
            raise RuntimeError("listener failed")

        b.subscribe(boom)
        b.subscribe(lambda k, v: heard.append(v))
        a.set("k", "v")

        assert heard == ["v"]

    def test_unavailable_area_raises(self):
        """A disabled area raises StorageError on every operation."""
        area = MemoryStorageArea()
        context = area.context()
        area.available = False

        with pytest.raises(StorageError) as exc_info:
            context.set("k", "v")
        assert exc_info.value.key == "k"

        with pytest.raises(StorageError):
            context.get("k")
        with pytest.raises(StorageError):
            context.remove("k")

    @pytest.mark.asyncio
    async def test_closed_context_detaches(self):
        """A closed context stops receiving notifications."""
        area = MemoryStorageArea()
        a, b = area.context(), area.context()
        heard = []
        b.subscribe(lambda k, v: heard.append(v))

        await b.close()
        a.set("k", "v")

        assert heard == []


class TestFileStorage:
    """Tests for FileStorage contexts."""

    def test_set_get_remove(self, tmp_path):
        """Keys round-trip through files."""
        storage = FileStorage(str(tmp_path))

        storage.set("snapleader-leader", '{"holderId": "a"}')

        assert storage.get("snapleader-leader") == '{"holderId": "a"}'
        assert (tmp_path / "snapleader-leader.json").exists()

        storage.remove("snapleader-leader")
        storage.remove("snapleader-leader")
        assert storage.get("snapleader-leader") is None

    def test_key_is_sanitized(self, tmp_path):
        """Keys never escape the storage directory."""
        storage = FileStorage(str(tmp_path))

        storage.set("../evil/key", "v")

        assert storage.get("../evil/key") == "v"
        assert sorted(p.name for p in tmp_path.iterdir()) == [".._evil_key.json"]

    def test_no_temp_files_left(self, tmp_path):
        """Atomic writes clean up their temporary files."""
        storage = FileStorage(str(tmp_path))

        for i in range(5):
            storage.set("k", str(i))

        assert [p.name for p in tmp_path.iterdir()] == ["k.json"]

    def test_unusable_directory(self, tmp_path):
        """A directory that cannot be created raises StorageError."""
        blocker = tmp_path / "file"
        blocker.write_text("x")

        with pytest.raises(StorageError):
            FileStorage(str(blocker / "sub"))

    def test_poll_reports_foreign_writes_only(self, tmp_path):
        """Polling notifies about other contexts' writes, not our own."""
        a = FileStorage(str(tmp_path))
        b = FileStorage(str(tmp_path))
        heard = []
        a.subscribe(lambda k, v: heard.append((k, v)))
        a.watch("k")

        b.set("k", "from-b")
        a.poll_once()
        a.poll_once()
        a.set("k", "from-a")
        a.poll_once()
        b.remove("k")
        a.poll_once()

        assert heard == [("k", "from-b"), ("k", None)]

    def test_unwatched_keys_are_ignored(self, tmp_path):
        """Only watched keys produce notifications."""
        a = FileStorage(str(tmp_path))
        b = FileStorage(str(tmp_path))
        heard = []
        a.subscribe(lambda k, v: heard.append(k))
        a.watch("k")

        b.set("other", "v")
        a.poll_once()

        assert heard == []

    @pytest.mark.asyncio
    async def test_background_polling(self, tmp_path, wait_until):
        """watch() inside a loop starts the polling task."""
        a = FileStorage(str(tmp_path), poll_interval_ms=10)
        b = FileStorage(str(tmp_path), poll_interval_ms=10)
        heard = []
        a.subscribe(lambda k, v: heard.append(v))
        a.watch("k")

        b.set("k", "v")
        await wait_until(lambda: heard == ["v"])

        await a.close()
        await b.close()
