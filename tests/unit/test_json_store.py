import json
import threading
import time
from pathlib import Path

import pytest

from wpspin.exceptions import LockTimeout, RegistryCorrupt
from wpspin.json_store import JsonStore
from wpspin.locking import FileLock, locked

pytestmark = pytest.mark.unit


class TestJsonStore:
    def test_missing_and_empty_files_read_as_empty(self, tmp_path: Path):
        store = JsonStore(tmp_path / "store.json")
        assert store.read() == {}
        (tmp_path / "store.json").write_text("  \n")
        assert store.read() == {}
        assert not store.is_corrupt

    def test_mutate_saves_atomically_and_returns_result(self, tmp_path: Path):
        path = tmp_path / "nested" / "store.json"
        store = JsonStore(path)

        result = store.mutate(lambda data: data.setdefault("a", 1))

        assert result == 1
        assert json.loads(path.read_text()) == {"a": 1}
        # No temp files left behind
        assert sorted(p.name for p in path.parent.iterdir()) == ["store.json", "store.json.lock"]

    def test_failed_change_leaves_file_untouched(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text(json.dumps({"a": 1}))
        store = JsonStore(path)

        def boom(data):
            data["a"] = 2
            raise ValueError("nope")

        with pytest.raises(ValueError):
            store.mutate(boom)
        assert json.loads(path.read_text()) == {"a": 1}

    def test_non_object_document_is_treated_as_corrupt(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2, 3]")
        store = JsonStore(path)

        assert store.read() == {}
        assert store.is_corrupt
        assert not path.exists()
        assert store.corrupt_backup is not None and store.corrupt_backup.read_text() == "[1, 2, 3]"

    def test_writes_refused_until_acknowledged(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text("{broken")
        store = JsonStore(path)

        with pytest.raises(RegistryCorrupt) as exc:
            store.mutate(lambda data: data.update(a=1))
        assert "backup" in exc.value.details

        store.acknowledge_corruption()
        store.mutate(lambda data: data.update(a=1))
        assert json.loads(path.read_text()) == {"a": 1}

    def test_second_corruption_needs_its_own_acknowledgement(self, tmp_path: Path):
        path = tmp_path / "store.json"
        path.write_text("{broken")
        JsonStore(path).read()
        assert len(JsonStore(path).acknowledge_corruption()) == 1

        path.write_text("{broken again")
        store = JsonStore(path)
        store.read()

        assert store.is_corrupt
        with pytest.raises(RegistryCorrupt):
            JsonStore(path).mutate(lambda data: data.update(a=1))
        assert len(store.acknowledge_corruption()) == 1
        assert JsonStore(path).acknowledge_corruption() == []


class TestFileLock:
    def test_lock_file_sits_next_to_store(self, tmp_path: Path):
        lock = FileLock(tmp_path / "store.json")
        assert lock.lock_path == tmp_path / "store.json.lock"
        with lock:
            assert lock.is_held
        assert not lock.is_held

    def test_second_holder_times_out(self, tmp_path: Path):
        path = tmp_path / "store.json"
        with locked(path):
            with pytest.raises(LockTimeout):
                FileLock(path, timeout=0.2).acquire()

    def test_lock_is_released_on_error(self, tmp_path: Path):
        path = tmp_path / "store.json"
        with pytest.raises(RuntimeError):
            with locked(path):
                raise RuntimeError("fail inside")
        with locked(path, timeout=0.2) as lock:
            assert lock.is_held

    def test_lock_serializes_threads(self, tmp_path: Path):
        path = tmp_path / "store.json"
        inside = []
        overlaps = []

        def worker() -> None:
            with locked(path, timeout=5):
                if inside:
                    overlaps.append(True)
                inside.append(True)
                time.sleep(0.02)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []
