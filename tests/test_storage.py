"""Unit tests for SOS storage backends."""

import json
import threading

import pytest

from sosnode.exceptions import StorageError
from sosnode.guid import guid_for, is_valid_guid
from sosnode.orchestrator import StoreConfig
from sosnode.storage import LocalStorage, MemoryStorage, create_storage, utc_now


class TestUtilityFunctions:
    """Tests for utility functions."""

    def test_utc_now_returns_iso_format(self):
        """utc_now returns ISO 8601 formatted string."""
        result = utc_now()
        assert "T" in result
        assert result.endswith("+00:00")


class TestDataOperations:
    """Tests shared by both backends."""

    def test_put_returns_content_guid(self, storage):
        """put returns the content address of the data."""
        guid = storage.put(b"hello")
        assert guid == guid_for(b"hello", storage.algorithm)
        assert is_valid_guid(guid, "sha256")

    def test_get_round_trip(self, storage):
        """get returns exactly what was stored."""
        guid = storage.put(b"\x00\x01binary")
        assert storage.get(guid) == b"\x00\x01binary"

    def test_put_is_idempotent(self, storage):
        """Storing the same content twice keeps one blob."""
        storage.put(b"same")
        storage.put(b"same")
        assert len(storage.list_data()) == 1

    def test_get_missing_raises(self, storage):
        """get raises StorageError for an unknown GUID."""
        with pytest.raises(StorageError, match="No data"):
            storage.get(guid_for(b"never stored"))

    def test_contains(self, storage):
        guid = storage.put(b"x")
        assert storage.contains(guid)
        assert not storage.contains(guid_for(b"y"))

    def test_manifest_replace(self, storage):
        """Manifests can be replaced under the same GUID."""
        storage.put_manifest("SHA256_16_root", {"v": 1})
        storage.put_manifest("SHA256_16_root", {"v": 2})
        assert storage.get_manifest("SHA256_16_root") == {"v": 2}

    def test_missing_manifest_is_none(self, storage):
        assert storage.get_manifest("SHA256_16_nothing") is None

    def test_stats(self, storage):
        storage.put(b"a")
        stats = storage.stats()
        assert stats["data_count"] == 1
        assert stats["algorithm"] == "sha256"
        assert stats["last_flushed"] is None

    def test_closed_storage_rejects_operations(self, storage):
        """Operations after close raise StorageError."""
        storage.close()
        assert storage.closed
        with pytest.raises(StorageError, match="closed"):
            storage.put(b"late")

    def test_concurrent_puts(self, storage):
        """Concurrent puts from many threads are all stored."""
        def writer(n):
            for i in range(20):
                storage.put(f"{n}-{i}".encode())

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(storage.list_data()) == 100


class TestLocalStorage:
    """Tests specific to on-disk storage."""

    def test_layout(self, tmp_path):
        """Data and manifests land in their own directories."""
        storage = LocalStorage(tmp_path / "store")
        guid = storage.put(b"on disk")
        storage.put_manifest(guid, {"k": "v"})

        assert (tmp_path / "store" / "data" / guid).read_bytes() == b"on disk"
        manifest_file = tmp_path / "store" / "manifests" / f"{guid}.json"
        assert json.loads(manifest_file.read_text()) == {"k": "v"}

    def test_persists_across_instances(self, tmp_path):
        """A new instance over the same directory sees earlier data."""
        guid = LocalStorage(tmp_path / "store").put(b"kept")
        assert LocalStorage(tmp_path / "store").get(guid) == b"kept"

    def test_flush_writes_node_file(self, tmp_path):
        storage = LocalStorage(tmp_path / "store")
        storage.put(b"a")
        storage.flush()

        summary = json.loads((tmp_path / "store" / "node.json").read_text())
        assert summary["data_count"] == 1
        assert summary["last_flushed"] is not None

    def test_location_is_a_file(self, tmp_path):
        """A file in place of the storage directory is rejected."""
        location = tmp_path / "not-a-dir"
        location.write_text("oops")
        with pytest.raises(StorageError, match="not a directory"):
            LocalStorage(location)

    def test_path_traversal_rejected(self, tmp_path):
        storage = LocalStorage(tmp_path / "store")
        with pytest.raises(StorageError, match="Invalid GUID"):
            storage.get("../../etc/passwd")


class TestCreateStorage:
    """Tests for the storage factory."""

    def test_create_memory(self):
        storage = create_storage(StoreConfig(type="memory", location=None))
        assert isinstance(storage, MemoryStorage)

    def test_create_local(self, tmp_path):
        storage = create_storage(StoreConfig(type="local", location=str(tmp_path / "s")), "sha512")
        assert isinstance(storage, LocalStorage)
        assert storage.algorithm == "sha512"

    def test_unknown_type(self):
        with pytest.raises(StorageError, match="Unknown storage type"):
            create_storage(StoreConfig(type="s3", location=None))

    def test_local_requires_location(self):
        with pytest.raises(StorageError, match="location"):
            create_storage(StoreConfig(type="local", location=None))

    def test_unknown_algorithm(self):
        with pytest.raises(StorageError, match="Unsupported"):
            create_storage(StoreConfig(type="memory", location=None), "md5")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(params=["memory", "local"])
def storage(request, tmp_path):
    """Each backend in turn."""
    if request.param == "memory":
        return MemoryStorage()
    return LocalStorage(tmp_path / "store")
