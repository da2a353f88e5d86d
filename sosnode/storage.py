"""
SOS Storage

Content-addressed storage backends for the node. Data blobs are keyed by
the GUID of their content; manifests are small JSON documents keyed by an
arbitrary GUID and may be replaced (the filesystem bridge keeps its tree in
one). Local storage writes every mutation straight to disk.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from sosnode.exceptions import GUIDError, StorageError
from sosnode.guid import DEFAULT_GUID_ALGORITHM, GUID, guid_for, validate_algorithm

if TYPE_CHECKING:
    from sosnode.orchestrator import StoreConfig

logger = logging.getLogger(__name__)

STORAGE_TYPES = frozenset({"local", "memory"})

DATA_DIR = "data"
MANIFESTS_DIR = "manifests"
NODE_FILE = "node.json"


def utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _safe_name(guid: GUID) -> str:
    """Reject GUIDs that would escape the storage directory."""
    if not guid or "/" in guid or "\\" in guid or guid.startswith("."):
        raise StorageError(f"Invalid GUID: {guid!r}")
    return guid


class Storage:
    """
    Thread-safe content-addressed store.

    Subclasses implement the raw blob and manifest accessors; this class owns
    locking, GUID computation and the closed state.
    """

    kind = "abstract"

    def __init__(self, algorithm: str = DEFAULT_GUID_ALGORITHM):
        self.algorithm = algorithm
        self._lock = threading.RLock()
        self._closed = False
        self._last_flushed: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Data Operations ---

    def put(self, data: bytes) -> GUID:
        """Store ``data`` and return its content address."""
        guid = guid_for(data, self.algorithm)
        with self._lock:
            self._check_open()
            if not self._has_blob(guid):
                self._write_blob(guid, data)
        return guid

    def get(self, guid: GUID) -> bytes:
        """Return the data stored at ``guid``. Raises StorageError if absent."""
        with self._lock:
            self._check_open()
            if not self._has_blob(guid):
                raise StorageError(f"No data for GUID {guid}")
            return self._read_blob(guid)

    def contains(self, guid: GUID) -> bool:
        with self._lock:
            self._check_open()
            return self._has_blob(guid)

    def list_data(self) -> list[GUID]:
        """List the GUIDs of all stored data blobs."""
        with self._lock:
            self._check_open()
            return sorted(self._blob_keys())

    # --- Manifest Operations ---

    def put_manifest(self, guid: GUID, manifest: dict[str, Any]) -> None:
        """Store or replace the manifest at ``guid``."""
        with self._lock:
            self._check_open()
            self._write_manifest(guid, manifest)

    def get_manifest(self, guid: GUID) -> Optional[dict[str, Any]]:
        """Return the manifest at ``guid``, or None if there is none."""
        with self._lock:
            self._check_open()
            return self._read_manifest(guid)

    # --- Lifecycle ---

    def stats(self) -> dict[str, Any]:
        """Summary used by the REST API and the web UI."""
        with self._lock:
            self._check_open()
            return {
                "type": self.kind,
                "algorithm": self.algorithm,
                "data_count": len(self._blob_keys()),
                "last_flushed": self._last_flushed,
            }

    def flush(self) -> None:
        """Persist any buffered state."""
        with self._lock:
            self._check_open()
            self._last_flushed = utc_now()
            self._flush()

    def close(self) -> None:
        """Release the backend. Further operations raise StorageError."""
        with self._lock:
            self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError(f"{self.kind} storage is closed")

    # --- Backend Hooks ---

    def _has_blob(self, guid: GUID) -> bool:
        raise NotImplementedError

    def _read_blob(self, guid: GUID) -> bytes:
        raise NotImplementedError

    def _write_blob(self, guid: GUID, data: bytes) -> None:
        raise NotImplementedError

    def _blob_keys(self) -> list[GUID]:
        raise NotImplementedError

    def _read_manifest(self, guid: GUID) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    def _write_manifest(self, guid: GUID, manifest: dict[str, Any]) -> None:
        raise NotImplementedError

    def _flush(self) -> None:
        pass


class MemoryStorage(Storage):
    """Volatile storage held in process memory."""

    kind = "memory"

    def __init__(self, algorithm: str = DEFAULT_GUID_ALGORITHM):
        super().__init__(algorithm)
        self._blobs: dict[GUID, bytes] = {}
        self._manifests: dict[GUID, dict[str, Any]] = {}

    def _has_blob(self, guid: GUID) -> bool:
        return guid in self._blobs

    def _read_blob(self, guid: GUID) -> bytes:
        return self._blobs[guid]

    def _write_blob(self, guid: GUID, data: bytes) -> None:
        self._blobs[guid] = bytes(data)

    def _blob_keys(self) -> list[GUID]:
        return list(self._blobs)

    def _read_manifest(self, guid: GUID) -> Optional[dict[str, Any]]:
        manifest = self._manifests.get(guid)
        return json.loads(json.dumps(manifest)) if manifest is not None else None

    def _write_manifest(self, guid: GUID, manifest: dict[str, Any]) -> None:
        self._manifests[guid] = json.loads(json.dumps(manifest))


class LocalStorage(Storage):
    """
    Storage in a local directory.

    Layout::

        <location>/data/<guid>
        <location>/manifests/<guid>.json
        <location>/node.json
    """

    kind = "local"

    def __init__(self, location: str | Path, algorithm: str = DEFAULT_GUID_ALGORITHM):
        super().__init__(algorithm)
        self.location = Path(location)

        if self.location.exists() and not self.location.is_dir():
            raise StorageError(f"Storage location is not a directory: {self.location}")

        try:
            (self.location / DATA_DIR).mkdir(parents=True, exist_ok=True)
            (self.location / MANIFESTS_DIR).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage at {self.location}: {e}") from e

    def _blob_path(self, guid: GUID) -> Path:
        return self.location / DATA_DIR / _safe_name(guid)

    def _manifest_path(self, guid: GUID) -> Path:
        return self.location / MANIFESTS_DIR / f"{_safe_name(guid)}.json"

    def _has_blob(self, guid: GUID) -> bool:
        return self._blob_path(guid).is_file()

    def _read_blob(self, guid: GUID) -> bytes:
        try:
            return self._blob_path(guid).read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read {guid}: {e}") from e

    def _write_blob(self, guid: GUID, data: bytes) -> None:
        self._write_atomic(self._blob_path(guid), data)

    def _blob_keys(self) -> list[GUID]:
        return [
            p.name for p in (self.location / DATA_DIR).iterdir()
            if p.is_file() and not p.name.endswith(".tmp")
        ]

    def _read_manifest(self, guid: GUID) -> Optional[dict[str, Any]]:
        path = self._manifest_path(guid)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StorageError(f"Corrupt manifest {guid}: {e}") from e

    def _write_manifest(self, guid: GUID, manifest: dict[str, Any]) -> None:
        self._write_atomic(
            self._manifest_path(guid),
            json.dumps(manifest, indent=2).encode(),
        )

    def _flush(self) -> None:
        summary = {
            "algorithm": self.algorithm,
            "data_count": len(self._blob_keys()),
            "last_flushed": self._last_flushed,
        }
        self._write_atomic(self.location / NODE_FILE, json.dumps(summary, indent=2).encode())

    def _write_atomic(self, path: Path, data: bytes) -> None:
        """Write bytes to a file atomically."""
        temp_path = path.with_name(path.name + ".tmp")
        try:
            with open(temp_path, "wb") as f:
                f.write(data)
            temp_path.replace(path)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e


def create_storage(store: StoreConfig, algorithm: str = DEFAULT_GUID_ALGORITHM) -> Storage:
    """
    Build the storage backend described by ``store``.

    Args:
        store: Storage section of the node settings.
        algorithm: Hash algorithm used for content addresses.

    Returns:
        A ready Storage.

    Raises:
        StorageError: If the type is unknown or the backend cannot be built.
    """
    try:
        algorithm = validate_algorithm(algorithm)
    except GUIDError as e:
        raise StorageError(str(e)) from e

    if store.type not in STORAGE_TYPES:
        raise StorageError(
            f"Unknown storage type '{store.type}'. Must be one of: {', '.join(sorted(STORAGE_TYPES))}"
        )

    if store.type == "memory":
        storage: Storage = MemoryStorage(algorithm)
    else:
        if not store.location:
            raise StorageError("Local storage requires store.location")
        storage = LocalStorage(store.location, algorithm)

    logger.info(f"Created {storage.kind} storage ({algorithm})")
    return storage
