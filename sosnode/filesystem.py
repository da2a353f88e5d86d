"""
SOS Filesystem

A path tree rooted at a RootIdentifier and backed by the node's agent. File
contents are stored as content-addressed data; the tree itself is a single
manifest stored under the root GUID and rewritten after every mutation.
Shared by the web UI and the WebDAV bridge.
"""

from __future__ import annotations

import logging
import posixpath
import threading
from typing import Any

from sosnode.exceptions import FileSystemError
from sosnode.guid import GUID
from sosnode.node import Agent
from sosnode.storage import utc_now

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """Return an absolute, normalised path without a trailing slash."""
    return posixpath.normpath("/" + path.strip("/"))


class NodeFileSystem:
    """
    Thread-safe filesystem view over an agent.

    Entries are keyed by normalised path. Directories are explicit entries;
    "/" always exists.
    """

    def __init__(self, agent: Agent, root: GUID):
        self.agent = agent
        self.root = root
        self._lock = threading.RLock()

        manifest = agent.get_manifest(root)
        if manifest and manifest.get("type") == "filesystem":
            self._entries: dict[str, dict[str, Any]] = manifest["entries"]
            logger.info(f"Loaded filesystem {root} ({len(self._entries)} entries)")
        else:
            self._commit({"/": self._dir_entry()})
            logger.info(f"Created filesystem {root}")

    # --- Queries ---

    def exists(self, path: str) -> bool:
        with self._lock:
            return normalize_path(path) in self._entries

    def is_dir(self, path: str) -> bool:
        with self._lock:
            entry = self._entries.get(normalize_path(path))
            return entry is not None and entry["type"] == "directory"

    def stat(self, path: str) -> dict[str, Any]:
        """Return a copy of the entry at ``path``."""
        with self._lock:
            return dict(self._get(normalize_path(path)))

    def list_dir(self, path: str) -> list[tuple[str, dict[str, Any]]]:
        """List (name, entry) pairs of a directory, sorted by name."""
        path = normalize_path(path)
        with self._lock:
            entry = self._get(path)
            if entry["type"] != "directory":
                raise FileSystemError(f"Not a directory: {path}")
            children = [
                (posixpath.basename(p), dict(e))
                for p, e in self._entries.items()
                if p != path and posixpath.dirname(p) == path
            ]
        return sorted(children, key=lambda c: c[0])

    def read(self, path: str) -> bytes:
        path = normalize_path(path)
        with self._lock:
            entry = self._get(path)
            if entry["type"] != "file":
                raise FileSystemError(f"Is a directory: {path}")
            guid = entry["guid"]
        return self.agent.get_data(guid)

    # --- Mutations ---

    def write(self, path: str, data: bytes) -> GUID:
        """Create or replace a file. Returns the content GUID."""
        path = normalize_path(path)
        guid = self.agent.add_data(data)
        with self._lock:
            self._check_parent(path)
            existing = self._entries.get(path)
            if existing is not None and existing["type"] == "directory":
                raise FileSystemError(f"Is a directory: {path}")
            entries = dict(self._entries)
            entries[path] = {
                "type": "file",
                "guid": guid,
                "size": len(data),
                "modified": utc_now(),
            }
            self._commit(entries)
        return guid

    def mkdir(self, path: str) -> None:
        path = normalize_path(path)
        with self._lock:
            if path in self._entries:
                raise FileSystemError(f"Already exists: {path}")
            self._check_parent(path)
            entries = dict(self._entries)
            entries[path] = self._dir_entry()
            self._commit(entries)

    def delete(self, path: str) -> int:
        """Delete a file or a directory tree. Returns entries removed."""
        path = normalize_path(path)
        if path == "/":
            raise FileSystemError("Cannot delete the root directory")
        with self._lock:
            self._get(path)
            doomed = {p for p in self._entries if p == path or p.startswith(path + "/")}
            entries = {p: e for p, e in self._entries.items() if p not in doomed}
            self._commit(entries)
        return len(doomed)

    # --- Internals ---

    def _get(self, path: str) -> dict[str, Any]:
        entry = self._entries.get(path)
        if entry is None:
            raise FileSystemError(f"Not found: {path}")
        return entry

    def _check_parent(self, path: str) -> None:
        if path == "/":
            raise FileSystemError("Cannot replace the root directory")
        parent = posixpath.dirname(path)
        entry = self._entries.get(parent)
        if entry is None:
            raise FileSystemError(f"Parent directory not found: {parent}")
        if entry["type"] != "directory":
            raise FileSystemError(f"Not a directory: {parent}")

    def _dir_entry(self) -> dict[str, Any]:
        return {"type": "directory", "modified": utc_now()}

    def _commit(self, entries: dict[str, dict[str, Any]]) -> None:
        """Persist ``entries`` as the tree manifest, then make them current."""
        self.agent.add_manifest(self.root, {
            "type": "filesystem",
            "root": self.root,
            "entries": entries,
        })
        self._entries = entries
