"""
SOS Node

The node owns the storage backend and, when the agent service is enabled,
an Agent capability for content-addressed read/write. NodeManager creates
at most one live NodeHandle at a time and tears it down exactly once.

Front ends read the node through ``NodeHandle.use()``. Teardown waits for
those readers and refuses new ones, so a slow front end never sees a
half-destroyed node.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from sosnode.exceptions import (
    NodeAlreadyRunningError,
    NodeUnavailableError,
    ShutdownError,
    StorageError,
    StorageInitializationError,
)
from sosnode.guid import GUID, generate_random_guid
from sosnode.storage import Storage, create_storage

if TYPE_CHECKING:
    from sosnode.orchestrator import NodeSettings

logger = logging.getLogger(__name__)

# Node lifecycle states
NODE_LIVE = "live"
NODE_DESTROYING = "destroying"
NODE_DESTROYED = "destroyed"
NODE_STATES = frozenset({NODE_LIVE, NODE_DESTROYING, NODE_DESTROYED})

DEFAULT_KILL_TIMEOUT = 30.0

StorageFactory = Callable[..., Storage]


class Agent:
    """Capability for content-addressed read/write on a node's storage."""

    def __init__(self, storage: Storage):
        self._storage = storage
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def add_data(self, data: bytes) -> GUID:
        """Store data and return its GUID."""
        self._check()
        return self._storage.put(data)

    def get_data(self, guid: GUID) -> bytes:
        self._check()
        return self._storage.get(guid)

    def add_manifest(self, guid: GUID, manifest: dict[str, Any]) -> None:
        self._check()
        self._storage.put_manifest(guid, manifest)

    def get_manifest(self, guid: GUID) -> Optional[dict[str, Any]]:
        self._check()
        return self._storage.get_manifest(guid)

    def release(self) -> None:
        """Give up the capability. Later calls raise NodeUnavailableError."""
        self._released = True

    def _check(self) -> None:
        if self._released:
            raise NodeUnavailableError("Agent has been released")


class NodeHandle:
    """
    The single live node of this process.

    Lifecycle: ``live`` -> ``destroying`` -> ``destroyed``. Only ``kill``
    moves the handle forward; front ends only read it.
    """

    def __init__(self, settings: NodeSettings, storage: Storage, agent_enabled: bool = True):
        self.settings = settings
        self.storage = storage
        self.agent: Optional[Agent] = Agent(storage) if agent_enabled else None
        self.guid: GUID = generate_random_guid(settings.guid.algorithm)

        self._state = NODE_LIVE
        self._readers = 0
        self._cond = threading.Condition()

    @property
    def state(self) -> str:
        with self._cond:
            return self._state

    @property
    def alive(self) -> bool:
        return self.state == NODE_LIVE

    @property
    def destroyed(self) -> bool:
        return self.state == NODE_DESTROYED

    @property
    def readers(self) -> int:
        with self._cond:
            return self._readers

    def info(self) -> dict[str, Any]:
        """Summary used by the REST API and the web UI."""
        return {
            "guid": self.guid,
            "name": self.settings.node.name,
            "hostname": self.settings.node.hostname,
            "port": self.settings.node.port,
            "agent": self.agent is not None,
            "storage": self.storage.kind,
            "algorithm": self.settings.guid.algorithm,
        }

    @contextmanager
    def use(self) -> Iterator[NodeHandle]:
        """
        Hold the node alive for the duration of the block.

        Raises:
            NodeUnavailableError: If teardown has already begun.
        """
        with self._cond:
            if self._state != NODE_LIVE:
                raise NodeUnavailableError(f"Node {self.guid} is {self._state}")
            self._readers += 1
        try:
            yield self
        finally:
            with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    def kill(self, graceful: bool = True, timeout: float = DEFAULT_KILL_TIMEOUT) -> bool:
        """
        Tear the node down. Only the first call does any work.

        Args:
            graceful: Wait for in-flight readers before tearing down.
            timeout: Longest wait for readers, in seconds.

        Returns:
            True if this call performed the teardown.

        Raises:
            ShutdownError: If flushing or closing storage failed.
        """
        with self._cond:
            if self._state != NODE_LIVE:
                logger.debug(f"Node {self.guid} already {self._state}, kill ignored")
                return False
            self._state = NODE_DESTROYING

            if graceful and self._readers:
                logger.info(f"Waiting for {self._readers} reader(s) before teardown")
                if not self._cond.wait_for(lambda: self._readers == 0, timeout=timeout):
                    logger.warning(
                        f"{self._readers} reader(s) still active after {timeout}s, tearing down anyway"
                    )

        try:
            self._teardown()
        finally:
            with self._cond:
                self._state = NODE_DESTROYED
                self._cond.notify_all()

        logger.info(f"Node {self.guid} destroyed")
        return True

    def _teardown(self) -> None:
        """Flush storage, release the agent and close storage."""
        error: Optional[StorageError] = None

        try:
            self.storage.flush()
        except StorageError as e:
            error = e

        if self.agent is not None:
            self.agent.release()

        try:
            self.storage.close()
        except StorageError as e:
            error = error or e

        if error is not None:
            raise ShutdownError(f"Node {self.guid} teardown failed: {error}") from error


class NodeManager:
    """
    Owns the node of this process.

    Not reentrant: ``init`` while a node is live raises
    NodeAlreadyRunningError. After ``kill`` a new node may be created.
    """

    def __init__(self, storage_factory: StorageFactory = create_storage):
        self._storage_factory = storage_factory
        self._lock = threading.Lock()
        self._handle: Optional[NodeHandle] = None

    @property
    def handle(self) -> Optional[NodeHandle]:
        with self._lock:
            return self._handle

    def init(self, settings: NodeSettings) -> NodeHandle:
        """
        Create the node.

        Raises:
            NodeAlreadyRunningError: If a node is already live.
            StorageInitializationError: If the storage backend cannot be built.
        """
        with self._lock:
            if self._handle is not None and not self._handle.destroyed:
                raise NodeAlreadyRunningError(
                    f"Node {self._handle.guid} is still {self._handle.state}",
                    hint="Kill the running node before initialising another.",
                )

            store = settings.store
            try:
                storage = self._storage_factory(store, settings.guid.algorithm)
            except StorageError as e:
                raise StorageInitializationError(
                    f"Cannot create {store.type} storage at {store.location}: {e}"
                ) from e

            self._handle = NodeHandle(settings, storage, agent_enabled=settings.services.agent)

        logger.info(
            f"Node {self._handle.guid} ready ({storage.kind} storage, "
            f"agent {'enabled' if self._handle.agent else 'disabled'})"
        )
        return self._handle

    def kill(self, graceful: bool = True) -> bool:
        """
        Tear down the current node. Idempotent.

        Returns:
            True if this call performed the teardown.
        """
        handle = self.handle
        if handle is None:
            logger.debug("No node to kill")
            return False
        return handle.kill(graceful=graceful, timeout=handle.settings.launcher.shutdown_timeout)
