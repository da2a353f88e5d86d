"""Exception hierarchy for the SOS node launcher.

Errors raised before the node is ready abort the process. Errors raised
after it is ready are contained by whoever catches them (a front-end task,
the shutdown coordinator) and only logged.

Hierarchy
---------
SOSNodeError
├── ConfigurationError
├── GUIDError
├── StorageError
│   └── StorageInitializationError
├── NodeStateError
│   ├── NodeAlreadyRunningError
│   └── NodeUnavailableError
├── FileSystemError
├── FrontEndStartupError
├── PoolClosedError
└── ShutdownError
"""

from __future__ import annotations

from typing import Optional


class SOSNodeError(Exception):
    """Base exception for all launcher errors.

    The CLI error boundary renders ``str(error)`` and the optional hint
    without a traceback.
    """

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint: Optional[str] = hint


# --- Launch configuration --------------------------------------------------

class ConfigurationError(SOSNodeError):
    """Raised for bad CLI input or an unreadable/invalid configuration file."""


class GUIDError(SOSNodeError):
    """Raised for a malformed GUID or an unsupported hash algorithm."""


# --- Storage ---------------------------------------------------------------

class StorageError(SOSNodeError):
    """Raised when the storage backend cannot be built or an operation fails."""


class StorageInitializationError(StorageError):
    """Raised when the node cannot be initialised because storage failed."""


# --- Node lifecycle --------------------------------------------------------

class NodeStateError(SOSNodeError):
    """Raised on an illegal node or process state transition."""


class NodeAlreadyRunningError(NodeStateError):
    """Raised when init is called while a node handle is still live."""


class NodeUnavailableError(NodeStateError):
    """Raised when the node is read after teardown has begun."""


# --- Front ends ------------------------------------------------------------

class FileSystemError(SOSNodeError):
    """Raised by the filesystem bridge for invalid paths."""


class FrontEndStartupError(SOSNodeError):
    """Raised when a front end fails to bind or start."""

    def __init__(self, name: str, port: int, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(f"{name} failed to start on port {port}: {message}", hint=hint)
        self.name = name
        self.port = port


class PoolClosedError(SOSNodeError):
    """Raised when a task is submitted after the worker pool shut down."""


class ShutdownError(SOSNodeError):
    """Raised when node teardown fails."""
