"""
SOS Front Ends

Every network front end (REST API, web UI, WebDAV bridge) is a Starlette app
served by its own uvicorn server thread. ``start(context, port)`` returns once
the server is listening and raises FrontEndStartupError if it cannot bind.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import uvicorn
from starlette.applications import Starlette

from sosnode.exceptions import FrontEndStartupError

if TYPE_CHECKING:
    from sosnode.filesystem import NodeFileSystem
    from sosnode.node import NodeHandle

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_STARTUP_TIMEOUT = 10.0
DEFAULT_STOP_TIMEOUT = 5.0

# Poll interval while waiting for uvicorn to report it is listening
_STARTUP_POLL = 0.05


@dataclass(frozen=True)
class FrontEndContext:
    """What a front end is started against."""
    node: NodeHandle
    filesystem: Optional[NodeFileSystem] = None


class FrontEnd:
    """
    Base class for uvicorn-served front ends.

    Subclasses provide ``name`` and ``create_app``.
    """

    name = "front end"

    def __init__(self, host: str = DEFAULT_HOST, startup_timeout: float = DEFAULT_STARTUP_TIMEOUT):
        self.host = host
        self.startup_timeout = startup_timeout
        self.port: Optional[int] = None

        self._lock = threading.Lock()
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None
        self._stop_requested = False

    @property
    def running(self) -> bool:
        return bool(
            self._server is not None
            and self._server.started
            and self._thread is not None
            and self._thread.is_alive()
        )

    def create_app(self, context: FrontEndContext) -> Starlette:
        raise NotImplementedError

    def start(self, context: FrontEndContext, port: int) -> None:
        """
        Start serving on ``port`` and wait until the server is listening.

        Raises:
            FrontEndStartupError: If the server cannot bind or start in time.
        """
        with self._lock:
            if self._stop_requested:
                raise FrontEndStartupError(self.name, port, "stop requested before startup")
            if self._server is not None:
                raise FrontEndStartupError(self.name, port, f"already started on port {self.port}")

            with context.node.use():
                app = self.create_app(context)

            config = uvicorn.Config(app, host=self.host, port=port, log_level="warning")
            self.port = port
            self._server = uvicorn.Server(config)
            self._thread = threading.Thread(
                target=self._serve,
                name=f"sos-{self.name.lower().replace(' ', '-')}",
                daemon=True,
            )
            self._thread.start()

        self._wait_started(port)
        logger.info(f"{self.name} listening on {self.host}:{port}")

    def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> None:
        """Ask the server to exit and wait for its thread."""
        with self._lock:
            self._stop_requested = True
            server, thread = self._server, self._thread

        if server is not None:
            server.should_exit = True
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"{self.name} on port {self.port} did not stop within {timeout}s")
                return
        if server is not None:
            logger.info(f"{self.name} on port {self.port} stopped")

    def _serve(self) -> None:
        try:
            self._server.run()
        except (Exception, SystemExit) as e:
            # uvicorn exits with SystemExit when it cannot bind
            self._error = e

    def _wait_started(self, port: int) -> None:
        deadline = time.monotonic() + self.startup_timeout
        while not self._server.started:
            if not self._thread.is_alive():
                reason = repr(self._error) if self._error else "server exited during startup"
                raise FrontEndStartupError(self.name, port, reason)
            if time.monotonic() > deadline:
                self._server.should_exit = True
                raise FrontEndStartupError(
                    self.name, port, f"not listening after {self.startup_timeout}s"
                )
            time.sleep(_STARTUP_POLL)
