"""
SOS Orchestrator

Responsible for the full lifecycle of an SOS node process:
- Parse and validate the node configuration
- Initialise the node (storage + agent)
- Launch the selected front ends on a shared worker pool
- Register the once-only termination handler for an ordered shutdown
"""

from __future__ import annotations

import atexit
import logging
import signal
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from sosnode.exceptions import (
    ConfigurationError,
    GUIDError,
    NodeStateError,
    PoolClosedError,
    StorageInitializationError,
)
from sosnode.filesystem import NodeFileSystem
from sosnode.frontend import FrontEnd, FrontEndContext
from sosnode.guid import (
    DEFAULT_GUID_ALGORITHM,
    GUID,
    generate_random_guid,
    is_valid_guid,
    recreate_guid,
    validate_algorithm,
)
from sosnode.node import NodeHandle, NodeManager
from sosnode.pool import DEFAULT_POOL_SIZE, WorkerPool
from sosnode.rest_api import RestAPI
from sosnode.storage import STORAGE_TYPES
from sosnode.webapp import WebApp
from sosnode.webdav import WebDAVServer

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_NODE_NAME = "sos-node"
DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_REST_PORT = 8080
DEFAULT_WEBAPP_PORT = 8081
DEFAULT_WEBDAV_PORT = 8082
DEFAULT_STORE_TYPE = "local"
DEFAULT_STORE_LOCATION = "./sos-data"
DEFAULT_STARTUP_TIMEOUT = 10.0
DEFAULT_SHUTDOWN_TIMEOUT = 30.0

TERMINATION_TIME_FORMAT = "%d/%m/%Y %H:%M:%S"

# Process states
STATE_NOT_STARTED = "not_started"
STATE_CONFIGURING = "configuring"
STATE_NODE_INITIALIZING = "node_initializing"
STATE_NODE_READY = "node_ready"
STATE_FAILED = "failed"
STATE_RUNNING = "running"
STATE_SHUTTING_DOWN = "shutting_down"
STATE_TERMINATED = "terminated"

PROCESS_TRANSITIONS = {
    STATE_NOT_STARTED: frozenset({STATE_CONFIGURING}),
    STATE_CONFIGURING: frozenset({STATE_NODE_INITIALIZING}),
    STATE_NODE_INITIALIZING: frozenset({STATE_NODE_READY, STATE_FAILED}),
    STATE_NODE_READY: frozenset({STATE_RUNNING}),
    STATE_RUNNING: frozenset({STATE_SHUTTING_DOWN}),
    STATE_SHUTTING_DOWN: frozenset({STATE_TERMINATED}),
    STATE_FAILED: frozenset(),
    STATE_TERMINATED: frozenset(),
}

# Front-end states
FRONTEND_STARTING = "starting"
FRONTEND_STARTED = "started"
FRONTEND_START_FAILED = "start_failed"

# Shutdown states
SHUTDOWN_NOT_YET = "not_yet"
SHUTDOWN_IN_PROGRESS = "in_progress"
SHUTDOWN_DONE = "done"


# ============================================================================
# Configuration Dataclasses
# ============================================================================


@dataclass(frozen=True)
class NodeConfig:
    """Node identity; ``port`` is where the REST API listens."""
    name: str = DEFAULT_NODE_NAME
    hostname: str = DEFAULT_HOSTNAME
    port: int = DEFAULT_REST_PORT


@dataclass(frozen=True)
class StoreConfig:
    """Storage backend parameters."""
    type: str = DEFAULT_STORE_TYPE
    location: Optional[str] = DEFAULT_STORE_LOCATION


@dataclass(frozen=True)
class GUIDConfig:
    algorithm: str = DEFAULT_GUID_ALGORITHM


@dataclass(frozen=True)
class ServicesConfig:
    """Node services. Without the agent the filesystem bridge is disabled."""
    agent: bool = True


@dataclass(frozen=True)
class PortConfig:
    port: int


@dataclass(frozen=True)
class LauncherConfig:
    """Worker pool and timeout settings."""
    pool_size: int = DEFAULT_POOL_SIZE
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT


@dataclass(frozen=True)
class NodeSettings:
    """Complete node configuration."""
    node: NodeConfig = field(default_factory=NodeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    guid: GUIDConfig = field(default_factory=GUIDConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    webapp: PortConfig = field(default_factory=lambda: PortConfig(DEFAULT_WEBAPP_PORT))
    webdav: PortConfig = field(default_factory=lambda: PortConfig(DEFAULT_WEBDAV_PORT))
    launcher: LauncherConfig = field(default_factory=LauncherConfig)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return value


def _port(section: dict[str, Any], name: str, default: int) -> int:
    value = section.get("port", default)
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 65535:
        raise ConfigurationError(f"{name}.port must be an integer between 0 and 65535, got {value!r}")
    return value


def _positive(section: dict[str, Any], key: str, name: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"{name}.{key} must be a positive number, got {value!r}")
    return value


def parse_config(config_path: Path) -> NodeSettings:
    """
    Parse a node configuration file (YAML or JSON) into typed settings.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Parsed NodeSettings.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    config_path = Path(config_path)
    if not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e

    if not raw:
        raise ConfigurationError(f"Config file is empty: {config_path}")
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {config_path}")

    # Parse node
    node_raw = _section(raw, "node")
    node = NodeConfig(
        name=str(node_raw.get("name", DEFAULT_NODE_NAME)),
        hostname=str(node_raw.get("hostname", DEFAULT_HOSTNAME)),
        port=_port(node_raw, "node", DEFAULT_REST_PORT),
    )

    # Parse store
    store_raw = _section(raw, "store")
    store_type = store_raw.get("type", DEFAULT_STORE_TYPE)
    if store_type not in STORAGE_TYPES:
        raise ConfigurationError(
            f"store.type must be one of: {', '.join(sorted(STORAGE_TYPES))}, got {store_type!r}"
        )
    location = store_raw.get("location", DEFAULT_STORE_LOCATION)
    if location is not None:
        location = str(Path(location).expanduser())
    store = StoreConfig(type=store_type, location=location)

    # Parse guid
    guid_raw = _section(raw, "guid")
    try:
        algorithm = validate_algorithm(str(guid_raw.get("algorithm", DEFAULT_GUID_ALGORITHM)))
    except GUIDError as e:
        raise ConfigurationError(f"guid.algorithm: {e}") from e

    # Parse services
    services_raw = _section(raw, "services")
    services = ServicesConfig(agent=bool(services_raw.get("agent", True)))

    # Parse launcher
    launcher_raw = _section(raw, "launcher")
    pool_size = launcher_raw.get("pool_size", DEFAULT_POOL_SIZE)
    if isinstance(pool_size, bool) or not isinstance(pool_size, int) or pool_size < 1:
        raise ConfigurationError(f"launcher.pool_size must be a positive integer, got {pool_size!r}")
    launcher = LauncherConfig(
        pool_size=pool_size,
        startup_timeout=_positive(launcher_raw, "startup_timeout", "launcher", DEFAULT_STARTUP_TIMEOUT),
        shutdown_timeout=_positive(launcher_raw, "shutdown_timeout", "launcher", DEFAULT_SHUTDOWN_TIMEOUT),
    )

    return NodeSettings(
        node=node,
        store=store,
        guid=GUIDConfig(algorithm=algorithm),
        services=services,
        webapp=PortConfig(_port(_section(raw, "webapp"), "webapp", DEFAULT_WEBAPP_PORT)),
        webdav=PortConfig(_port(_section(raw, "webdav"), "webdav", DEFAULT_WEBDAV_PORT)),
        launcher=launcher,
    )


# ============================================================================
# Front-End Launcher
# ============================================================================


@dataclass(frozen=True)
class FrontEndSelection:
    """Which front ends to launch, derived once from the CLI."""
    enable_rest: bool = False
    enable_filesystem_bridge: bool = False
    root_id: Optional[str] = None


@dataclass(frozen=True)
class FrontEndResult:
    """Outcome of one front-end startup."""
    name: str
    port: int
    state: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == FRONTEND_STARTED


FrontEndFactory = Callable[..., FrontEnd]


@dataclass
class FrontEndFactories:
    """Constructors for each front end; replaced by fakes in tests."""
    rest: FrontEndFactory = RestAPI
    webapp: FrontEndFactory = WebApp
    webdav: FrontEndFactory = WebDAVServer


def resolve_root(root_id: Optional[str], algorithm: str) -> GUID:
    """
    Return the filesystem root: the caller's value verbatim, or a new GUID.

    Raises:
        ConfigurationError: If ``root_id`` is empty.
    """
    if root_id is None:
        root = generate_random_guid(algorithm)
        logger.info(f"Generated filesystem root {root}")
        return root

    try:
        root = recreate_guid(root_id)
    except GUIDError as e:
        raise ConfigurationError(f"Invalid root GUID {root_id!r}: {e}") from e

    if not is_valid_guid(root, algorithm):
        logger.warning(f"Root {root} is not a well-formed {algorithm} GUID, using it as given")
    return root


class FrontEndLauncher:
    """
    Submits front-end startup tasks and supervises their outcomes.

    Every task catches its own failures and reports them as FrontEndResult
    values; nothing a front end raises reaches the pool or another task.
    """

    def __init__(
        self,
        node: NodeHandle,
        settings: NodeSettings,
        pool: WorkerPool,
        factories: Optional[FrontEndFactories] = None,
    ):
        self.node = node
        self.settings = settings
        self.pool = pool
        self.factories = factories or FrontEndFactories()

        self.root: Optional[GUID] = None
        self.filesystem: Optional[NodeFileSystem] = None
        self.futures: list[Future] = []

        self._lock = threading.Lock()
        self._front_ends: list[FrontEnd] = []
        self._states: dict[str, str] = {}
        self._results: list[FrontEndResult] = []

    @property
    def states(self) -> dict[str, str]:
        """Current state of every front end that began starting."""
        with self._lock:
            return dict(self._states)

    def results(self) -> list[FrontEndResult]:
        """Results of every finished startup, in completion order."""
        with self._lock:
            return list(self._results)

    def launch(self, selection: FrontEndSelection, root: Optional[GUID] = None) -> list[Future]:
        """
        Submit the startup tasks for ``selection``. Does not wait for them.

        Args:
            selection: Front ends to launch.
            root: Filesystem root already resolved by the caller.
        """
        if selection.enable_filesystem_bridge:
            self.root = root if root is not None else resolve_root(
                selection.root_id, self.settings.guid.algorithm
            )

        if selection.enable_rest:
            self._submit("rest", self._run_rest)

        if selection.enable_filesystem_bridge:
            if self.node.agent is None:
                logger.info(f"Agent disabled, WebApp and WebDAV not started for root {self.root}")
            else:
                self._submit("webapp+webdav", self._run_webapp_and_webdav)
        elif self.node.agent is None:
            logger.info("Agent disabled, WebApp not started")
        else:
            self._submit("webapp", self._run_webapp)

        return list(self.futures)

    def stop_all(self) -> None:
        """Ask every front end to stop. Failures are logged."""
        with self._lock:
            front_ends = list(self._front_ends)

        for front_end in front_ends:
            try:
                front_end.stop()
            except Exception as e:
                logger.error(f"Error stopping {front_end.name} on port {front_end.port}: {e}")

    # --- Tasks ---

    def _run_rest(self) -> list[FrontEndResult]:
        context = FrontEndContext(node=self.node)
        return [self._start(self.factories.rest, context, self.settings.node.port)]

    def _run_webapp(self) -> list[FrontEndResult]:
        context = FrontEndContext(node=self.node)
        return [self._start(self.factories.webapp, context, self.settings.webapp.port)]

    def _run_webapp_and_webdav(self) -> list[FrontEndResult]:
        """Start the web UI, then the WebDAV bridge whatever the UI's outcome."""
        try:
            with self.node.use():
                self.filesystem = NodeFileSystem(self.node.agent, self.root)
        except Exception as e:
            logger.error(f"Cannot create filesystem for root {self.root}: {e}")
            return [
                FrontEndResult("WebApp", self.settings.webapp.port, FRONTEND_START_FAILED, str(e)),
                FrontEndResult("WebDAV", self.settings.webdav.port, FRONTEND_START_FAILED, str(e)),
            ]

        context = FrontEndContext(node=self.node, filesystem=self.filesystem)
        return [
            self._start(self.factories.webapp, context, self.settings.webapp.port),
            self._start(self.factories.webdav, context, self.settings.webdav.port),
        ]

    def _start(self, factory: FrontEndFactory, context: FrontEndContext, port: int) -> FrontEndResult:
        front_end = factory(
            host=self.settings.node.hostname,
            startup_timeout=self.settings.launcher.startup_timeout,
        )
        name = front_end.name

        with self._lock:
            self._front_ends.append(front_end)
            self._states[name] = FRONTEND_STARTING

        logger.info(f"Launching the {name} on port: {port}")
        try:
            front_end.start(context, port)
        except Exception as e:
            logger.error(f"Error while starting {name} on port {port}: {e}")
            result = FrontEndResult(name, port, FRONTEND_START_FAILED, str(e))
        else:
            result = FrontEndResult(name, port, FRONTEND_STARTED)

        with self._lock:
            self._states[name] = result.state
        return result

    def _submit(self, name: str, task: Callable[[], list[FrontEndResult]]) -> None:
        try:
            future = self.pool.submit(name, task)
        except PoolClosedError as e:
            logger.warning(f"{e}")
            return

        future.add_done_callback(self._collect)
        self.futures.append(future)

    def _collect(self, future: Future) -> None:
        """Supervisor callback: record results, log failures, never raise."""
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Front-end task failed unexpectedly: {error}")
            return

        results = future.result()
        with self._lock:
            self._results.extend(results)
        for result in results:
            if not result.ok:
                logger.warning(f"{result.name} on port {result.port} did not start: {result.error}")


# ============================================================================
# Shutdown Coordinator
# ============================================================================


class ShutdownCoordinator:
    """
    Once-only termination handler.

    In order: close the worker pool and stop the front ends, kill the node,
    log the termination time. Teardown failures are logged, never raised.
    """

    def __init__(
        self,
        pool: WorkerPool,
        node_manager: NodeManager,
        launcher: Optional[FrontEndLauncher] = None,
        on_state_change: Optional[Callable[[str], None]] = None,
    ):
        self.pool = pool
        self.node_manager = node_manager
        self.launcher = launcher
        self.on_state_change = on_state_change
        self.terminated = threading.Event()

        self._lock = threading.Lock()
        self._state = SHUTDOWN_NOT_YET
        self._registered = False
        self._original_sigint = None
        self._original_sigterm = None

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def register(self) -> None:
        """Register the handler for SIGTERM, SIGINT and interpreter exit."""
        self._original_sigint = signal.signal(signal.SIGINT, self._signal_handler)
        self._original_sigterm = signal.signal(signal.SIGTERM, self._signal_handler)
        self._registered = True
        atexit.register(self.handle_termination)
        logger.info("SOS shutdown handler has been registered. Send SIGTERM to stop the node")

    def handle_termination(self) -> bool:
        """
        Run the shutdown sequence. Only the first call does anything.

        Returns:
            True if this call ran the shutdown.
        """
        with self._lock:
            if self._state != SHUTDOWN_NOT_YET:
                return False
            self._state = SHUTDOWN_IN_PROGRESS

        self._notify(STATE_SHUTTING_DOWN)
        try:
            # Step 1: Stop accepting front-end tasks and stop running servers
            self.pool.shutdown()
            if self.launcher:
                self.launcher.stop_all()

            # Step 2: Tear down the node
            try:
                self.node_manager.kill(graceful=True)
            except Exception as e:
                logger.error(f"Error while killing the node: {e}")

            # Step 3: Termination record
            logger.info(f"SOS instance terminated at {datetime.now().strftime(TERMINATION_TIME_FORMAT)}")

        finally:
            with self._lock:
                self._state = SHUTDOWN_DONE
            self._restore_signal_handlers()
            self._notify(STATE_TERMINATED)
            self.terminated.set()

        return True

    def _notify(self, state: str) -> None:
        if self.on_state_change:
            self.on_state_change(state)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers so a second signal is not swallowed."""
        if not self._registered or threading.current_thread() is not threading.main_thread():
            return
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Handle SIGINT/SIGTERM."""
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name}, shutting down...")
        self.handle_termination()


# ============================================================================
# Orchestrator
# ============================================================================


class Orchestrator:
    """
    Top-level driver: configuration, node, front ends, shutdown handler.

    ``start`` returns as soon as the front-end tasks are submitted.
    """

    def __init__(
        self,
        config_path: Path,
        selection: FrontEndSelection,
        node_manager: Optional[NodeManager] = None,
        factories: Optional[FrontEndFactories] = None,
        register_signals: bool = True,
    ):
        """
        Initialize the orchestrator.

        Args:
            config_path: Path to the node configuration file.
            selection: Front ends to launch.
            node_manager: Lifecycle manager; a new one by default.
            factories: Front-end constructors.
            register_signals: Install the termination handler on start.
        """
        self.config_path = Path(config_path)
        self.selection = selection
        self.node_manager = node_manager or NodeManager()
        self.factories = factories
        self.register_signals = register_signals

        # Will be initialized during start
        self.settings: Optional[NodeSettings] = None
        self.node: Optional[NodeHandle] = None
        self.pool: Optional[WorkerPool] = None
        self.launcher: Optional[FrontEndLauncher] = None
        self.coordinator: Optional[ShutdownCoordinator] = None

        self._state_lock = threading.Lock()
        self._state = STATE_NOT_STARTED

    @property
    def state(self) -> str:
        with self._state_lock:
            return self._state

    def start(self) -> None:
        """
        Execute the startup sequence.

        Raises:
            ConfigurationError: If the configuration cannot be loaded.
            StorageInitializationError: If the node cannot be created.
        """
        # Step 1: Parse configuration
        self._transition(STATE_CONFIGURING)
        logger.info(f"Loading configuration from {self.config_path}")
        self.settings = parse_config(self.config_path)
        root = None
        if self.selection.enable_filesystem_bridge:
            root = resolve_root(self.selection.root_id, self.settings.guid.algorithm)

        # Step 2: Initialise the node
        self._transition(STATE_NODE_INITIALIZING)
        try:
            self.node = self.node_manager.init(self.settings)
        except (StorageInitializationError, NodeStateError) as e:
            logger.error(f"Node initialisation failed: {e}")
            self._transition(STATE_FAILED)
            raise
        self._transition(STATE_NODE_READY)

        # Step 3: Launch front ends
        self.pool = WorkerPool(self.settings.launcher.pool_size)
        self.launcher = FrontEndLauncher(self.node, self.settings, self.pool, self.factories)
        self.launcher.launch(self.selection, root=root)
        self._transition(STATE_RUNNING)

        # Step 4: Shutdown handler
        self.coordinator = ShutdownCoordinator(
            self.pool,
            self.node_manager,
            self.launcher,
            on_state_change=self._transition,
        )
        if self.register_signals:
            self.coordinator.register()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the shutdown handler has run.

        Returns:
            True if the process terminated within ``timeout``.
        """
        if self.coordinator is None:
            return True
        return self.coordinator.terminated.wait(timeout)

    def shutdown(self) -> bool:
        """Run the shutdown handler directly (same as receiving SIGTERM)."""
        if self.coordinator is None:
            return False
        return self.coordinator.handle_termination()

    def _transition(self, new_state: str) -> None:
        with self._state_lock:
            if new_state not in PROCESS_TRANSITIONS[self._state]:
                raise NodeStateError(f"Illegal process transition {self._state} -> {new_state}")
            logger.debug(f"Process state {self._state} -> {new_state}")
            self._state = new_state
