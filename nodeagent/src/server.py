from __future__ import annotations

import logging
import signal
import threading
from enum import Enum
from http.server import ThreadingHTTPServer

from kubernetes.client import CoreV1Api

from nodeagent.src.arkclient import ArkV1Client
from nodeagent.src.config import ServerConfig
from nodeagent.src.credentials import CredentialProvisioner, ProvisionError, ResticEnvironment
from nodeagent.src.health import start_health_server
from nodeagent.src.metrics import METRICS
from nodeagent.src.supervisor import ReconciliationSupervisor, ReconciliationTasks
from nodeagent.src.tasks import CancellationToken, TaskGroup
from nodeagent.src.watches import ScopedWatchManager

LOGGER = logging.getLogger(__name__)


class ServerState(str, Enum):
    INITIALIZING = "Initializing"
    CREDENTIALS_READY = "CredentialsReady"
    STREAMS_STARTING = "StreamsStarting"
    RUNNING = "Running"
    SHUTTING_DOWN = "ShuttingDown"
    STOPPED = "Stopped"


_TRANSITIONS: dict[ServerState, set[ServerState]] = {
    ServerState.INITIALIZING: {ServerState.CREDENTIALS_READY, ServerState.STOPPED},
    ServerState.CREDENTIALS_READY: {ServerState.STREAMS_STARTING},
    ServerState.STREAMS_STARTING: {ServerState.RUNNING},
    ServerState.RUNNING: {ServerState.SHUTTING_DOWN},
    ServerState.SHUTTING_DOWN: {ServerState.STOPPED},
    ServerState.STOPPED: set(),
}


class ResticServer:
    """Lifecycle orchestrator for the per-node restic agent.

    Startup is strictly ordered: provider credentials are provisioned first
    (a failure stops the server before anything else starts), then the
    node-scoped watches and the reconciliation loops are dispatched as
    background tasks sharing one :class:`CancellationToken`.  ``run`` then
    blocks until the token fires (SIGTERM/SIGINT, or a task exiting
    unexpectedly) and returns only after every registered task has finished.

    No shutdown deadline is enforced; tasks are trusted to honour the token.
    """

    def __init__(
        self,
        config: ServerConfig,
        core_api: CoreV1Api,
        ark_client: ArkV1Client,
        provisioner: CredentialProvisioner | None = None,
        supervisor: ReconciliationSupervisor | None = None,
        token: CancellationToken | None = None,
        health_enabled: bool = True,
        shutdown_poll_interval: float = 30.0,
    ) -> None:
        self.config = config
        self.core_api = core_api
        self.ark_client = ark_client
        self.provisioner = provisioner or CredentialProvisioner(ark_client, config.namespace)
        self.supervisor = supervisor or ReconciliationSupervisor(
            ark_client, core_api, config.host_pods_root
        )
        self.token = token or CancellationToken()
        self.tasks = TaskGroup(self.token)
        self.health_enabled = health_enabled
        self.shutdown_poll_interval = shutdown_poll_interval

        self.environment: ResticEnvironment | None = None
        self.streams: ScopedWatchManager | None = None
        self.loops: ReconciliationTasks | None = None
        self.history: list[ServerState] = []
        self._state = ServerState.INITIALIZING
        self._state_lock = threading.Lock()
        self._health_server: ThreadingHTTPServer | None = None
        self._record_state(ServerState.INITIALIZING)

    @property
    def state(self) -> ServerState:
        return self._state

    def _record_state(self, state: ServerState) -> None:
        self.history.append(state)
        METRICS.server_state.info({"state": state.value})
        LOGGER.info("Server state: %s", state.value)

    def _transition(self, state: ServerState) -> None:
        with self._state_lock:
            if state not in _TRANSITIONS[self._state]:
                raise RuntimeError(f"invalid server state transition {self._state.value} -> {state.value}")
            self._state = state
            self._record_state(state)

    def provision(self) -> ResticEnvironment:
        """Provision provider credentials; any failure stops the server."""
        try:
            self.environment = self.provisioner.provision(self.config.default_backup_location)
        except ProvisionError:
            self._transition(ServerState.STOPPED)
            raise
        self._transition(ServerState.CREDENTIALS_READY)
        return self.environment

    def ready(self) -> bool:
        if self.state is not ServerState.RUNNING:
            return False
        if self.streams is None or not self.streams.has_synced():
            return False
        loop_informers = self.loops.informers if self.loops is not None else ()
        return all(informer.has_synced.is_set() for informer in loop_informers)

    def start(self) -> None:
        """Dispatch every watch and reconciliation task; does not wait for sync."""
        if self.environment is None:
            raise RuntimeError("credentials must be provisioned before starting")
        self._transition(ServerState.STREAMS_STARTING)
        LOGGER.info("Starting controllers")

        self.streams = ScopedWatchManager(
            self.core_api, self.config.namespace, self.config.node_name
        )
        self.streams.start(self.tasks)
        self.loops = self.supervisor.start(
            namespace=self.config.namespace,
            node_name=self.config.node_name,
            streams=self.streams,
            environment=self.environment,
            tasks=self.tasks,
        )
        self._transition(ServerState.RUNNING)
        LOGGER.info("Controllers started successfully")

    def install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            LOGGER.info("Received signal %d, shutting down", signum)
            self.token.cancel(f"received signal {signum}")

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    def wait(self) -> None:
        """Block until cancellation, then until every task has finished."""
        self.token.wait()
        self._transition(ServerState.SHUTTING_DOWN)
        LOGGER.info("Waiting for all controllers to shut down gracefully")
        self.tasks.wait(poll_interval=self.shutdown_poll_interval)
        if self._health_server is not None:
            self._health_server.shutdown()
            self._health_server = None
        self._transition(ServerState.STOPPED)
        LOGGER.info("All controllers stopped (%s)", self.token.reason)

    def serve_health(self) -> None:
        """Start the health server once; binding errors propagate as OSError."""
        if self.health_enabled and self._health_server is None:
            self._health_server = start_health_server(self.ready, self.config.health_port)

    def run(self, install_signals: bool = True) -> None:
        if self.state is ServerState.INITIALIZING:
            self.provision()
        if install_signals:
            self.install_signal_handlers()
        self.serve_health()
        self.start()
        self.wait()
