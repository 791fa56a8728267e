from __future__ import annotations

import functools
import signal
import threading
import time
from collections.abc import Callable, Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from nodeagent.src.arkclient import ArkV1Client
from nodeagent.src.config import ServerConfig
from nodeagent.src.credentials import (
    CredentialProvisioner,
    InvalidProviderConfig,
    LocationNotFound,
    ResticEnvironment,
    azure_restic_environment,
)
from nodeagent.src.server import ResticServer, ServerState
from nodeagent.src.tasks import CancellationToken, TaskGroup
from nodeagent.src.watches import ScopedWatchManager

CONFIG = ServerConfig(namespace="heptio-ark", node_name="node-7", health_port=0)


class IdleWatch:
    """Watch stand-in that delivers nothing and returns quickly or when stopped."""

    def __init__(self) -> None:
        self._stopped = threading.Event()

    def stream(self, func: Any, **kwargs: Any) -> Iterator[dict[str, Any]]:
        self._stopped.wait(timeout=0.05)
        return iter(())

    def stop(self) -> None:
        self._stopped.set()


def make_pod(name: str, node: str) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace="shop", resource_version="1", uid=f"uid-{name}"),
        spec=SimpleNamespace(node_name=node, volumes=[]),
    )


def make_core_api(*pods: Any) -> SimpleNamespace:
    return SimpleNamespace(
        list_pod_for_all_namespaces=MagicMock(
            return_value=SimpleNamespace(items=list(pods), metadata=SimpleNamespace(resource_version="7"))
        ),
        list_namespaced_secret=MagicMock(
            return_value=SimpleNamespace(items=[], metadata=SimpleNamespace(resource_version="7"))
        ),
        read_namespaced_persistent_volume_claim=MagicMock(),
    )


def make_custom_api(location: dict[str, Any] | None = None, error: Exception | None = None) -> MagicMock:
    custom_api = MagicMock()
    if error is not None:
        custom_api.get_namespaced_custom_object.side_effect = error
    else:
        custom_api.get_namespaced_custom_object.return_value = location or {
            "metadata": {"name": "default", "namespace": "heptio-ark"},
            "spec": {"provider": "aws", "config": {"region": "us-east-1"}},
        }
    custom_api.list_namespaced_custom_object.return_value = {"items": [], "metadata": {"resourceVersion": "3"}}
    return custom_api


def make_server(core_api: Any = None, custom_api: Any = None, **kwargs: Any) -> ResticServer:
    return ResticServer(
        config=CONFIG,
        core_api=core_api if core_api is not None else make_core_api(),
        ark_client=ArkV1Client(custom_api if custom_api is not None else make_custom_api()),
        health_enabled=False,
        shutdown_poll_interval=0.05,
        **kwargs,
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def run_in_background(server: ResticServer) -> threading.Thread:
    thread = threading.Thread(target=server.run, kwargs={"install_signals": False}, daemon=True)
    thread.start()
    return thread


class FakeSupervisor:
    """Registers stand-in reconciliation loops that record when they finish."""

    def __init__(self, events: list[str], linger: float = 0.1, exit_early: bool = False) -> None:
        self.events = events
        self.linger = linger
        self.exit_early = exit_early

    def _loop(self, name: str) -> Callable[[CancellationToken], None]:
        def _run(token: CancellationToken) -> None:
            if not self.exit_early:
                token.wait()
                time.sleep(self.linger)
            self.events.append(f"{name} finished")

        return _run

    def start(
        self,
        namespace: str,
        node_name: str,
        streams: ScopedWatchManager,
        environment: ResticEnvironment,
        tasks: TaskGroup,
    ) -> SimpleNamespace:
        self.events.append("supervisor.start")
        tasks.go("controller-backup", self._loop("backup"))
        tasks.go("controller-restore", self._loop("restore"))
        return SimpleNamespace(informers=())


def record_states(server: ResticServer, events: list[str], monkeypatch: pytest.MonkeyPatch) -> None:
    original = server._record_state

    def recording(state: ServerState) -> None:
        events.append(state.value)
        original(state)

    monkeypatch.setattr(server, "_record_state", recording)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def test_aws_location_reaches_running_and_stops_cleanly() -> None:
    server = make_server()

    with patch("nodeagent.src.informer.watch.Watch", IdleWatch):
        thread = run_in_background(server)
        assert wait_for(lambda: server.state is ServerState.RUNNING)
        assert wait_for(server.ready)
        assert sorted(server.tasks.names()) == [
            "controller-backup",
            "controller-restore",
            "informer-podvolumebackups",
            "informer-podvolumerestores",
            "informer-pods",
            "informer-secrets",
        ]

        server.token.cancel("test")
        thread.join(timeout=5.0)

    assert not thread.is_alive()
    assert server.state is ServerState.STOPPED
    assert server.tasks.running() == []
    assert server.history == [
        ServerState.INITIALIZING,
        ServerState.CREDENTIALS_READY,
        ServerState.STREAMS_STARTING,
        ServerState.RUNNING,
        ServerState.SHUTTING_DOWN,
        ServerState.STOPPED,
    ]


def test_missing_location_stops_before_any_stream() -> None:
    core_api = make_core_api()
    server = make_server(
        core_api=core_api, custom_api=make_custom_api(error=ApiException(status=404, reason="Not Found"))
    )

    with pytest.raises(LocationNotFound):
        server.run(install_signals=False)

    assert server.state is ServerState.STOPPED
    assert server.history == [ServerState.INITIALIZING, ServerState.STOPPED]
    assert server.tasks.names() == []
    core_api.list_pod_for_all_namespaces.assert_not_called()


def test_incomplete_azure_config_starts_no_tasks() -> None:
    custom_api = make_custom_api(
        {
            "metadata": {"name": "default", "namespace": "heptio-ark"},
            "spec": {"provider": "azure", "config": {"resourceGroup": "rg"}},
        }
    )
    lookup = MagicMock()
    provisioner = CredentialProvisioner(
        ArkV1Client(custom_api),
        "heptio-ark",
        providers={"azure": functools.partial(azure_restic_environment, env={}, key_lookup=lookup)},
    )
    server = make_server(custom_api=custom_api, provisioner=provisioner)

    with pytest.raises(InvalidProviderConfig):
        server.run(install_signals=False)

    assert server.state is ServerState.STOPPED
    assert server.tasks.names() == []
    lookup.assert_not_called()


def test_provisioning_precedes_every_task(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []

    class RecordingProvisioner:
        def provision(self, location_name: str) -> ResticEnvironment:
            events.append(f"provision {location_name}")
            return ResticEnvironment()

    class RecordingStreams(ScopedWatchManager):
        def start(self, tasks: TaskGroup) -> None:
            events.append("streams.start")
            super().start(tasks)

    monkeypatch.setattr("nodeagent.src.server.ScopedWatchManager", RecordingStreams)
    server = make_server(provisioner=RecordingProvisioner(), supervisor=FakeSupervisor(events))
    record_states(server, events, monkeypatch)

    with patch("nodeagent.src.informer.watch.Watch", IdleWatch):
        thread = run_in_background(server)
        assert wait_for(lambda: server.state is ServerState.RUNNING)
        server.token.cancel()
        thread.join(timeout=5.0)

    assert events[:5] == [
        "provision default",
        "CredentialsReady",
        "StreamsStarting",
        "streams.start",
        "supervisor.start",
    ]
    assert events.index("Running") > events.index("supervisor.start")


def test_start_requires_provisioned_credentials() -> None:
    server = make_server()

    with pytest.raises(RuntimeError, match="provisioned"):
        server.start()

    assert server.tasks.names() == []


def test_pod_stream_only_holds_pods_on_this_node() -> None:
    core_api = make_core_api(make_pod("on-7", "node-7"), make_pod("on-9", "node-9"))
    server = make_server(core_api=core_api)

    with patch("nodeagent.src.informer.watch.Watch", IdleWatch):
        thread = run_in_background(server)
        assert wait_for(server.ready)
        cached = [pod.metadata.name for pod in server.streams.pods.indexer.list()]
        server.token.cancel()
        thread.join(timeout=5.0)

    assert cached == ["on-7"]
    core_api.list_pod_for_all_namespaces.assert_called_with(field_selector="spec.nodeName=node-7")


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


def test_termination_signal_waits_for_both_loops(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []
    server = make_server(supervisor=FakeSupervisor(events, linger=0.2))
    record_states(server, events, monkeypatch)
    handlers: dict[int, Callable[[int, object], None]] = {}

    def capture(signum: int, handler: Callable[[int, object], None]) -> None:
        handlers[signum] = handler

    def deliver_sigterm() -> None:
        assert wait_for(lambda: server.state is ServerState.RUNNING)
        handlers[signal.SIGTERM](signal.SIGTERM, None)

    with (
        patch("nodeagent.src.informer.watch.Watch", IdleWatch),
        patch("nodeagent.src.server.signal.signal", side_effect=capture),
    ):
        sender = threading.Thread(target=deliver_sigterm)
        sender.start()
        server.run()
        sender.join(timeout=2.0)

    assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
    assert server.state is ServerState.STOPPED
    assert server.token.reason == f"received signal {signal.SIGTERM}"
    stopped_at = events.index("Stopped")
    assert events.index("backup finished") < stopped_at
    assert events.index("restore finished") < stopped_at
    assert events.index("ShuttingDown") < events.index("backup finished")


def test_second_cancellation_is_a_no_op() -> None:
    server = make_server(supervisor=FakeSupervisor([], linger=0.0))

    with patch("nodeagent.src.informer.watch.Watch", IdleWatch):
        thread = run_in_background(server)
        assert wait_for(lambda: server.state is ServerState.RUNNING)
        assert server.token.cancel("first") is True
        thread.join(timeout=5.0)

    history = list(server.history)
    assert server.token.cancel("second") is False
    assert server.state is ServerState.STOPPED
    assert server.history == history
    assert server.token.reason == "first"


def test_loop_exiting_early_triggers_shutdown() -> None:
    events: list[str] = []
    server = make_server(supervisor=FakeSupervisor(events, exit_early=True))

    with patch("nodeagent.src.informer.watch.Watch", IdleWatch):
        thread = run_in_background(server)
        thread.join(timeout=5.0)

    assert not thread.is_alive()
    assert server.state is ServerState.STOPPED
    assert server.token.reason is not None
    assert "exited unexpectedly" in server.token.reason
    assert server.tasks.running() == []


def test_ready_is_false_until_running_and_synced() -> None:
    server = make_server()

    assert server.ready() is False
    server.provision()
    assert server.ready() is False


def test_health_server_is_shut_down_on_stop() -> None:
    server = ResticServer(
        config=CONFIG,
        core_api=make_core_api(),
        ark_client=ArkV1Client(make_custom_api()),
        supervisor=FakeSupervisor([], linger=0.0),
        shutdown_poll_interval=0.05,
    )

    with (
        patch("nodeagent.src.informer.watch.Watch", IdleWatch),
        patch("nodeagent.src.server.start_health_server") as mock_health,
    ):
        thread = run_in_background(server)
        assert wait_for(lambda: server.state is ServerState.RUNNING)
        server.token.cancel()
        thread.join(timeout=5.0)

    assert mock_health.call_args.args[1] == 0
    mock_health.return_value.shutdown.assert_called_once()


def test_ready_waits_for_the_node_streams_to_sync(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ScopedWatchManager, "start", lambda self, tasks: None)
    server = make_server(supervisor=FakeSupervisor([], linger=0.0))
    server.provision()
    server.start()

    try:
        assert server.streams is not None
        assert server.ready() is False
        for informer in server.streams.informers:
            informer.has_synced.set()
        assert server.ready() is True
        server.streams.secrets.has_synced.clear()
        assert server.ready() is False
    finally:
        server.token.cancel()
        server.tasks.wait(poll_interval=0.05)


def test_health_server_started_before_run_is_reused() -> None:
    server = ResticServer(
        config=CONFIG,
        core_api=make_core_api(),
        ark_client=ArkV1Client(make_custom_api()),
        supervisor=FakeSupervisor([], linger=0.0),
        shutdown_poll_interval=0.05,
    )

    with (
        patch("nodeagent.src.informer.watch.Watch", IdleWatch),
        patch("nodeagent.src.server.start_health_server") as mock_health,
    ):
        server.provision()
        server.serve_health()
        thread = run_in_background(server)
        assert wait_for(lambda: server.state is ServerState.RUNNING)
        server.token.cancel()
        thread.join(timeout=5.0)

    mock_health.assert_called_once()
    mock_health.return_value.shutdown.assert_called_once()
