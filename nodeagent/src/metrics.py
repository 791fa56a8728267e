from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class NodeAgentMetrics:
    """Prometheus metrics exported by the node agent on ``/metrics``.

    Watch metrics carry an ``informer`` label (``pods``, ``secrets``, ...) and
    reconcile metrics a ``controller`` label (``backup`` or ``restore``) so a
    misbehaving stream or loop can be told apart on a single node.
    """

    informer_events_total: Counter = field(
        default_factory=lambda: Counter(
            "ark_restic_informer_events_total",
            "Total watch events applied to a local cache",
            ["informer", "type"],
        )
    )
    informer_filtered_total: Counter = field(
        default_factory=lambda: Counter(
            "ark_restic_informer_filtered_total",
            "Total objects dropped because they did not match the field selector",
            ["informer"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "ark_restic_watch_errors_total",
            "Total Kubernetes watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "ark_restic_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    cache_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "ark_restic_cache_objects",
            "Number of objects currently held in an informer cache",
            ["informer"],
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "ark_restic_reconcile_total",
            "Total pod volume operations by outcome",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "ark_restic_reconcile_duration_seconds",
            "Seconds spent running the data tool for a single pod volume",
            ["controller"],
            buckets=(1, 5, 15, 30, 60, 300, 900, 1800, 3600, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "ark_restic_queue_depth",
            "Keys waiting in a reconciliation work queue",
            ["controller"],
        )
    )
    running_tasks: Gauge = field(
        default_factory=lambda: Gauge(
            "ark_restic_running_tasks",
            "Background tasks currently running",
        )
    )
    server_state: Info = field(
        default_factory=lambda: Info(
            "ark_restic_server_state",
            "Current lifecycle state of the node agent",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "ark_restic",
            "Build information for the node agent",
        )
    )


METRICS = NodeAgentMetrics()
