from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Sync counters carry a ``result`` label (``success``, ``skipped``,
    ``error``, ``requeued``, ``dropped``) so operators can alert on failing
    reconciliations without parsing logs.
    """

    syncs_total: Counter = field(
        default_factory=lambda: Counter(
            "netattach_endpoints_syncs_total",
            "Total Service endpoint reconciliations by result",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "netattach_endpoints_sync_duration_seconds",
            "Seconds spent reconciling one Service key",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, float("inf")),
        )
    )
    endpoints_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "netattach_endpoints_updates_total",
            "Total Endpoints objects written with secondary network addresses",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "netattach_workqueue_requeues_total",
            "Total Service keys requeued with backoff after a failed sync",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "netattach_workqueue_depth",
            "Current number of Service keys waiting to be reconciled",
        )
    )
    recoveries_total: Counter = field(
        default_factory=lambda: Counter(
            "netattach_nad_recoveries_total",
            "NetworkAttachmentDefinition delete notifications by recovery outcome",
            ["outcome"],
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "netattach_events_total",
            "Kubernetes Events emitted by the controller",
            ["type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "netattach_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "netattach_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "netattach_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
