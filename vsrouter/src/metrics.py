from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class RouterMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconciliation outcomes carry a ``result`` label (``changed``,
    ``unchanged``, ``noop``, ``permanent_error``, ``retry``) so operators can
    alert on malformed Services separately from API trouble.
    """

    reconciliations_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_reconciliations_total",
            "Total reconciliations by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "vsrouter_reconcile_duration_seconds",
            "Seconds spent reconciling a single key",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    route_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_route_writes_total",
            "Total VirtualService writes by action",
            ["action"],
        )
    )
    write_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_write_conflicts_total",
            "Total VirtualService writes rejected with a resourceVersion conflict",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "vsrouter_queue_depth",
            "Keys waiting in the reconciliation queue",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_queue_adds_total",
            "Total keys added to the reconciliation queue",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_queue_retries_total",
            "Total rate-limited re-adds after a failed reconciliation",
        )
    )
    tombstones: Gauge = field(
        default_factory=lambda: Gauge(
            "vsrouter_tombstones",
            "Deleted Services whose route removal has not been reconciled yet",
        )
    )
    cache_size: Gauge = field(
        default_factory=lambda: Gauge(
            "vsrouter_cache_size",
            "Services currently held in the local cache",
        )
    )
    watch_events_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_watch_events_total",
            "Total change events emitted by the Service watcher",
            ["type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "vsrouter_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "vsrouter",
            "Build information for the controller",
        )
    )


METRICS = RouterMetrics()
