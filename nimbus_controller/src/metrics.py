from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconciliation counters are labelled by outcome and errors by kind
    (``configuration``, ``store``, ``event``, ``lifecycle``, ``unknown``) so
    operators can tell misconfigured Deployments apart from API trouble.
    """

    reconciliations_total: Counter = field(
        default_factory=lambda: Counter(
            "nimbus_reconciliations_total",
            "Total completed reconciliations by outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "nimbus_reconcile_errors_total",
            "Total failed reconciliations by error kind",
            ["kind"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "nimbus_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, float("inf")),
        )
    )
    patches_total: Counter = field(
        default_factory=lambda: Counter(
            "nimbus_patches_total",
            "Total sidecar patches sent to the Kubernetes API",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "nimbus_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "nimbus_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    pending_requeues: Gauge = field(
        default_factory=lambda: Gauge(
            "nimbus_pending_requeues",
            "Current number of Deployments scheduled for a timed re-check",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "nimbus_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
