from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ReconcilerMetrics:
    """Prometheus metrics exported by the reconciler on ``/metrics``.

    Patch attempts carry a ``trigger`` label (``startup``, ``file``,
    ``resource``, ``retry``) so a stuck retry loop can be told apart from a
    burst of file rotations.
    """

    patch_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_sync_patch_attempts_total",
            "Total CA bundle patch attempts",
            ["trigger", "result"],
        )
    )
    retries_scheduled_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_sync_retries_scheduled_total",
            "Total retry timers armed after failed patch attempts",
        )
    )
    retry_pending: Gauge = field(
        default_factory=lambda: Gauge(
            "cabundle_sync_retry_pending",
            "Whether a patch retry is currently scheduled (1=yes, 0=no)",
        )
    )
    file_events_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_sync_file_events_total",
            "Total filesystem events observed in the CA bundle directory",
        )
    )
    file_read_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_sync_file_read_errors_total",
            "Total CA bundle file reads that failed after a file event",
        )
    )
    divergence_events_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_sync_divergence_events_total",
            "Total watch events where the live CA bundle differed from the expected one",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_sync_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "cabundle_sync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "cabundle_sync",
            "Build information for the CA bundle reconciler",
        )
    )


METRICS = ReconcilerMetrics()
