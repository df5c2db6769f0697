"""
Prometheus metrics exporter for the notice bridge.

Mirrors the in-process metrics dataclasses (QueueMetrics, WorkerMetrics,
PollerMetrics)
into a CollectorRegistry. Only unlabelled, low-cardinality series are
exported; notification ids and titles belong in logs, not metrics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

if TYPE_CHECKING:
    from noticebridge.delivery.queue import QueueMetrics
    from noticebridge.delivery.worker import WorkerMetrics
    from noticebridge.poller import PollerMetrics


class MetricsExporter:
    """
    Syncs component metrics to Prometheus.

    Counters are advanced by the delta since the previous update, since the
    component metrics are cumulative totals.

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(queue_metrics=queue.metrics, worker_metrics=worker.metrics)
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._queue_pending = Gauge(
            "noticebridge_queue_pending",
            "Notifications waiting for delivery",
            registry=self._registry,
        )
        self._queue_degraded = Gauge(
            "noticebridge_queue_degraded",
            "1 while some queue state is not persisted to disk",
            registry=self._registry,
        )
        self._counters: dict[str, Counter] = {
            "enqueued": Counter(
                "noticebridge_queue_enqueued",
                "Notifications accepted into the queue",
                registry=self._registry,
            ),
            "delivered": Counter(
                "noticebridge_queue_delivered",
                "Notifications confirmed delivered",
                registry=self._registry,
            ),
            "dropped": Counter(
                "noticebridge_queue_dropped",
                "Notifications dropped (permanent failure or attempts exhausted)",
                registry=self._registry,
            ),
            "retries": Counter(
                "noticebridge_queue_retries",
                "Failed attempts rescheduled with backoff",
                registry=self._registry,
            ),
            "store_errors": Counter(
                "noticebridge_queue_store_errors",
                "Persistent store operations that failed",
                registry=self._registry,
            ),
            "attempts": Counter(
                "noticebridge_worker_attempts",
                "Transport send attempts",
                registry=self._registry,
            ),
            "transient_failures": Counter(
                "noticebridge_worker_transient_failures",
                "Send attempts that failed transiently (timeouts included)",
                registry=self._registry,
            ),
            "permanent_failures": Counter(
                "noticebridge_worker_permanent_failures",
                "Send attempts rejected permanently",
                registry=self._registry,
            ),
            "timeouts": Counter(
                "noticebridge_worker_timeouts",
                "Send attempts that hit send_timeout_s",
                registry=self._registry,
            ),
            "polls": Counter(
                "noticebridge_poller_polls",
                "Upstream poll passes",
                registry=self._registry,
            ),
            "poll_errors": Counter(
                "noticebridge_poller_errors",
                "Upstream fetches that failed",
                registry=self._registry,
            ),
            "format_errors": Counter(
                "noticebridge_poller_format_errors",
                "Upstream notices skipped because they could not be formatted",
                registry=self._registry,
            ),
        }
        self._last: dict[str, int] = dict.fromkeys(self._counters, 0)

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def update(
        self,
        queue_metrics: QueueMetrics | None = None,
        poller_metrics: PollerMetrics | None = None,
        worker_metrics: WorkerMetrics | None = None,
    ) -> None:
        """Sync metrics; call before every scrape or on a timer."""
        if queue_metrics is not None:
            self._queue_pending.set(queue_metrics.pending)
            self._queue_degraded.set(1 if queue_metrics.degraded else 0)
            self._advance("enqueued", queue_metrics.enqueued)
            self._advance("delivered", queue_metrics.delivered)
            self._advance("dropped", queue_metrics.dropped)
            self._advance("retries", queue_metrics.rescheduled)
            self._advance("store_errors", queue_metrics.store_errors)

        if worker_metrics is not None:
            self._advance("attempts", worker_metrics.attempts)
            self._advance("transient_failures", worker_metrics.transient_failures)
            self._advance("permanent_failures", worker_metrics.permanent_failures)
            self._advance("timeouts", worker_metrics.timeouts)

        if poller_metrics is not None:
            self._advance("polls", poller_metrics.polls)
            self._advance("poll_errors", poller_metrics.poll_errors)
            self._advance("format_errors", poller_metrics.format_errors)

    def _advance(self, key: str, current: int) -> None:
        delta = current - self._last[key]
        if delta > 0:
            self._counters[key].inc(delta)
        self._last[key] = current

    def reset_counter_tracking(self) -> None:
        """
        Forget the last seen totals.

        Use when components are reset. Does NOT reset the Prometheus counters.
        """
        self._last = dict.fromkeys(self._counters, 0)


# Counters are exported with a _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "noticebridge_queue_pending",
        "noticebridge_queue_degraded",
        "noticebridge_queue_enqueued_total",
        "noticebridge_queue_delivered_total",
        "noticebridge_queue_dropped_total",
        "noticebridge_queue_retries_total",
        "noticebridge_queue_store_errors_total",
        "noticebridge_worker_attempts_total",
        "noticebridge_worker_transient_failures_total",
        "noticebridge_worker_permanent_failures_total",
        "noticebridge_worker_timeouts_total",
        "noticebridge_poller_polls_total",
        "noticebridge_poller_errors_total",
        "noticebridge_poller_format_errors_total",
    }
)
