"""
Tests for the Prometheus metrics exporter.

Validates exporter correctness:
- Every required series is present
- No labels at all (ids and titles stay out of metrics)
- Counters follow the cumulative component totals
"""

from __future__ import annotations

import re

from prometheus_client import generate_latest
from prometheus_client.registry import CollectorRegistry

from noticebridge.delivery.queue import QueueMetrics
from noticebridge.delivery.worker import WorkerMetrics
from noticebridge.exporter import REQUIRED_METRIC_NAMES, MetricsExporter
from noticebridge.poller import PollerMetrics


def sample(registry: CollectorRegistry, name: str) -> float | None:
    return registry.get_sample_value(name)


class TestRequiredMetrics:
    """Series names are stable for dashboards and alerts."""

    def test_all_required_names_exported(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(
            queue_metrics=QueueMetrics(),
            poller_metrics=PollerMetrics(),
            worker_metrics=WorkerMetrics(),
        )

        output = generate_latest(registry).decode("utf-8")
        names = {
            line.split(" ")[0]
            for line in output.splitlines()
            if line and not line.startswith("#")
        }

        assert REQUIRED_METRIC_NAMES <= names

    def test_no_labels(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        exporter.update(
            queue_metrics=QueueMetrics(),
            poller_metrics=PollerMetrics(),
            worker_metrics=WorkerMetrics(),
        )

        output = generate_latest(registry).decode("utf-8")
        samples = [line for line in output.splitlines() if line.startswith("noticebridge_")]
        assert samples
        assert not any(re.search(r"\{.+\}", line) for line in samples)


class TestUpdate:
    """Syncing component metrics."""

    def test_gauges_follow_queue(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

        exporter.update(queue_metrics=QueueMetrics(pending=4, degraded=True))

        assert sample(registry, "noticebridge_queue_pending") == 4.0
        assert sample(registry, "noticebridge_queue_degraded") == 1.0

    def test_counters_advance_by_delta(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        qm = QueueMetrics(enqueued=3, delivered=1, rescheduled=2)

        exporter.update(queue_metrics=qm)
        exporter.update(queue_metrics=qm)
        qm.enqueued = 5
        exporter.update(queue_metrics=qm)

        assert sample(registry, "noticebridge_queue_enqueued_total") == 5.0
        assert sample(registry, "noticebridge_queue_delivered_total") == 1.0
        assert sample(registry, "noticebridge_queue_retries_total") == 2.0

    def test_poller_counters(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)

        exporter.update(poller_metrics=PollerMetrics(polls=10, poll_errors=2, format_errors=1))

        assert sample(registry, "noticebridge_poller_polls_total") == 10.0
        assert sample(registry, "noticebridge_poller_errors_total") == 2.0
        assert sample(registry, "noticebridge_poller_format_errors_total") == 1.0

    def test_worker_counters(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        wm = WorkerMetrics(attempts=5, transient_failures=3, permanent_failures=1, timeouts=2)

        exporter.update(worker_metrics=wm)
        wm.timeouts = 4
        exporter.update(worker_metrics=wm)

        assert sample(registry, "noticebridge_worker_attempts_total") == 5.0
        assert sample(registry, "noticebridge_worker_transient_failures_total") == 3.0
        assert sample(registry, "noticebridge_worker_permanent_failures_total") == 1.0
        assert sample(registry, "noticebridge_worker_timeouts_total") == 4.0

    def test_reset_does_not_decrease_counters(self) -> None:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        qm = QueueMetrics(dropped=3)
        exporter.update(queue_metrics=qm)

        qm.reset()
        exporter.reset_counter_tracking()
        qm.dropped = 1
        exporter.update(queue_metrics=qm)

        assert sample(registry, "noticebridge_queue_dropped_total") == 4.0

    def test_separate_registries_do_not_clash(self) -> None:
        MetricsExporter(registry=CollectorRegistry())
        MetricsExporter(registry=CollectorRegistry())
