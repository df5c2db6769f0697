"""
Reliable delivery.

Notifications are journaled by PersistentStore, ordered by DeliveryQueue and
drained by a single DeliveryWorker through a Transport, with capped
exponential backoff for transient failures.
"""

from __future__ import annotations

from noticebridge.delivery.backoff import BackoffConfig, compute_backoff_delay
from noticebridge.delivery.queue import DeliveryQueue, QueueMetrics
from noticebridge.delivery.store import (
    PersistentStore,
    StoreError,
    StoreLock,
    StoreLockedError,
    StoreWriteError,
)
from noticebridge.delivery.transport import FailureKind, SendResult, Transport
from noticebridge.delivery.worker import (
    DeliveryOutcome,
    DeliveryState,
    DeliveryWorker,
    WorkerConfig,
)

__all__ = [
    "BackoffConfig",
    "DeliveryOutcome",
    "DeliveryQueue",
    "DeliveryState",
    "DeliveryWorker",
    "FailureKind",
    "PersistentStore",
    "QueueMetrics",
    "SendResult",
    "StoreError",
    "StoreLock",
    "StoreLockedError",
    "StoreWriteError",
    "Transport",
    "WorkerConfig",
    "compute_backoff_delay",
]
