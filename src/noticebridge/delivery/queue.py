"""
Delivery queue backed by the persistent store.

The store is written before a state change becomes visible to the worker, so
a crash at any point leaves every undelivered notification on disk. When the
store fails the queue keeps going in memory (degraded persistence), remembers
what it could not write, and retries that backlog on every later store call.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from noticebridge.delivery.store import (
    DuplicateRecordError,
    StoreError,
    UnknownRecordError,
)

if TYPE_CHECKING:
    from noticebridge.contracts import Notification
    from noticebridge.delivery.store import PersistentStore

logger = logging.getLogger(__name__)

DropCallback = Callable[["Notification", str], None]


@dataclass
class QueueMetrics:
    """Counters and gauges for queue operations."""

    enqueued: int = 0
    restored: int = 0
    delivered: int = 0
    rescheduled: int = 0
    dropped: int = 0
    store_errors: int = 0
    pending: int = 0
    degraded: bool = False

    def reset(self) -> None:
        """Reset all metrics."""
        self.enqueued = 0
        self.restored = 0
        self.delivered = 0
        self.rescheduled = 0
        self.dropped = 0
        self.store_errors = 0
        self.pending = 0
        self.degraded = False


class DeliveryQueue:
    """
    FIFO buffer of pending notifications with durable backing.

    Safe for many concurrent producers and a single consumer on one event
    loop. Items keep their insertion position across retries;
    ``dequeue_ready`` skips items still in backoff instead of blocking on them.
    """

    def __init__(
        self,
        store: PersistentStore,
        *,
        max_attempts: int = 6,
        on_drop: DropCallback | None = None,
        _time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize queue.

        Args:
            store: Durable journal; the queue is its only writer.
            max_attempts: Attempts after which a notification is dropped.
            on_drop: Called with (notification, reason) on every permanent drop.
            _time_fn: Optional ms clock for deterministic tests.
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._store = store
        self._max_attempts = max_attempts
        self._on_drop = on_drop
        self._time_fn = _time_fn
        self._items: dict[str, Notification] = {}
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._metrics = QueueMetrics()

        # Degraded-persistence backlog: store writes still owed.
        self._unpersisted: set[str] = set()
        self._stale: set[str] = set()
        self._unremoved: set[str] = set()

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def metrics(self) -> QueueMetrics:
        return self._metrics

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def degraded(self) -> bool:
        """True while some queue state exists only in memory."""
        return bool(self._unpersisted or self._stale or self._unremoved)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, notification_id: object) -> bool:
        return notification_id in self._items

    def get(self, notification_id: str) -> Notification | None:
        return self._items.get(notification_id)

    def pending(self) -> list[Notification]:
        """Snapshot of pending notifications in queue order."""
        return list(self._items.values())

    async def load(self) -> int:
        """
        Repopulate the queue from the store.

        Must be called once at startup before producers run. The store is the
        only source of truth here; any in-memory state is discarded.

        Returns:
            Number of notifications restored.
        """
        async with self._lock:
            restored = await asyncio.to_thread(self._store.load_all)
            self._items = {n.id: n for n in restored}
            self._unpersisted.clear()
            self._stale.clear()
            self._unremoved.clear()
            self._metrics.restored += len(restored)
            self._sync_gauges()
        if restored:
            logger.info("Restored pending notifications", extra={"count": len(restored)})
            self._wakeup.set()
        return len(restored)

    async def enqueue(self, notification: Notification) -> bool:
        """
        Persist a notification and make it visible to the worker.

        A store failure does not reject the notification: it is queued in
        memory and the queue enters degraded-persistence mode.

        Returns:
            False if a notification with the same id is already pending.
        """
        async with self._lock:
            if notification.id in self._items:
                logger.warning(
                    "Duplicate notification id ignored",
                    extra={"notification_id": notification.id},
                )
                return False

            await self._flush_backlog()
            try:
                await asyncio.to_thread(self._store.append, notification)
            except DuplicateRecordError:
                # Store already holds a durable record for this id.
                pass
            except StoreError as e:
                self._record_store_error("append", notification.id, e)
                self._unpersisted.add(notification.id)

            self._items[notification.id] = notification
            self._metrics.enqueued += 1
            self._sync_gauges()

        logger.debug("Enqueued notification", extra={"notification_id": notification.id})
        self._wakeup.set()
        return True

    def dequeue_ready(self, now_ms: int | None = None) -> Notification | None:
        """
        Peek at the oldest notification that is eligible now.

        Does not remove anything; removal happens on acknowledge or drop.
        """
        now = now_ms if now_ms is not None else self._now_ms()
        for notification in self._items.values():
            if notification.is_eligible(now):
                return notification
        return None

    def next_eligible_in_ms(self, now_ms: int | None = None) -> int | None:
        """Milliseconds until the earliest pending item is eligible (None if empty)."""
        if not self._items:
            return None
        now = now_ms if now_ms is not None else self._now_ms()
        earliest = min(n.next_eligible_at_ms for n in self._items.values())
        return max(0, earliest - now)

    async def acknowledge(self, notification_id: str) -> bool:
        """
        Confirm successful delivery: remove from store and memory.

        Returns:
            False if the id was not pending.
        """
        async with self._lock:
            if notification_id not in self._items:
                return False
            await self._forget(notification_id)
            self._metrics.delivered += 1
            self._sync_gauges()
        logger.debug("Acknowledged notification", extra={"notification_id": notification_id})
        return True

    async def reschedule(
        self,
        notification_id: str,
        attempts: int,
        next_eligible_at_ms: int,
        *,
        force_drop: bool = False,
        reason: str = "",
    ) -> bool:
        """
        Record a failed attempt.

        Persists the new retry metadata, or drops the notification when
        ``attempts`` reaches max_attempts or ``force_drop`` is set.

        Returns:
            True if the notification was dropped.

        Raises:
            KeyError: The id is not pending.
        """
        async with self._lock:
            current = self._items.get(notification_id)
            if current is None:
                raise KeyError(notification_id)
            updated = current.with_attempt(attempts, next_eligible_at_ms)

            if force_drop or attempts >= self._max_attempts:
                await self._forget(notification_id)
                self._metrics.dropped += 1
                self._sync_gauges()
                drop_reason = reason or (
                    "permanent failure" if force_drop else "max attempts exhausted"
                )
                self._report_drop(updated, drop_reason)
                return True

            await self._flush_backlog()
            await self._persist_update(updated)
            self._items[notification_id] = updated
            self._metrics.rescheduled += 1
            self._sync_gauges()
        return False

    async def wait_for_work(self, timeout_s: float) -> bool:
        """
        Suspend until an enqueue (or ``notify``) happens or timeout expires.

        Returns:
            True if woken, False on timeout.
        """
        woken = False
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=max(0.0, timeout_s))
            woken = True
        self._wakeup.clear()
        return woken

    def notify(self) -> None:
        """Wake a worker blocked in wait_for_work."""
        self._wakeup.set()

    async def flush(self) -> bool:
        """
        Retry owed store writes now.

        Returns:
            True if the queue is fully persisted afterwards.
        """
        async with self._lock:
            await self._flush_backlog()
            self._sync_gauges()
            return not self.degraded

    # Internals; callers hold self._lock.

    async def _forget(self, notification_id: str) -> None:
        """Remove from memory and, unless it was never written, from the store."""
        del self._items[notification_id]
        self._stale.discard(notification_id)
        if notification_id in self._unpersisted:
            self._unpersisted.discard(notification_id)
            return
        await self._flush_backlog()
        try:
            await asyncio.to_thread(self._store.remove, notification_id)
        except StoreError as e:
            # Record stays on disk; a restart before the retry redelivers it.
            self._record_store_error("remove", notification_id, e)
            self._unremoved.add(notification_id)

    async def _persist_update(self, notification: Notification) -> None:
        if notification.id in self._unpersisted:
            # Still owed an append; the backlog flush writes the latest state.
            return
        try:
            await asyncio.to_thread(self._store.update, notification)
            self._stale.discard(notification.id)
        except UnknownRecordError:
            try:
                await asyncio.to_thread(self._store.append, notification)
            except StoreError as e:
                self._record_store_error("append", notification.id, e)
                self._unpersisted.add(notification.id)
        except StoreError as e:
            self._record_store_error("update", notification.id, e)
            self._stale.add(notification.id)

    async def _flush_backlog(self) -> None:
        if not self.degraded:
            return
        try:
            for notification_id in list(self._unremoved):
                await asyncio.to_thread(self._store.remove, notification_id)
                self._unremoved.discard(notification_id)
            # Appends in queue order so the journal keeps FIFO order.
            for notification in list(self._items.values()):
                if notification.id in self._unpersisted:
                    try:
                        await asyncio.to_thread(self._store.append, notification)
                    except DuplicateRecordError:
                        await asyncio.to_thread(self._store.update, notification)
                    self._unpersisted.discard(notification.id)
                elif notification.id in self._stale:
                    await asyncio.to_thread(self._store.update, notification)
                    self._stale.discard(notification.id)
        except StoreError as e:
            self._metrics.store_errors += 1
            logger.debug("Store still unavailable", extra={"error": str(e)})
            return
        if not self.degraded:
            logger.info("Persistence restored, queue fully durable again")

    def _record_store_error(self, op: str, notification_id: str, error: StoreError) -> None:
        self._metrics.store_errors += 1
        logger.warning(
            "Degraded persistence: store %s failed, state kept in memory only",
            op,
            extra={"notification_id": notification_id, "error": str(error)},
        )

    def _report_drop(self, notification: Notification, reason: str) -> None:
        logger.error(
            "Notification dropped",
            extra={
                "notification_id": notification.id,
                "attempts": notification.attempts,
                "reason": reason,
            },
        )
        if self._on_drop is not None:
            try:
                self._on_drop(notification, reason)
            except Exception:
                logger.exception("Drop callback failed")

    def _sync_gauges(self) -> None:
        self._metrics.pending = len(self._items)
        self._metrics.degraded = self.degraded
