"""
Delivery worker.

Drains one DeliveryQueue through one Transport, one notification at a time:

    PENDING -> IN_FLIGHT -> DELIVERED | PENDING (backoff) | DROPPED

Every attempt yields a SendResult value; retry decisions are pure state
transitions on the notification's attempts/next_eligible_at_ms fields.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from noticebridge.delivery.backoff import BackoffConfig, compute_backoff_delay
from noticebridge.delivery.transport import SendResult

if TYPE_CHECKING:
    from noticebridge.contracts import Notification
    from noticebridge.delivery.queue import DeliveryQueue
    from noticebridge.delivery.transport import Transport

logger = logging.getLogger(__name__)


class DeliveryState(str, Enum):
    """Lifecycle state of a notification as seen by the worker."""

    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    DELIVERED = "DELIVERED"
    DROPPED = "DROPPED"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one worker step."""

    state: DeliveryState
    notification: Notification  # With attempt metadata after this step
    result: SendResult


@dataclass
class WorkerConfig:
    """Configuration for DeliveryWorker.

    Attributes:
        tick_interval_ms: Longest idle wait before re-checking the queue.
        send_timeout_s: Upper bound for a single transport call.
        min_send_interval_ms: Pause after each attempt to avoid flooding.
        backoff: Retry delay policy.
    """

    tick_interval_ms: int = 1000
    send_timeout_s: float = 10.0
    min_send_interval_ms: int = 0
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass
class WorkerMetrics:
    """Metrics for delivery attempts."""

    attempts: int = 0
    delivered: int = 0
    transient_failures: int = 0
    permanent_failures: int = 0
    timeouts: int = 0
    last_delivery_ts: int = 0


class DeliveryWorker:
    """
    Single consumer of a DeliveryQueue.

    Never share a queue between workers; run one queue per destination if
    more throughput is needed.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        transport: Transport,
        config: WorkerConfig | None = None,
        *,
        rng: random.Random | None = None,
        _time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._queue = queue
        self._transport = transport
        self._config = config or WorkerConfig()
        self._rng = rng
        self._time_fn = _time_fn
        self._metrics = WorkerMetrics()
        self._in_flight: Notification | None = None
        self._stop_requested = False
        self._running = False

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def metrics(self) -> WorkerMetrics:
        return self._metrics

    @property
    def in_flight(self) -> Notification | None:
        """Notification currently being sent, if any."""
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Ask the loop to exit after the current attempt finishes."""
        self._stop_requested = True
        self._queue.notify()

    def rearm(self) -> None:
        """Clear a previous stop() so run() can be started again."""
        self._stop_requested = False

    async def run(self) -> None:
        """
        Deliver until stop() is called.

        A stop() issued before the loop starts makes it return at once.
        """
        self._running = True
        logger.info("Delivery worker started", extra={"transport": self._transport.name})
        try:
            while not self._stop_requested:
                outcome = await self.process_once()
                if outcome is not None:
                    if self._config.min_send_interval_ms > 0 and not self._stop_requested:
                        await asyncio.sleep(self._config.min_send_interval_ms / 1000)
                    continue

                wait_ms = self._queue.next_eligible_in_ms(self._now_ms())
                timeout_ms = self._config.tick_interval_ms
                if wait_ms is not None:
                    timeout_ms = min(timeout_ms, max(wait_ms, 10))
                await self._queue.wait_for_work(timeout_ms / 1000)
        finally:
            self._running = False
            logger.info(
                "Delivery worker stopped",
                extra={"pending": len(self._queue), "delivered": self._metrics.delivered},
            )

    async def process_once(self) -> DeliveryOutcome | None:
        """
        Attempt the oldest ready notification.

        Returns:
            The outcome, or None if nothing is eligible right now.
        """
        notification = self._queue.dequeue_ready(self._now_ms())
        if notification is None:
            return None

        self._in_flight = notification
        logger.debug(
            "Notification %s",
            DeliveryState.IN_FLIGHT.value,
            extra={"notification_id": notification.id, "attempts": notification.attempts},
        )
        try:
            result = await self._send(notification)
        finally:
            self._in_flight = None
        self._metrics.attempts += 1

        if result.success:
            return await self._on_success(notification, result)
        if result.is_permanent:
            return await self._on_permanent_failure(notification, result)
        return await self._on_transient_failure(notification, result)

    async def _send(self, notification: Notification) -> SendResult:
        try:
            return await asyncio.wait_for(
                self._transport.send(notification.payload),
                timeout=self._config.send_timeout_s,
            )
        except TimeoutError:
            self._metrics.timeouts += 1
            return SendResult.transient(
                f"send timed out after {self._config.send_timeout_s}s"
            )
        except Exception as e:
            logger.exception(
                "Transport raised during send",
                extra={"notification_id": notification.id, "transport": self._transport.name},
            )
            return SendResult.transient(f"transport error: {e}")

    async def _on_success(
        self, notification: Notification, result: SendResult
    ) -> DeliveryOutcome:
        await self._queue.acknowledge(notification.id)
        self._metrics.delivered += 1
        self._metrics.last_delivery_ts = self._now_ms()
        logger.info(
            "Notification delivered",
            extra={
                "notification_id": notification.id,
                "attempts": notification.attempts,
                "title": notification.payload.title,
            },
        )
        return DeliveryOutcome(DeliveryState.DELIVERED, notification, result)

    async def _on_permanent_failure(
        self, notification: Notification, result: SendResult
    ) -> DeliveryOutcome:
        self._metrics.permanent_failures += 1
        attempts = notification.attempts + 1
        await self._queue.reschedule(
            notification.id,
            attempts,
            notification.next_eligible_at_ms,
            force_drop=True,
            reason=f"permanent failure: {result.detail}",
        )
        return DeliveryOutcome(
            DeliveryState.DROPPED,
            notification.with_attempt(attempts, notification.next_eligible_at_ms),
            result,
        )

    async def _on_transient_failure(
        self, notification: Notification, result: SendResult
    ) -> DeliveryOutcome:
        self._metrics.transient_failures += 1
        attempts = notification.attempts + 1
        retry_after_ms = (
            int(result.retry_after_s * 1000) if result.retry_after_s is not None else None
        )
        delay_ms = compute_backoff_delay(
            self._config.backoff, attempts, retry_after_ms, rng=self._rng
        )
        next_eligible_at_ms = max(notification.next_eligible_at_ms, self._now_ms() + delay_ms)

        dropped = await self._queue.reschedule(
            notification.id,
            attempts,
            next_eligible_at_ms,
            reason=f"max attempts exhausted: {result.detail}",
        )
        updated = notification.with_attempt(attempts, next_eligible_at_ms)
        if dropped:
            return DeliveryOutcome(DeliveryState.DROPPED, updated, result)

        logger.warning(
            "Delivery failed, will retry",
            extra={
                "notification_id": notification.id,
                "attempts": attempts,
                "retry_in_ms": delay_ms,
                "status": result.status_code,
                "error": result.detail,
            },
        )
        return DeliveryOutcome(DeliveryState.PENDING, updated, result)
