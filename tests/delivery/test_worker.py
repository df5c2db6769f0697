"""
Tests for DeliveryWorker.

End-to-end queue behaviour through a scripted transport:
- Retry until success, immediate drop on permanent failure
- Monotonic backoff and bounded attempts
- Restart recovery of undelivered notifications
- Timeouts and unexpected transport errors count as transient
- Run loop start/stop
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from noticebridge.contracts import Notification, NotificationPayload
from noticebridge.delivery.backoff import BackoffConfig
from noticebridge.delivery.queue import DeliveryQueue
from noticebridge.delivery.store import PersistentStore
from noticebridge.delivery.transport import SendResult, Transport
from noticebridge.delivery.worker import (
    DeliveryState,
    DeliveryWorker,
    WorkerConfig,
)


class FakeClock:
    def __init__(self, now_ms: int = 1_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class ScriptedTransport(Transport):
    """Returns queued results in order; repeats the last one when exhausted."""

    def __init__(self, *results: SendResult | Exception) -> None:
        self._results = list(results) or [SendResult.ok()]
        self.sent: list[NotificationPayload] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "scripted"

    async def send(self, payload: NotificationPayload) -> SendResult:
        self.sent.append(payload)
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


class SlowTransport(Transport):
    """Blocks until released (or forever)."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    @property
    def name(self) -> str:
        return "slow"

    async def send(self, payload: NotificationPayload) -> SendResult:
        self.started.set()
        await self.release.wait()
        return SendResult.ok()

    async def close(self) -> None:
        pass


TRANSIENT = SendResult.transient("HTTP 503: unavailable", status_code=503)
PERMANENT = SendResult.permanent("HTTP 400: invalid embed", status_code=400)
BACKOFF = BackoffConfig(base_delay_ms=1000, max_delay_ms=8000)


def make_notification(title: str, now_ms: int) -> Notification:
    return Notification.create(NotificationPayload(title=title), now_ms=now_ms)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "pending.jsonl"


@pytest.fixture
def make_worker(
    store_path: Path, clock: FakeClock
) -> Callable[..., tuple[DeliveryQueue, DeliveryWorker]]:
    def factory(
        transport: Transport, *, max_attempts: int = 6, send_timeout_s: float = 5.0
    ) -> tuple[DeliveryQueue, DeliveryWorker]:
        queue = DeliveryQueue(
            PersistentStore(store_path, fsync=False), max_attempts=max_attempts, _time_fn=clock
        )
        worker = DeliveryWorker(
            queue,
            transport,
            WorkerConfig(tick_interval_ms=20, send_timeout_s=send_timeout_s, backoff=BACKOFF),
            _time_fn=clock,
        )
        return queue, worker

    return factory


class TestDeliveryScenarios:
    """Named end-to-end scenarios."""

    @pytest.mark.asyncio
    async def test_two_transient_failures_then_success(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        store_path: Path, clock: FakeClock,
    ) -> None:
        transport = ScriptedTransport(TRANSIENT, TRANSIENT, SendResult.ok(200))
        queue, worker = make_worker(transport)
        n1 = make_notification("round started", clock())
        await queue.enqueue(n1)

        first = await worker.process_once()
        assert first is not None and first.state == DeliveryState.PENDING
        assert await worker.process_once() is None  # still backing off
        clock.advance(1000)

        second = await worker.process_once()
        assert second is not None and second.state == DeliveryState.PENDING
        clock.advance(2000)

        third = await worker.process_once()
        assert third is not None
        assert third.state == DeliveryState.DELIVERED
        assert third.notification.attempts == 2
        assert n1.id not in queue
        assert PersistentStore(store_path).load_all() == []
        assert len(transport.sent) == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_drops_immediately(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        store_path: Path, clock: FakeClock,
    ) -> None:
        transport = ScriptedTransport(PERMANENT)
        queue, worker = make_worker(transport)
        n2 = make_notification("bad embed", clock())
        await queue.enqueue(n2)

        outcome = await worker.process_once()

        assert outcome is not None
        assert outcome.state == DeliveryState.DROPPED
        assert outcome.notification.attempts == 1
        assert outcome.result.is_permanent
        assert n2.id not in queue
        assert PersistentStore(store_path).load_all() == []
        assert queue.metrics.dropped == 1

        clock.advance(10**7)
        assert await worker.process_once() is None
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_undelivered_notification_survives_restart(
        self, store_path: Path, clock: FakeClock
    ) -> None:
        before = DeliveryQueue(PersistentStore(store_path, fsync=False), _time_fn=clock)
        n3 = make_notification("first blood", clock())
        await before.enqueue(n3)
        # Process "killed": nothing closed or flushed

        transport = ScriptedTransport(SendResult.ok())
        after = DeliveryQueue(PersistentStore(store_path, fsync=False), _time_fn=clock)
        await after.load()
        restored = after.get(n3.id)
        assert restored is not None
        assert restored.attempts == 0
        assert restored.payload == n3.payload

        worker = DeliveryWorker(after, transport, _time_fn=clock)
        outcome = await worker.process_once()

        assert outcome is not None and outcome.state == DeliveryState.DELIVERED
        assert transport.sent == [n3.payload]
        assert PersistentStore(store_path).load_all() == []


class TestRetryProperties:
    """Backoff and attempt bounds."""

    @pytest.mark.asyncio
    async def test_backoff_monotonic_until_drop(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        clock: FakeClock,
    ) -> None:
        queue, worker = make_worker(ScriptedTransport(TRANSIENT), max_attempts=6)
        await queue.enqueue(make_notification("flaky", clock()))

        attempts: list[int] = []
        eligible: list[int] = []
        while True:
            outcome = await worker.process_once()
            assert outcome is not None
            attempts.append(outcome.notification.attempts)
            eligible.append(outcome.notification.next_eligible_at_ms)
            if outcome.state == DeliveryState.DROPPED:
                break
            clock.advance(outcome.notification.next_eligible_at_ms - clock())

        assert attempts == [1, 2, 3, 4, 5, 6]
        assert eligible == sorted(eligible)

    @pytest.mark.asyncio
    async def test_dropped_after_exactly_max_attempts(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        store_path: Path, clock: FakeClock,
    ) -> None:
        transport = ScriptedTransport(TRANSIENT)
        queue, worker = make_worker(transport, max_attempts=4)
        await queue.enqueue(make_notification("always failing", clock()))

        states = []
        for _ in range(10):
            clock.advance(10**6)
            outcome = await worker.process_once()
            if outcome is None:
                break
            states.append(outcome.state)

        assert states == [DeliveryState.PENDING] * 3 + [DeliveryState.DROPPED]
        assert len(transport.sent) == 4
        assert PersistentStore(store_path).load_all() == []

    @pytest.mark.asyncio
    async def test_retry_after_honoured(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        clock: FakeClock,
    ) -> None:
        rate_limited = SendResult.transient("rate limited", status_code=429, retry_after_s=30.0)
        queue, worker = make_worker(ScriptedTransport(rate_limited))
        await queue.enqueue(make_notification("a", clock()))

        outcome = await worker.process_once()

        assert outcome is not None
        assert outcome.notification.next_eligible_at_ms == clock() + 30_000

    @pytest.mark.asyncio
    async def test_failing_item_does_not_block_others(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        clock: FakeClock,
    ) -> None:
        transport = ScriptedTransport(TRANSIENT, SendResult.ok())
        queue, worker = make_worker(transport)
        a = make_notification("a", clock())
        b = make_notification("b", clock())
        await queue.enqueue(a)
        await queue.enqueue(b)

        first = await worker.process_once()
        second = await worker.process_once()

        assert first is not None and first.notification.id == a.id
        assert second is not None and second.notification.id == b.id
        assert second.state == DeliveryState.DELIVERED
        assert a.id in queue


class TestTransportErrors:
    """Failures outside the SendResult contract."""

    @pytest.mark.asyncio
    async def test_timeout_is_transient(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        clock: FakeClock,
    ) -> None:
        queue, worker = make_worker(SlowTransport(), send_timeout_s=0.05)
        n = make_notification("a", clock())
        await queue.enqueue(n)

        outcome = await worker.process_once()

        assert outcome is not None
        assert outcome.state == DeliveryState.PENDING
        assert outcome.notification.attempts == 1
        assert worker.metrics.timeouts == 1
        assert n.id in queue

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_transient(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
        clock: FakeClock,
    ) -> None:
        queue, worker = make_worker(ScriptedTransport(RuntimeError("boom")))
        await queue.enqueue(make_notification("a", clock()))

        outcome = await worker.process_once()

        assert outcome is not None
        assert outcome.state == DeliveryState.PENDING
        assert outcome.result.detail is not None
        assert "boom" in outcome.result.detail


class TestRunLoop:
    """Tests for run()/stop()."""

    @pytest.mark.asyncio
    async def test_empty_queue_returns_none(
        self, make_worker: Callable[..., tuple[DeliveryQueue, DeliveryWorker]],
    ) -> None:
        _, worker = make_worker(ScriptedTransport())
        assert await worker.process_once() is None

    @pytest.mark.asyncio
    async def test_run_delivers_and_stops(self, store_path: Path) -> None:
        transport = ScriptedTransport(SendResult.ok())
        queue = DeliveryQueue(PersistentStore(store_path, fsync=False))
        worker = DeliveryWorker(queue, transport, WorkerConfig(tick_interval_ms=20))
        task = asyncio.create_task(worker.run())

        await queue.enqueue(Notification.create(NotificationPayload(title="hello")))
        for _ in range(100):
            if queue.metrics.delivered:
                break
            await asyncio.sleep(0.01)

        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert queue.metrics.delivered == 1
        assert worker.running is False

    @pytest.mark.asyncio
    async def test_stop_before_run_is_honoured(self, store_path: Path) -> None:
        transport = ScriptedTransport(SendResult.ok())
        queue = DeliveryQueue(PersistentStore(store_path, fsync=False))
        worker = DeliveryWorker(queue, transport, WorkerConfig(tick_interval_ms=5000))
        await queue.enqueue(Notification.create(NotificationPayload(title="later")))

        worker.stop()
        await asyncio.wait_for(worker.run(), timeout=1.0)

        assert transport.sent == []

        worker.rearm()
        task = asyncio.create_task(worker.run())
        for _ in range(100):
            if queue.metrics.delivered:
                break
            await asyncio.sleep(0.01)
        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert queue.metrics.delivered == 1

    @pytest.mark.asyncio
    async def test_in_flight_visible_during_send(self, store_path: Path) -> None:
        transport = SlowTransport()
        queue = DeliveryQueue(PersistentStore(store_path, fsync=False))
        worker = DeliveryWorker(queue, transport)
        n = Notification.create(NotificationPayload(title="slow"))
        await queue.enqueue(n)

        task = asyncio.create_task(worker.process_once())
        await asyncio.wait_for(transport.started.wait(), timeout=1.0)
        assert worker.in_flight == n

        transport.release.set()
        outcome = await task
        assert outcome is not None and outcome.state == DeliveryState.DELIVERED
        assert worker.in_flight is None
