"""
Bridge application.

Wires configuration into one store, one queue, one delivery worker and the
notice poller, runs the two loops, and shuts them down gracefully:

    NoticePoller --enqueue--> DeliveryQueue <--> PersistentStore
                                   |
                             DeliveryWorker --send--> Transport
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from noticebridge.delivery.queue import DeliveryQueue
from noticebridge.delivery.store import PersistentStore, StoreLock
from noticebridge.delivery.transports import DiscordTransport, DryRunTransport
from noticebridge.delivery.worker import DeliveryWorker, WorkerConfig
from noticebridge.formatter import NoticeFormatter
from noticebridge.gzctf import GzctfClient
from noticebridge.poller import NoticePoller

if TYPE_CHECKING:
    import random

    from noticebridge.config import BridgeConfig
    from noticebridge.delivery.transport import Transport
    from noticebridge.exporter import MetricsExporter

logger = logging.getLogger(__name__)


class BridgeApp:
    """
    One running bridge instance.

    All collaborators are built from the config unless injected, so tests can
    swap in a fake transport, client or clock.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        transport: Transport | None = None,
        client: GzctfClient | None = None,
        metrics_exporter: MetricsExporter | None = None,
        rng: random.Random | None = None,
        _time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._config = config
        qc = config.queue

        self._lock = StoreLock(qc.store_path)
        self._store = PersistentStore(
            qc.store_path, fsync=qc.fsync, compact_threshold=qc.compact_threshold
        )
        self._queue = DeliveryQueue(self._store, max_attempts=qc.max_attempts, _time_fn=_time_fn)

        if transport is None:
            transport = DryRunTransport() if config.dry_run else DiscordTransport(config.discord)
        self._transport = transport
        self._worker = DeliveryWorker(
            self._queue,
            self._transport,
            WorkerConfig(
                tick_interval_ms=qc.tick_interval_ms,
                send_timeout_s=qc.send_timeout_s,
                min_send_interval_ms=qc.min_send_interval_ms,
                backoff=qc.backoff,
            ),
            rng=rng,
            _time_fn=_time_fn,
        )

        gc = config.gzctf
        self._client = client or GzctfClient(
            gc.url, timeout_s=gc.timeout_s, verify_ssl=gc.verify_ssl
        )
        self._poller = NoticePoller(
            self._client,
            self._queue,
            NoticeFormatter(gc.url, utc_offset_hours=config.format.utc_offset_hours),
            gc.get_matches(),
            poll_interval_s=gc.poll_interval_s,
            _time_fn=_time_fn,
        )

        self._metrics_exporter = metrics_exporter
        self._worker_task: asyncio.Task[None] | None = None
        self._poller_task: asyncio.Task[None] | None = None
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._start_monotonic = 0.0
        self._poller_error: BaseException | None = None

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    @property
    def worker(self) -> DeliveryWorker:
        return self._worker

    @property
    def poller(self) -> NoticePoller:
        return self._poller

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Lock the store, restore pending notifications and start both loops.

        Raises:
            StoreLockedError: Another process owns the store.
        """
        if self._running:
            return

        self._lock.acquire()
        try:
            restored = await self._queue.load()
        except BaseException:
            self._lock.release()
            raise

        self._running = True
        self._start_monotonic = time.monotonic()
        self._shutdown_event.clear()
        self._poller_error = None
        self._worker.rearm()
        self._poller.rearm()
        self._worker_task = asyncio.create_task(self._worker.run(), name="delivery-worker")
        self._poller_task = asyncio.create_task(self._poller.run(), name="notice-poller")
        self._poller_task.add_done_callback(self._on_poller_done)
        logger.info(
            "Bridge started",
            extra={
                "restored": restored,
                "transport": self._transport.name,
                "store": str(self._config.queue.store_path),
            },
        )

    async def run(self) -> None:
        """Run until request_shutdown() is called or a loop dies, then stop."""
        await self.start()
        try:
            assert self._worker_task is not None  # Type narrowing
            assert self._poller_task is not None
            shutdown_wait = asyncio.create_task(self._shutdown_event.wait())
            waiting = {shutdown_wait, self._worker_task, self._poller_task}
            try:
                while True:
                    done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                    for task in done - {shutdown_wait}:
                        error = None if task.cancelled() else task.exception()
                        if error is not None:
                            raise error
                    if shutdown_wait in done or self._worker_task in done:
                        break
                    # Poller returned cleanly (no matches); keep delivering
                    waiting.discard(self._poller_task)
            finally:
                shutdown_wait.cancel()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        """Request graceful shutdown; safe to call from a signal handler."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def stop(self) -> None:
        """
        Stop both loops, close clients and release the store.

        The worker gets graceful_timeout_s to finish an in-flight send before
        it is cancelled; a cancelled send stays pending on disk.
        """
        if not self._running:
            return
        self._running = False
        logger.info("Stopping bridge")

        self._poller.stop()
        self._worker.stop()
        tasks = [t for t in (self._poller_task, self._worker_task) if t is not None]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._config.graceful_timeout_s)
            for task in pending:
                logger.warning(
                    "Task did not stop in time, cancelling", extra={"task": task.get_name()}
                )
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if not await self._queue.flush():
            logger.error(
                "Stopping with notifications that were never persisted",
                extra={"pending": len(self._queue)},
            )

        await self._transport.close()
        await self._client.close()
        await asyncio.to_thread(self._store.close)
        self._lock.release()

        m = self._queue.metrics
        logger.info(
            "Bridge stopped",
            extra={"pending": m.pending, "delivered": m.delivered, "dropped": m.dropped},
        )

    def get_health_info(self) -> dict[str, Any]:
        """Health info for the /healthz endpoint."""
        m = self._queue.metrics
        uptime_s = (
            round(time.monotonic() - self._start_monotonic, 1) if self._start_monotonic else 0.0
        )
        if not self._running:
            status = "stopped"
        elif self._poller_error is not None:
            status = "poller_failed"
        else:
            status = "ok"
        return {
            "status": status,
            "uptime_s": uptime_s,
            "pending": len(self._queue),
            "degraded": self._queue.degraded,
            "in_flight": self._worker.in_flight is not None,
            "delivered": m.delivered,
            "dropped": m.dropped,
            "last_poll_ts": self._poller.metrics.last_poll_ts,
        }

    def refresh_metrics(self) -> None:
        """Push current component metrics to the Prometheus exporter."""
        if self._metrics_exporter is not None:
            self._metrics_exporter.update(
                queue_metrics=self._queue.metrics,
                poller_metrics=self._poller.metrics,
                worker_metrics=self._worker.metrics,
            )

    def _on_poller_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._poller_error = error
            logger.error(
                "Poller crashed, no new notices will be announced",
                exc_info=error,
            )
