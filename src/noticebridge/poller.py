"""
GZCTF notice poller.

Fetches each configured match on a fixed interval, picks notices newer than
the tracker's mark for their type, and enqueues them oldest first. The
first successful fetch of a match only records marks (baseline), so
history published before the bridge started is never announced.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import aiohttp

from noticebridge.contracts import Notice, NoticeType, Notification
from noticebridge.gzctf import GzctfError
from noticebridge.tracker import NoticeTracker

if TYPE_CHECKING:
    from collections.abc import Sequence

    from noticebridge.config import MatchConfig
    from noticebridge.delivery.queue import DeliveryQueue
    from noticebridge.formatter import NoticeFormatter
    from noticebridge.gzctf import GzctfClient

logger = logging.getLogger(__name__)


@dataclass
class PollerMetrics:
    """Metrics for upstream polling."""

    polls: int = 0
    poll_errors: int = 0
    notices_enqueued: int = 0
    format_errors: int = 0
    last_poll_ts: int = 0

    def reset(self) -> None:
        """Reset all metrics."""
        self.polls = 0
        self.poll_errors = 0
        self.notices_enqueued = 0
        self.format_errors = 0
        self.last_poll_ts = 0


def select_new_notices(
    notices: Sequence[Notice], notice_type: NoticeType, last_time_ms: int
) -> list[Notice]:
    """Notices of one type newer than ``last_time_ms``, oldest first."""
    fresh = [n for n in notices if n.notice_type == notice_type and n.time > last_time_ms]
    return sorted(fresh, key=lambda n: n.time)


class NoticePoller:
    """Producer that turns upstream notices into queued notifications."""

    def __init__(
        self,
        client: GzctfClient,
        queue: DeliveryQueue,
        formatter: NoticeFormatter,
        matches: Sequence[MatchConfig],
        *,
        poll_interval_s: float = 10.0,
        tracker: NoticeTracker | None = None,
        _time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._client = client
        self._queue = queue
        self._formatter = formatter
        self._matches = list(matches)
        self._poll_interval_s = poll_interval_s
        self._tracker = tracker or NoticeTracker()
        self._time_fn = _time_fn
        self._metrics = PollerMetrics()
        self._baselined: set[int] = set()
        # (match_id, notice_id) of notices that failed to format
        self._skipped: set[tuple[int, int]] = set()
        self._stop_event = asyncio.Event()

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def metrics(self) -> PollerMetrics:
        return self._metrics

    @property
    def tracker(self) -> NoticeTracker:
        return self._tracker

    def stop(self) -> None:
        self._stop_event.set()

    def rearm(self) -> None:
        """Clear a previous stop() so run() can be started again."""
        self._stop_event.clear()

    async def run(self) -> None:
        """Baseline every match, then poll until stop() is called."""
        if not self._matches:
            logger.error("No matches configured to monitor")
            return

        if self._stop_event.is_set():
            return
        logger.info(
            "Monitoring matches",
            extra={
                "matches": [f"{m.id} ({m.display_name})" for m in self._matches],
                "poll_interval_s": self._poll_interval_s,
            },
        )
        await self.poll_once()

        while not self._stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_s)
            if self._stop_event.is_set():
                break
            await self.poll_once()

        logger.info("Poller stopped", extra={"polls": self._metrics.polls})

    async def poll_once(self) -> int:
        """
        Check every match once.

        Fetch errors are logged per match and never abort the pass.

        Returns:
            Number of notifications enqueued.
        """
        self._metrics.polls += 1
        self._metrics.last_poll_ts = self._now_ms()
        enqueued = 0
        for match in self._matches:
            try:
                enqueued += await self._check_match(match)
            except (GzctfError, aiohttp.ClientError, TimeoutError) as e:
                self._metrics.poll_errors += 1
                logger.error(
                    "Failed to fetch notices",
                    extra={"match_id": match.id, "error": str(e) or type(e).__name__},
                )
        return enqueued

    async def _check_match(self, match: MatchConfig) -> int:
        notices = await self._client.fetch_notices(match.id)
        if match.id not in self._baselined:
            self._record_baseline(match, notices)
            return 0

        enqueued = 0
        for notice_type in NoticeType:
            fresh = [
                n
                for n in select_new_notices(
                    notices, notice_type, self._tracker.get(match.id, notice_type)
                )
                if (match.id, n.id) not in self._skipped
            ]
            if not fresh:
                continue
            logger.info(
                "Found new notices",
                extra={
                    "match_id": match.id,
                    "match_name": match.display_name,
                    "notice_type": notice_type.value,
                    "count": len(fresh),
                },
            )
            for notice in fresh:
                try:
                    payload = self._formatter.format(notice, notice_type, match)
                except (ValueError, OverflowError, OSError) as e:
                    # Not tracked: its time must not hide later notices
                    self._skipped.add((match.id, notice.id))
                    self._metrics.format_errors += 1
                    logger.error(
                        "Skipping notice that cannot be formatted",
                        extra={
                            "match_id": match.id,
                            "notice_id": notice.id,
                            "notice_type": notice_type.value,
                            "error": str(e),
                        },
                    )
                else:
                    await self._queue.enqueue(
                        Notification.create(payload, now_ms=self._now_ms())
                    )
                    self._tracker.update(match.id, notice_type, notice.time)
                    enqueued += 1

        self._metrics.notices_enqueued += enqueued
        return enqueued

    def _record_baseline(self, match: MatchConfig, notices: Sequence[Notice]) -> None:
        for notice_type in NoticeType:
            times: list[int] = []
            for n in notices:
                if n.notice_type != notice_type:
                    continue
                if self._renders(n):
                    times.append(n.time)
                else:
                    self._skipped.add((match.id, n.id))
            if times:
                self._tracker.set(match.id, notice_type, max(times))
        self._baselined.add(match.id)
        logger.info(
            "Baseline recorded",
            extra={"match_id": match.id, "match_name": match.display_name, "notices": len(notices)},
        )

    def _renders(self, notice: Notice) -> bool:
        try:
            self._formatter.format_time(notice.time)
        except (ValueError, OverflowError, OSError):
            return False
        return True
