"""
Per-match, per-type high-water marks for announced notices.

The poller only announces notices strictly newer than the mark for their
(match, type) pair, which keeps a restart or a repeated poll from
re-announcing old notices.
"""

from __future__ import annotations

from noticebridge.contracts import NoticeType


class NoticeTracker:
    """Max seen notice time (ms) keyed by (match_id, notice type)."""

    def __init__(self) -> None:
        self._marks: dict[tuple[int, NoticeType], int] = {}

    def get(self, match_id: int, notice_type: NoticeType) -> int:
        """Latest time seen, 0 if nothing was recorded."""
        return self._marks.get((match_id, notice_type), 0)

    def update(self, match_id: int, notice_type: NoticeType, time_ms: int) -> None:
        """Raise the mark to ``time_ms``; never lowers it."""
        key = (match_id, notice_type)
        if time_ms > self._marks.get(key, 0):
            self._marks[key] = time_ms

    def set(self, match_id: int, notice_type: NoticeType, time_ms: int) -> None:
        """Overwrite the mark (used by the baseline pass)."""
        self._marks[(match_id, notice_type)] = time_ms

    def __len__(self) -> int:
        return len(self._marks)
