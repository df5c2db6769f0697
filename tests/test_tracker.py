"""Tests for NoticeTracker."""

from __future__ import annotations

from noticebridge.contracts import NoticeType
from noticebridge.tracker import NoticeTracker


class TestNoticeTracker:
    """High-water marks per (match, type)."""

    def test_default_zero(self) -> None:
        assert NoticeTracker().get(1, NoticeType.NORMAL) == 0

    def test_update_only_raises(self) -> None:
        tracker = NoticeTracker()
        tracker.update(1, NoticeType.NORMAL, 500)
        tracker.update(1, NoticeType.NORMAL, 300)
        assert tracker.get(1, NoticeType.NORMAL) == 500
        tracker.update(1, NoticeType.NORMAL, 800)
        assert tracker.get(1, NoticeType.NORMAL) == 800

    def test_keys_independent(self) -> None:
        tracker = NoticeTracker()
        tracker.update(1, NoticeType.NORMAL, 500)
        tracker.update(2, NoticeType.NORMAL, 900)
        tracker.update(1, NoticeType.FIRST_BLOOD, 100)
        assert tracker.get(1, NoticeType.NORMAL) == 500
        assert tracker.get(2, NoticeType.NORMAL) == 900
        assert tracker.get(1, NoticeType.FIRST_BLOOD) == 100
        assert len(tracker) == 3

    def test_set_overwrites(self) -> None:
        tracker = NoticeTracker()
        tracker.update(1, NoticeType.NEW_HINT, 500)
        tracker.set(1, NoticeType.NEW_HINT, 200)
        assert tracker.get(1, NoticeType.NEW_HINT) == 200
