"""
Tests for notice and notification contracts.

Covers:
- Notice wire model parsing (unknown fields ignored, unknown types tolerated)
- Notification creation, immutability and equality by id
- Retry metadata updates never decrease attempts
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from noticebridge.contracts import (
    NOTICE_TITLES,
    Notice,
    NoticeType,
    Notification,
    NotificationPayload,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sample_payload() -> NotificationPayload:
    return NotificationPayload(
        title="[Spring CTF] 【比赛公告】",
        description="内容：round started",
        url="https://ctf.example.org/games/1",
        color=0x3498DB,
        timestamp_ms=1706140800000,
    )


class TestNoticeType:
    """Tests for NoticeType."""

    def test_parse_known(self) -> None:
        assert NoticeType.parse("FirstBlood") is NoticeType.FIRST_BLOOD

    def test_parse_unknown_returns_none(self) -> None:
        assert NoticeType.parse("ScoreboardReset") is None

    def test_every_type_has_heading(self) -> None:
        assert set(NOTICE_TITLES) == set(NoticeType)
        assert NoticeType.NEW_HINT.heading == "【题目提示】"


class TestNotice:
    """Tests for the upstream Notice model."""

    def test_parse_gzctf_payload(self) -> None:
        notice = Notice.model_validate(
            {"id": 7, "type": "NewChallenge", "values": ["baby-rsa"], "time": 1706140800000}
        )
        assert notice.notice_type is NoticeType.NEW_CHALLENGE
        assert notice.values == ["baby-rsa"]

    def test_extra_fields_ignored(self) -> None:
        notice = Notice.model_validate(
            {"id": 1, "type": "Normal", "values": [], "time": 5, "gameId": 3}
        )
        assert notice.id == 1

    def test_unknown_type_kept_raw(self) -> None:
        notice = Notice(id=1, type="Whatever", values=[], time=1)
        assert notice.notice_type is None

    def test_missing_time_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Notice.model_validate({"id": 1, "type": "Normal", "values": []})


class TestNotificationPayload:
    """Tests for NotificationPayload validation."""

    def test_empty_title_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NotificationPayload(title="")

    def test_color_out_of_range_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NotificationPayload(title="x", color=0x1000000)

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            NotificationPayload.model_validate({"title": "x", "severity": "high"})


class TestNotification:
    """Tests for Notification."""

    def test_create_is_eligible_immediately(self, sample_payload: NotificationPayload) -> None:
        n = Notification.create(sample_payload, now_ms=1000)
        assert n.attempts == 0
        assert n.created_at_ms == 1000
        assert n.next_eligible_at_ms == 1000
        assert n.is_eligible(1000)
        assert not n.is_eligible(999)

    def test_create_assigns_unique_ids(self, sample_payload: NotificationPayload) -> None:
        ids = {Notification.create(sample_payload).id for _ in range(100)}
        assert len(ids) == 100

    def test_frozen(self, sample_payload: NotificationPayload) -> None:
        n = Notification.create(sample_payload, now_ms=1)
        with pytest.raises(ValidationError):
            n.attempts = 3  # type: ignore[misc]

    def test_with_attempt_returns_copy(self, sample_payload: NotificationPayload) -> None:
        n = Notification.create(sample_payload, now_ms=1000)
        updated = n.with_attempt(1, 3000)
        assert updated.attempts == 1
        assert updated.next_eligible_at_ms == 3000
        assert updated.payload == n.payload
        assert n.attempts == 0

    def test_with_attempt_rejects_decrease(self, sample_payload: NotificationPayload) -> None:
        n = Notification.create(sample_payload, now_ms=1000).with_attempt(2, 5000)
        with pytest.raises(ValueError, match="must not decrease"):
            n.with_attempt(1, 6000)

    def test_equality_by_id(self, sample_payload: NotificationPayload) -> None:
        n = Notification.create(sample_payload, now_ms=1000, notification_id="abc")
        assert n == n.with_attempt(3, 9999)
        assert len({n, n.with_attempt(1, 2000)}) == 1
        other = Notification.create(sample_payload, now_ms=1000, notification_id="def")
        assert n != other

    def test_json_roundtrip_preserves_fields(self, sample_payload: NotificationPayload) -> None:
        n = Notification.create(sample_payload, now_ms=1000).with_attempt(2, 7000)
        restored = Notification.from_json(n.to_json())
        assert restored.model_dump() == n.model_dump()

    def test_from_json_accepts_str(self, sample_payload: NotificationPayload) -> None:
        n = Notification.create(sample_payload, now_ms=1000)
        restored = Notification.from_json(n.to_json().decode())
        assert restored.id == n.id
