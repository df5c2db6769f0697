"""
Notice formatter.

Deterministic mapping from a GZCTF notice to the embed payload the
transports send. The delivery queue never looks inside the result.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from typing import TYPE_CHECKING

from noticebridge.contracts import NoticeType, NotificationPayload

if TYPE_CHECKING:
    from noticebridge.config import MatchConfig
    from noticebridge.contracts import Notice

# Notice type to embed colour
NOTICE_COLORS: dict[NoticeType, int] = {
    NoticeType.NORMAL: 0x3498DB,  # blue
    NoticeType.NEW_CHALLENGE: 0x2ECC71,  # green
    NoticeType.NEW_HINT: 0xF1C40F,  # yellow
    NoticeType.FIRST_BLOOD: 0xFFD700,  # gold
    NoticeType.SECOND_BLOOD: 0xC0C0C0,  # silver
    NoticeType.THIRD_BLOOD: 0xCD7F32,  # bronze
}

BLOOD_TYPES = frozenset(
    {NoticeType.FIRST_BLOOD, NoticeType.SECOND_BLOOD, NoticeType.THIRD_BLOOD}
)

TITLE_MAX_LEN = 256
DESCRIPTION_MAX_LEN = 4096


def _value(notice: Notice, index: int) -> str:
    if index < len(notice.values):
        return notice.values[index]
    return ""


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


class NoticeFormatter:
    """
    Builds NotificationPayload objects from notices.

    Same input always produces the same payload.
    """

    def __init__(self, base_url: str, utc_offset_hours: float = 8.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._tz = timezone(timedelta(hours=utc_offset_hours))

    def format_time(self, time_ms: int) -> str:
        """Render a notice time in the configured offset."""
        dt = datetime.fromtimestamp(time_ms / 1000, tz=UTC).astimezone(self._tz)
        return dt.strftime("%Y-%m-%d %H:%M:%S")

    def game_url(self, match_id: int) -> str:
        return f"{self._base_url}/games/{match_id}"

    def format(
        self, notice: Notice, notice_type: NoticeType, match: MatchConfig
    ) -> NotificationPayload:
        """Format one notice of a known type."""
        prefix = f"[{match.name}] " if match.name else ""
        title = _truncate(f"{prefix}{notice_type.heading}", TITLE_MAX_LEN)

        lines = self._body_lines(notice, notice_type)
        lines.append(f"时间：{self.format_time(notice.time)}")

        return NotificationPayload(
            title=title,
            description=_truncate("\n".join(lines), DESCRIPTION_MAX_LEN),
            url=self.game_url(match.id),
            color=NOTICE_COLORS[notice_type],
            timestamp_ms=notice.time,
            footer=f"{match.display_name} · #{notice.id}",
        )

    def _body_lines(self, notice: Notice, notice_type: NoticeType) -> list[str]:
        if notice_type == NoticeType.NORMAL:
            return [f"内容：{_value(notice, 0)}"]
        if notice_type == NoticeType.NEW_CHALLENGE:
            return [f"题目：{_value(notice, 0)}"]
        if notice_type == NoticeType.NEW_HINT:
            return [f"题目：{_value(notice, 0)} 有新的提示"]
        if notice_type in BLOOD_TYPES:
            # values are [team, challenge]
            return [f"队伍：{_value(notice, 0)}", f"题目：{_value(notice, 1)}"]
        return ["\n".join(notice.values)]
