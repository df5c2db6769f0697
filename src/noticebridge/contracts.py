"""
Data contracts for the notice bridge.

Notice is the upstream GZCTF wire model. Notification is the unit the
delivery queue persists and hands to a transport; its payload is opaque to
the queue.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field


class NoticeType(str, Enum):
    """GZCTF notice categories the bridge announces."""

    NORMAL = "Normal"
    NEW_CHALLENGE = "NewChallenge"
    NEW_HINT = "NewHint"
    FIRST_BLOOD = "FirstBlood"
    SECOND_BLOOD = "SecondBlood"
    THIRD_BLOOD = "ThirdBlood"

    @classmethod
    def parse(cls, value: str) -> NoticeType | None:
        """Return the matching type, or None for types the bridge ignores."""
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def heading(self) -> str:
        return NOTICE_TITLES[self]


NOTICE_TITLES: dict[NoticeType, str] = {
    NoticeType.NORMAL: "【比赛公告】",
    NoticeType.NEW_CHALLENGE: "【新增题目】",
    NoticeType.NEW_HINT: "【题目提示】",
    NoticeType.FIRST_BLOOD: "【一血播报】",
    NoticeType.SECOND_BLOOD: "【二血播报】",
    NoticeType.THIRD_BLOOD: "【三血播报】",
}


class Notice(BaseModel):
    """
    One announcement as returned by ``GET /api/game/{id}/notices``.

    Attributes:
        id: Notice id, unique within a game.
        type: Raw notice type string (see NoticeType).
        values: Type-specific values (content, team name, challenge name).
        time: Publication time (epoch ms).
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int = Field(..., ge=0)
    type: str = Field(..., min_length=1)
    values: list[str] = Field(default_factory=list)
    time: int = Field(..., ge=0, description="Publication time (ms)")

    @property
    def notice_type(self) -> NoticeType | None:
        return NoticeType.parse(self.type)


class NotificationPayload(BaseModel):
    """Formatted announcement, ready for a transport."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = Field(..., min_length=1, max_length=256)
    description: str = Field(default="", max_length=4096)
    url: str | None = None
    color: int | None = Field(default=None, ge=0, le=0xFFFFFF)
    timestamp_ms: int | None = Field(default=None, ge=0)
    footer: str | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class Notification(BaseModel):
    """
    A pending outbound announcement.

    Immutable: retries produce an updated copy via ``with_attempt``.
    Two notifications are equal when their ids are equal.

    Attributes:
        id: Unique id (UUID4 hex), never reused.
        payload: Formatted content; never inspected by the queue.
        created_at_ms: Creation time (epoch ms).
        attempts: Failed delivery attempts so far.
        next_eligible_at_ms: Earliest time the next attempt may start.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    payload: NotificationPayload
    created_at_ms: int = Field(..., ge=0)
    attempts: int = Field(default=0, ge=0)
    next_eligible_at_ms: int = Field(default=0, ge=0)

    @classmethod
    def create(
        cls,
        payload: NotificationPayload,
        *,
        now_ms: int | None = None,
        notification_id: str | None = None,
    ) -> Notification:
        """Build a fresh notification, eligible immediately."""
        ts = now_ms if now_ms is not None else _now_ms()
        return cls(
            id=notification_id or uuid.uuid4().hex,
            payload=payload,
            created_at_ms=ts,
            attempts=0,
            next_eligible_at_ms=ts,
        )

    def with_attempt(self, attempts: int, next_eligible_at_ms: int) -> Notification:
        """Return a copy carrying new retry metadata."""
        if attempts < self.attempts:
            msg = f"attempts must not decrease ({self.attempts} -> {attempts})"
            raise ValueError(msg)
        return self.model_copy(
            update={"attempts": attempts, "next_eligible_at_ms": next_eligible_at_ms}
        )

    def is_eligible(self, now_ms: int) -> bool:
        return self.next_eligible_at_ms <= now_ms

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: bytes | str) -> Notification:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Notification):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)
