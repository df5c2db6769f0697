"""
Transport protocol.

A transport sends one formatted payload to the chat platform and reports a
classified result. Retries are owned by the delivery worker, so transports
make exactly one attempt per call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from noticebridge.contracts import NotificationPayload


class FailureKind(str, Enum):
    """How the worker should treat a failed send."""

    TRANSIENT = "transient"  # network, timeout, rate limit, 5xx
    PERMANENT = "permanent"  # payload rejected, other 4xx


@dataclass(frozen=True)
class SendResult:
    """Result of one delivery attempt."""

    success: bool
    kind: FailureKind | None = None
    detail: str | None = None
    status_code: int | None = None
    retry_after_s: float | None = None  # For rate limit responses

    @classmethod
    def ok(cls, status_code: int | None = None) -> SendResult:
        return cls(success=True, status_code=status_code)

    @classmethod
    def transient(
        cls,
        detail: str,
        *,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ) -> SendResult:
        return cls(
            success=False,
            kind=FailureKind.TRANSIENT,
            detail=detail,
            status_code=status_code,
            retry_after_s=retry_after_s,
        )

    @classmethod
    def permanent(cls, detail: str, *, status_code: int | None = None) -> SendResult:
        return cls(
            success=False,
            kind=FailureKind.PERMANENT,
            detail=detail,
            status_code=status_code,
        )

    @property
    def is_permanent(self) -> bool:
        return self.kind == FailureKind.PERMANENT


def classify_status(status: int) -> FailureKind | None:
    """
    Map an HTTP status to a failure kind.

    Returns:
        None for 2xx, TRANSIENT for 408/429/5xx, PERMANENT for everything else.
    """
    if 200 <= status < 300:
        return None
    if status in (408, 429) or status >= 500:
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


class Transport(ABC):
    """Abstract base class for chat transports."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique name for this transport (no secrets)."""
        ...

    @abstractmethod
    async def send(self, payload: NotificationPayload) -> SendResult:
        """
        Send one payload.

        Args:
            payload: Formatted notification content.

        Returns:
            SendResult; transports do not raise for delivery failures.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close any resources held by this transport."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
