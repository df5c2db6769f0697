"""Dry-run transport: logs payloads instead of posting them."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from noticebridge.delivery.transport import SendResult, Transport

if TYPE_CHECKING:
    from noticebridge.contracts import NotificationPayload

logger = logging.getLogger(__name__)


class DryRunTransport(Transport):
    """Reports every send as delivered and keeps the payloads for inspection."""

    def __init__(self) -> None:
        self.sent: list[NotificationPayload] = []

    @property
    def name(self) -> str:
        return "dry-run"

    async def send(self, payload: NotificationPayload) -> SendResult:
        self.sent.append(payload)
        logger.info(
            "Dry run: would send notification",
            extra={"title": payload.title, "description": payload.description, "url": payload.url},
        )
        return SendResult.ok()

    async def close(self) -> None:
        pass
