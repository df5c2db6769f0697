"""
Discord transport.

Posts one embed per notification through the Discord REST API
(``POST /channels/{channel_id}/messages``) with a bot token.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import aiohttp

from noticebridge.delivery.transport import FailureKind, SendResult, Transport, classify_status

if TYPE_CHECKING:
    from noticebridge.config import DiscordConfig
    from noticebridge.contracts import NotificationPayload

logger = logging.getLogger(__name__)

# Used when a 429 carries neither a body nor a Retry-After header
DEFAULT_RETRY_AFTER_S = 5.0


def build_embed(payload: NotificationPayload) -> dict[str, Any]:
    """Map a payload onto a Discord embed object."""
    embed: dict[str, Any] = {"title": payload.title}
    if payload.description:
        embed["description"] = payload.description
    if payload.url:
        embed["url"] = payload.url
    if payload.color is not None:
        embed["color"] = payload.color
    if payload.timestamp_ms is not None:
        embed["timestamp"] = datetime.fromtimestamp(
            payload.timestamp_ms / 1000, tz=UTC
        ).isoformat()
    if payload.footer:
        embed["footer"] = {"text": payload.footer}
    return embed


class DiscordTransport(Transport):
    """
    Discord delivery via bot token.

    Makes exactly one HTTP request per send; rate limits come back as
    transient results carrying Discord's ``retry_after``.
    """

    def __init__(self, config: DiscordConfig) -> None:
        self._config = config
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return f"discord:{self._config.channel_id}"

    @property
    def url(self) -> str:
        return f"{self._config.api_base}/channels/{self._config.channel_id}/messages"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.timeout_s)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"Authorization": f"Bot {self._config.token}"},
            )
        return self._session

    async def send(self, payload: NotificationPayload) -> SendResult:
        """Send one embed to the configured channel."""
        body = {"embeds": [build_embed(payload)]}
        try:
            session = await self._get_session()
            async with session.post(self.url, json=body) as resp:
                status = resp.status
                kind = classify_status(status)
                if kind is None:
                    return SendResult.ok(status_code=status)

                if status == 429:
                    retry_after = await self._read_retry_after(resp)
                    logger.warning(
                        "Discord rate limited",
                        extra={"retry_after": retry_after, "channel_id": self._config.channel_id},
                    )
                    return SendResult.transient(
                        f"Rate limited (retry_after={retry_after})",
                        status_code=status,
                        retry_after_s=retry_after,
                    )

                error_text = await resp.text()
                logger.error(
                    "Discord send failed",
                    extra={"status": status, "error": error_text[:200]},
                )
                detail = f"HTTP {status}: {error_text[:200]}"
                if kind == FailureKind.PERMANENT:
                    return SendResult.permanent(detail, status_code=status)
                return SendResult.transient(detail, status_code=status)

        except aiohttp.ClientError as e:
            logger.warning("Discord connection error", extra={"error": str(e)})
            return SendResult.transient(f"Connection error: {e}")
        except TimeoutError:
            logger.warning(
                "Discord request timed out", extra={"timeout_s": self._config.timeout_s}
            )
            return SendResult.transient(f"Timed out after {self._config.timeout_s}s")

    async def _read_retry_after(self, resp: aiohttp.ClientResponse) -> float:
        try:
            data = await resp.json()
        except (aiohttp.ContentTypeError, ValueError):
            data = None
        if isinstance(data, dict) and isinstance(data.get("retry_after"), int | float):
            return float(data["retry_after"])
        header = resp.headers.get("Retry-After")
        if header is not None:
            try:
                return float(header)
            except ValueError:
                pass
        return DEFAULT_RETRY_AFTER_S

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
