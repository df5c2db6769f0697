"""
REST client for the GZCTF notice feed.

Only one endpoint is used: ``GET /api/game/{match_id}/notices``, which
returns every notice of a game as a JSON array.
"""

from __future__ import annotations

import logging
from typing import Any

import aiohttp
from pydantic import ValidationError

from noticebridge.contracts import Notice

logger = logging.getLogger(__name__)


class GzctfError(Exception):
    """Raised when the notice feed answers with an error or an unreadable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GzctfClient:
    """Async client for a GZCTF instance."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 10.0,
        verify_ssl: bool = True,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Instance root, e.g. ``https://ctf.example.org``.
            timeout_s: Total timeout per request.
            verify_ssl: Set False for instances with self-signed certificates.
        """
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._verify_ssl = verify_ssl
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            connector = None if self._verify_ssl else aiohttp.TCPConnector(ssl=False)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def fetch_notices(self, match_id: int) -> list[Notice]:
        """
        Fetch all notices of one game.

        Raises:
            GzctfError: Non-2xx status or a body that is not a notice list.
            aiohttp.ClientError: On network errors.
            TimeoutError: When the request exceeds the timeout.
        """
        url = f"{self._base_url}/api/game/{match_id}/notices"
        session = await self._get_session()
        async with session.get(url) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise GzctfError(
                    f"Failed to fetch notices for match {match_id}: HTTP {resp.status}",
                    status_code=resp.status,
                )
            try:
                data = await resp.json(content_type=None)
            except ValueError as e:
                raise GzctfError(f"Invalid JSON from {url}: {e}") from e

        return self._parse_notices(match_id, data)

    def _parse_notices(self, match_id: int, data: Any) -> list[Notice]:
        if not isinstance(data, list):
            raise GzctfError(f"Expected a list of notices for match {match_id}")
        notices: list[Notice] = []
        for item in data:
            try:
                notices.append(Notice.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed notice",
                    extra={"match_id": match_id, "error": str(e)},
                )
        return notices
