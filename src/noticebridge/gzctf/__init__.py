"""GZCTF upstream client."""

from __future__ import annotations

from noticebridge.gzctf.client import GzctfClient, GzctfError

__all__ = [
    "GzctfClient",
    "GzctfError",
]
