"""
Chat transports.

Each transport makes one delivery attempt per call and returns a classified
SendResult.
"""

from __future__ import annotations

from noticebridge.delivery.transports.discord import DiscordTransport
from noticebridge.delivery.transports.dry_run import DryRunTransport

__all__ = [
    "DiscordTransport",
    "DryRunTransport",
]
