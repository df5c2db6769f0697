"""
Bridge configuration.

Loaded from a YAML file onto dataclasses validated in ``__post_init__``.
The Discord token may be supplied through DISCORD_BOT_TOKEN instead of the
file so it never has to be committed.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from noticebridge.delivery.backoff import BackoffConfig

DISCORD_API_BASE = "https://discord.com/api/v10"


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""


@dataclass
class DiscordConfig:
    """Discord channel the bridge posts into."""

    token: str = ""  # From DISCORD_BOT_TOKEN env var if empty
    channel_id: int = 0
    api_base: str = DISCORD_API_BASE
    timeout_s: float = 10.0

    def __post_init__(self) -> None:
        if not self.token:
            self.token = os.environ.get("DISCORD_BOT_TOKEN", "")
        if self.channel_id <= 0:
            raise ConfigError(f"discord.channel_id must be > 0, got {self.channel_id}")
        if self.timeout_s <= 0:
            raise ConfigError(f"discord.timeout_s must be > 0, got {self.timeout_s}")


@dataclass
class MatchConfig:
    """One GZCTF game to monitor."""

    id: int
    name: str | None = None

    def __post_init__(self) -> None:
        if self.id <= 0:
            raise ConfigError(f"match id must be > 0, got {self.id}")

    @property
    def display_name(self) -> str:
        return self.name or "未命名比赛"


@dataclass
class GzctfConfig:
    """Upstream GZCTF instance."""

    url: str = ""
    poll_interval_s: float = 10.0
    timeout_s: float = 10.0
    verify_ssl: bool = True
    matches: list[MatchConfig] = field(default_factory=list)
    match_id: int | None = None  # Legacy single-match form

    def __post_init__(self) -> None:
        self.url = self.url.rstrip("/")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"gzctf.url must be an http(s) URL, got {self.url!r}")
        if self.poll_interval_s <= 0:
            raise ConfigError(f"gzctf.poll_interval_s must be > 0, got {self.poll_interval_s}")
        if self.timeout_s <= 0:
            raise ConfigError(f"gzctf.timeout_s must be > 0, got {self.timeout_s}")

    def get_matches(self) -> list[MatchConfig]:
        """Configured matches; falls back to the legacy ``match_id`` key."""
        if self.matches:
            return list(self.matches)
        if self.match_id is not None:
            return [MatchConfig(id=self.match_id)]
        return []


@dataclass
class QueueConfig:
    """Delivery queue, store and worker settings."""

    store_path: Path = Path("pending_notifications.jsonl")
    max_attempts: int = 6
    tick_interval_ms: int = 1000
    send_timeout_s: float = 10.0
    min_send_interval_ms: int = 250
    fsync: bool = True
    compact_threshold: int = 1000
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self) -> None:
        self.store_path = Path(self.store_path)
        if self.max_attempts < 1:
            raise ConfigError(f"queue.max_attempts must be >= 1, got {self.max_attempts}")
        if self.tick_interval_ms < 10:
            raise ConfigError(f"queue.tick_interval_ms must be >= 10, got {self.tick_interval_ms}")
        if self.send_timeout_s <= 0:
            raise ConfigError(f"queue.send_timeout_s must be > 0, got {self.send_timeout_s}")
        if self.min_send_interval_ms < 0:
            raise ConfigError(
                f"queue.min_send_interval_ms must be >= 0, got {self.min_send_interval_ms}"
            )
        if self.compact_threshold < 1:
            raise ConfigError(
                f"queue.compact_threshold must be >= 1, got {self.compact_threshold}"
            )


@dataclass
class FormatConfig:
    """Message formatting."""

    utc_offset_hours: float = 8.0

    def __post_init__(self) -> None:
        if not -12 <= self.utc_offset_hours <= 14:
            raise ConfigError(
                f"format.utc_offset_hours must be -12..14, got {self.utc_offset_hours}"
            )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True

    def __post_init__(self) -> None:
        self.level = self.level.upper()
        if self.level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ConfigError(f"logging.level is not a valid level: {self.level!r}")


@dataclass
class BridgeConfig:
    """Top-level configuration."""

    discord: DiscordConfig
    gzctf: GzctfConfig
    queue: QueueConfig = field(default_factory=QueueConfig)
    format: FormatConfig = field(default_factory=FormatConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics_port: int = 0  # 0 = disabled
    graceful_timeout_s: float = 10.0
    dry_run: bool = False  # Log payloads instead of posting

    def __post_init__(self) -> None:
        if not 0 <= self.metrics_port <= 65535:
            raise ConfigError(f"metrics_port must be 0..65535, got {self.metrics_port}")
        if self.graceful_timeout_s < 0:
            raise ConfigError(
                f"graceful_timeout_s must be >= 0, got {self.graceful_timeout_s}"
            )
        if not self.dry_run and not self.discord.token:
            raise ConfigError("discord.token or DISCORD_BOT_TOKEN required unless dry_run")

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BridgeConfig:
        """Build a validated config from parsed YAML."""
        if not isinstance(raw, dict):
            raise ConfigError("config root must be a mapping")
        try:
            discord = DiscordConfig(**_section(raw, "discord", required=True))

            gzctf_raw = _section(raw, "gzctf", required=True)
            matches = [MatchConfig(**m) for m in gzctf_raw.pop("matches", None) or []]
            gzctf = GzctfConfig(matches=matches, **gzctf_raw)

            queue_raw = _section(raw, "queue")
            backoff = BackoffConfig(**(queue_raw.pop("backoff", None) or {}))
            queue = QueueConfig(backoff=backoff, **queue_raw)

            top_level = {
                k: raw[k] for k in ("metrics_port", "graceful_timeout_s", "dry_run") if k in raw
            }
            return cls(
                discord=discord,
                gzctf=gzctf,
                queue=queue,
                format=FormatConfig(**_section(raw, "format")),
                logging=LoggingConfig(**_section(raw, "logging")),
                **top_level,
            )
        except ConfigError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigError(str(e)) from e


def _section(raw: dict[str, Any], name: str, *, required: bool = False) -> dict[str, Any]:
    value = raw.get(name)
    if value is None:
        if required:
            raise ConfigError(f"missing required section: {name}")
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"section {name} must be a mapping")
    return dict(value)


def load_config(path: str | Path, overrides: dict[str, Any] | None = None) -> BridgeConfig:
    """
    Read and validate a YAML config file.

    Args:
        path: YAML file.
        overrides: Top-level keys (e.g. from the command line) applied before validation.

    Raises:
        ConfigError: File unreadable, not YAML, or fails validation.
    """
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {config_path}: {e}") from e
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}: {e}") from e
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"config root in {config_path} must be a mapping")
    if overrides:
        raw = {**raw, **overrides}
    return BridgeConfig.from_dict(raw)
