#!/usr/bin/env python3
"""
GZCTF -> Discord notice bridge.

Polls the configured GZCTF games for new notices and posts them to a Discord
channel through the durable delivery queue. Pending notifications survive
restarts; SIGINT/SIGTERM shut down gracefully.

Usage:
    python -m scripts.run_bot --config config.yaml
    python -m scripts.run_bot --config config.yaml --dry-run   # log instead of posting
    python -m scripts.run_bot --config config.yaml --metrics-port 9090

Exit codes:
    0  clean shutdown
    1  unexpected failure
    2  invalid configuration, or the store is locked by another process
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from prometheus_client.registry import CollectorRegistry

from noticebridge.app import BridgeApp
from noticebridge.config import BridgeConfig, ConfigError, load_config
from noticebridge.delivery.store import StoreLockedError
from noticebridge.exporter import MetricsExporter
from noticebridge.logging_config import setup_logging
from noticebridge.metrics_server import start_metrics_server, stop_metrics_server

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def setup_signal_handlers(app: BridgeApp) -> None:
    """Route SIGINT/SIGTERM to request_shutdown(); stop() runs in app.run()."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, app, sig)


def _on_signal(app: BridgeApp, sig: signal.Signals) -> None:
    logger.info("Received signal %s, initiating shutdown", sig.name)
    app.request_shutdown()


async def run_bridge(config: BridgeConfig) -> int:
    """
    Run the bridge until a shutdown signal.

    Returns:
        Exit code.
    """
    exporter: MetricsExporter | None = None
    if config.metrics_port > 0:
        exporter = MetricsExporter(registry=CollectorRegistry())

    metrics_runner = None
    try:
        app = BridgeApp(config, metrics_exporter=exporter)
        if exporter is not None:
            metrics_runner = await start_metrics_server(
                exporter.registry,
                port=config.metrics_port,
                health_fn=app.get_health_info,
                refresh_fn=app.refresh_metrics,
            )

        setup_signal_handlers(app)
        await app.run()
        return EXIT_OK
    except StoreLockedError as e:
        logger.error("Cannot start: %s", e)
        return EXIT_CONFIG
    except Exception as e:
        logger.exception("Bridge failed: %s", e)
        return EXIT_FAILURE
    finally:
        if metrics_runner is not None:
            await stop_metrics_server(metrics_runner)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Announce GZCTF notices in a Discord channel.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="YAML config file (default: config.yaml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log notifications instead of posting them to Discord",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Prometheus /metrics port, overrides the config (0 to disable)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    log_format = parser.add_mutually_exclusive_group()
    log_format.add_argument(
        "--json-logs",
        dest="json_logs",
        action="store_true",
        default=None,
        help="JSON log lines (default from config)",
    )
    log_format.add_argument(
        "--plain-logs",
        dest="json_logs",
        action="store_false",
        help="Human-readable log lines",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.dry_run:
        overrides["dry_run"] = True
    if args.metrics_port is not None:
        overrides["metrics_port"] = args.metrics_port

    try:
        config = load_config(args.config, overrides)
    except ConfigError as e:
        setup_logging(json_format=False)
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    json_logs = config.logging.json if args.json_logs is None else args.json_logs
    setup_logging(
        level="DEBUG" if args.verbose else config.logging.level,
        json_format=json_logs,
    )

    matches = config.gzctf.get_matches()
    logger.info("Starting notice bridge")
    logger.info("  GZCTF: %s (every %.0fs)", config.gzctf.url, config.gzctf.poll_interval_s)
    logger.info("  Matches: %s", ", ".join(f"{m.id} ({m.display_name})" for m in matches))
    logger.info("  Channel: %s", "dry run" if config.dry_run else config.discord.channel_id)
    logger.info("  Store: %s", config.queue.store_path)

    return asyncio.run(run_bridge(config))


if __name__ == "__main__":
    sys.exit(main())
