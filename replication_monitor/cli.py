"""
Replication Monitor - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line entry point.

- Loads configuration (YAML + environment)
- Sets up structured logging
- Opens the source connection registry
- Logs an initial snapshot summary
- Serves the HTTP/websocket API until interrupted

============================================================
USAGE
============================================================
python -m replication_monitor.cli --config config.yaml
python -m replication_monitor.cli --config config.yaml --once
replication-monitor --config config.yaml --port 9090 --log-format text

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from aiohttp import web

from .api import create_app
from .broadcast import BroadcastHub
from .catalog import PostgresCatalogReader
from .collector import SnapshotCollector
from .config import MonitorConfig, load_config
from .connections import SourceConnectionRegistry
from .exceptions import ConfigurationError
from .models import Snapshot


logger = logging.getLogger("replication_monitor")


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Set up logging on stdout.

    Args:
        level: Log level
        log_format: Output format (json or text)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logger


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="replication-monitor",
        description="Live health snapshots for PostgreSQL logical replication",
    )

    parser.add_argument(
        "--config", "-c",
        default="config.yaml",
        metavar="PATH",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument("--host", help="Override server.host")
    parser.add_argument("--port", type=int, help="Override server.port")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Collect one snapshot, print it as JSON and exit",
    )

    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    logging_group.add_argument(
        "--log-format",
        choices=["json", "text"],
        default="text",
        help="Logging format (default: text)",
    )

    return parser


# ============================================================
# RUNTIME
# ============================================================

def log_snapshot_summary(snapshot: Snapshot) -> None:
    summary = snapshot.summary
    logger.info("Initial snapshot collected:")
    logger.info(f"  - Publications: {summary.total_publications}")
    logger.info(f"  - Subscriptions: {summary.total_subscriptions}")
    logger.info(f"  - Replication Slots: {summary.total_slots} (Active: {summary.active_slots})")
    logger.info(f"  - Health Status: {summary.health_status.value}")
    for issue in summary.issues:
        logger.info(f"  - Issue: {issue}")


async def run(config: MonitorConfig, once: bool = False) -> None:
    """Open connections, then serve until cancelled."""
    async with SourceConnectionRegistry(config.databases) as registry:
        collector = SnapshotCollector(
            reader=PostgresCatalogReader(registry),
            sources=config.databases,
            thresholds=config.monitoring.thresholds(),
            poll_timeout=config.monitoring.poll_timeout,
        )

        snapshot = await collector.collect()
        if once:
            print(json.dumps(snapshot.to_dict(), indent=2))
            return
        log_snapshot_summary(snapshot)

        hub = BroadcastHub(
            collector.collect,
            refresh_interval=config.server.refresh_interval,
            write_timeout=config.server.write_timeout,
        )
        app = create_app(collector, hub, heartbeat=config.server.heartbeat)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, config.server.host, config.server.port)
        await site.start()

        logger.info(f"Starting server on {config.server.host}:{config.server.port}")
        logger.info(f"Snapshot API at http://{config.server.host}:{config.server.port}/api/snapshot")

        try:
            await asyncio.Event().wait()
        finally:
            logger.info("Shutting down gracefully...")
            await runner.cleanup()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_format)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(f"Failed to load configuration: {e}")
        return 2

    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    logger.info(f"Monitoring {len(config.databases)} databases")

    try:
        asyncio.run(run(config, once=args.once))
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == "__main__":
    sys.exit(main())
