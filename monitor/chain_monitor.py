#!/usr/bin/env python3
"""
Chain Monitor: live gas and block-time dashboard for an Ethereum-style node.

Subscribes to newHeads on the node's RPC endpoint and draws gas limit, gas
used and block time sparklines plus a console log. Any feed failure is fatal.

Usage:
    chainmon ~/.ethereum/geth.ipc
    chainmon ws://127.0.0.1:8546 --metrics-port 9100
"""

import argparse
import asyncio
import logging
import sys

from prometheus_client import start_http_server

from clients.header_feed import HeaderFeed
from monitor.aggregator import MetricsAggregator
from monitor.config import DashboardConfig
from monitor.errors import ChainMonitorError, SetupError, UsageError
from monitor.render import Dashboard

# ── Logging ──────────────────────────────────────────────────────────────────

log = logging.getLogger("chain_monitor")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str, log_file: str | None = None):
    if log_file:
        logging.basicConfig(
            level=getattr(logging, level), format=LOG_FORMAT, datefmt=LOG_DATEFMT,
            filename=log_file,
        )
    else:
        logging.basicConfig(
            level=getattr(logging, level), format=LOG_FORMAT, datefmt=LOG_DATEFMT,
            stream=sys.stderr,
        )


# ── Main ─────────────────────────────────────────────────────────────────────

async def run_dashboard(aggregator: MetricsAggregator, feed: HeaderFeed,
                        dashboard: Dashboard):
    """Run ingestion and rendering until one of them stops.

    Returns on quit; raises StreamFault if the feed broke first.
    """
    ingest = asyncio.create_task(aggregator.start(feed), name="ingest")
    render = asyncio.create_task(dashboard.run(), name="render")
    tasks = {ingest, render}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    for t in done:
        t.result()


async def async_main(args, config: DashboardConfig):
    aggregator = MetricsAggregator(config)

    if args.metrics_port:
        log.info("Starting Prometheus metrics server on port %d", args.metrics_port)
        try:
            start_http_server(args.metrics_port, registry=aggregator.registry)
        except OSError as e:
            raise SetupError(f"metrics port {args.metrics_port}: {e}") from e

    log.info("Dialing %s", args.endpoint)
    feed = await HeaderFeed.connect(args.endpoint, timeout=config.connect_timeout)
    aggregator.writeln("OK: Attached to client")

    try:
        with Dashboard(aggregator, config) as dashboard:
            await run_dashboard(aggregator, feed, dashboard)
    finally:
        feed.close()
        snap = aggregator.snapshot()
        log.info("Chain Monitor stopped after %d blocks.", snap.blocks_seen)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Chain Monitor: live gas and block-time dashboard for a node",
    )
    parser.add_argument(
        "endpoint", nargs="?",
        help="Node RPC endpoint: IPC socket path or ws:// URL",
    )
    parser.add_argument(
        "--metrics-port", type=int, default=None,
        help="Serve Prometheus metrics on this port (default: off)",
    )
    parser.add_argument(
        "--log-file", type=str, default=None,
        help="Write diagnostics to this file instead of stderr",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    args = parser.parse_args(argv)
    if not args.endpoint:
        raise UsageError(f"usage: {sys.argv[0]} /path/to/socket")
    return args


def main(argv=None):
    try:
        args = parse_args(argv)
    except UsageError as e:
        print(e)
        sys.exit(1)

    configure_logging(args.log_level, args.log_file)
    print("initialising...")

    try:
        asyncio.run(async_main(args, DashboardConfig()))
    except ChainMonitorError as e:
        log.error("%s: %s", e.kind, e)
        if args.log_file:
            print(f"{e.kind}: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("Interrupted by user.")


if __name__ == "__main__":
    main()
