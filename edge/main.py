"""Entry point for an Edge replica.
Prepares the local root, connects to the hub and follows it.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from common.exceptions import SetupError, TransportError, WatchError
from common.fs_ops import prepare_root
from common.logging_config import setup_logging
from edge.config import (
    EDGE_ROOT,
    HUB_URL,
    MODE_POLL_INTERVAL,
    RECONNECT_ATTEMPTS,
    RECONNECT_DELAY,
    SUPPRESSION_WINDOW_SECONDS,
)
from edge.edge_agent import EdgeAgent

logger = setup_logging('edge')


async def serve(agent: EdgeAgent) -> None:
    """
    Run the edge agent until it gives up or a signal arrives.

    Args:
        agent: Initialized EdgeAgent instance
    """
    task = asyncio.create_task(agent.run())

    def shutdown(sig):
        logger.info(f"Received signal {sig}, shutting down...")
        task.cancel()

    if sys.platform != 'win32':
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: shutdown(s))

    try:
        await task
    except asyncio.CancelledError:
        logger.info("Edge stopped")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a sync edge replica")
    parser.add_argument("--hub", default=HUB_URL, help=f"Hub address (default: {HUB_URL})")
    parser.add_argument("--dir", default=EDGE_ROOT, help=f"Local root directory (default: {EDGE_ROOT})")
    parser.add_argument("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """Bootstrap edge replica."""
    args = parse_args(argv)

    setup_logging('edge', args.log_level)
    setup_logging('common', args.log_level)

    try:
        root: Path = prepare_root(args.dir)
    except SetupError as e:
        logger.error(f"Unable to prepare root directory: {e.message}")
        sys.exit(1)

    agent = EdgeAgent(
        root,
        args.hub,
        suppression_window=SUPPRESSION_WINDOW_SECONDS,
        poll_interval=MODE_POLL_INTERVAL,
        reconnect_attempts=RECONNECT_ATTEMPTS,
        reconnect_delay=RECONNECT_DELAY
    )

    logger.info(f"Starting edge [hub={args.hub}, root={root}]")
    try:
        asyncio.run(serve(agent))
    except (TransportError, WatchError) as e:
        logger.error(f"Edge exiting: {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, edge shutdown complete")


if __name__ == "__main__":
    main()
