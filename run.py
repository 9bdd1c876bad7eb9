#!/usr/bin/env python3
"""
AMM Venue Keeper -- single entry point.

Each tick:
  1. Pause check (router + emergency stop)
  2. Scan orders (every tick) and positions (every Nth tick)
  3. Execute ready orders / liquidations, one write at a time
  4. Optionally refresh stale oracle prices
  5. Report, sleep, repeat

Usage:
  python run.py --dry-run        # no key needed, scan and log what would be sent
  python run.py --once           # single tick, then exit
  python run.py                  # live keeper
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time

from pydantic import ValidationError

from config import ConfigurationError, load_config, validate_startup
from monitor.display import format_duration, print_startup, print_stats
from monitor.logger import setup_logging
from pipeline.context import KeeperContext

logger = logging.getLogger(__name__)


_BANNER = r"""
 _  __
| |/ /___  ___ _ __   ___ _ __
| ' // _ \/ _ \ '_ \ / _ \ '__|
| . \  __/  __/ |_) |  __/ |
|_|\_\___|\___| .__/ \___|_|
              |_|   AMM Venue Keeper v0.1
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="AMM Venue Keeper")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--dry-run", action="store_true", help="Scan and classify, but never send a transaction")
    parser.add_argument("--log-json", type=str, default=None, help="Path to JSON log file for machine-readable output")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config()
        if args.dry_run:
            cfg = cfg.model_copy(update={"dry_run": True})
        validate_startup(cfg)
    except (ConfigurationError, ValidationError) as e:
        # Logging is not configured yet; stderr is all we have
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    log_file_path = setup_logging(cfg.log_level, json_log_file=args.log_json)
    logger.info(_BANNER.strip("\n"))
    if log_file_path:
        logger.info("  Log file: %s", log_file_path)
    print_startup(cfg)

    try:
        ctx = KeeperContext.from_config(cfg)
    except ValueError as e:
        # Bad checksum address, malformed key, unreadable ABI file
        logger.error("Keeper setup failed: %s", e)
        return 1

    ctx.start()
    controller = ctx.build_controller()

    def handle_signal(signum, frame):
        if not controller.stopped:
            logger.info("Signal %d received, stopping after the current cycle...", signum)
        controller.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info("Keeper monitoring started (Ctrl+C to stop)")
    session_start = time.time()
    try:
        cycles = controller.run_forever(max_cycles=1 if args.once else None)
    finally:
        ctx.stop()

    logger.info("")
    logger.info("Shutting down gracefully after %s (%d cycles)",
                format_duration(time.time() - session_start), cycles)
    print_stats(ctx.stats.summary())
    return 0


if __name__ == "__main__":
    sys.exit(main())
