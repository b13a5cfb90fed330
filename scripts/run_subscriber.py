#!/usr/bin/env python3
"""scripts/run_subscriber.py

Long-lived polling subscriber. Stops on SIGINT/SIGTERM.

Usage:
    python scripts/run_subscriber.py [--config config/sync.yaml] [--interval-sec 15]

Run it only where no other process writes the same DuckDB file (the API
process can host the subscriber itself, see scripts/run_api.py).
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import ConfigError, load_config
from sync.services import SyncServices


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Poll new contract events into the cache")
    parser.add_argument("--config", type=str, default=None, help="Path to sync config YAML")
    parser.add_argument("--interval-sec", type=int, default=None, help="Override poll interval")
    parser.add_argument("--verbose", action="store_true", help="DEBUG logging")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    config = load_config(args.config)
    services = SyncServices.from_config(config)
    subscriber = services.subscriber(poll_interval_sec=args.interval_sec)
    try:
        await subscriber.start()
    finally:
        services.close()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
        datefmt='%H:%M:%S',
    )
    try:
        asyncio.run(run(args))
    except ConfigError as e:
        print(f"[run_subscriber] Config error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\n[run_subscriber] Interrupted by user", file=sys.stderr)


if __name__ == "__main__":
    main()
