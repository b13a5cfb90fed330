#!/usr/bin/env python3
"""scripts/run_api.py

Serve the sync API (cron trigger, manual sync, cache stats, cached reads).

Usage:
    python scripts/run_api.py [--config config/sync.yaml] [--host 0.0.0.0] [--port 8000] [--subscriber]
"""

import argparse
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import uvicorn

from api.app import create_app
from config.settings import ConfigError, load_config


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chain sync API server")
    parser.add_argument("--config", type=str, default=None, help="Path to sync config YAML")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind host [default: 127.0.0.1]")
    parser.add_argument("--port", type=int, default=8000, help="Bind port [default: 8000]")
    parser.add_argument("--subscriber", action="store_true", help="Also run the polling subscriber")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
        datefmt='%H:%M:%S',
    )
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"[run_api] Config error: {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(config=config, run_subscriber=args.subscriber)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
