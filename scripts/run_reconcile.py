#!/usr/bin/env python3
"""scripts/run_reconcile.py

One-shot reconciliation run (cron / CI entrypoint).

Usage:
    python scripts/run_reconcile.py [--config config/sync.yaml] [--contract JobBoard]

Options:
    --config: Path to sync config YAML [default: $SYNC_CONFIG or config/sync.yaml]
    --contract: Reconcile a single tracked contract instead of all of them

Writes a JSON summary to stdout; logs go to stderr.

Exit codes:
    - 0: every contract reconciled
    - 1: config error or at least one contract failed
    - 2: another run holds the lease
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings import ConfigError, load_config
from sync.errors import ReconciliationInProgress, ReconciliationPartialFailure
from sync.reconciler import ReconcileResult
from sync.services import SyncServices


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile the chain cache up to the current block")
    parser.add_argument("--config", type=str, default=None, help="Path to sync config YAML")
    parser.add_argument("--contract", type=str, default=None, help="Single tracked contract to reconcile")
    parser.add_argument("--verbose", action="store_true", help="DEBUG logging")
    return parser.parse_args()


def _outcome(o) -> dict:
    if isinstance(o, ReconcileResult):
        return {"success": True, **o.to_dict()}
    return {"success": False, "contractName": o.contract_name, "error": o.message, "syncStatus": o.sync_status}


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    services = SyncServices.from_config(config)
    try:
        if args.contract:
            try:
                outcomes = [await services.scheduler.reconcile(args.contract)]
            except ReconciliationPartialFailure as e:
                outcomes = [e]
        else:
            outcomes = await services.scheduler.reconcile_all()
    finally:
        services.close()

    summary = [_outcome(o) for o in outcomes]
    print(json.dumps({"success": all(s["success"] for s in summary), "contracts": summary}, indent=2))
    return 0 if all(s["success"] for s in summary) else 1


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
        datefmt='%H:%M:%S',
    )

    try:
        code = asyncio.run(run(args))
    except ConfigError as e:
        print(f"[run_reconcile] Config error: {e}", file=sys.stderr)
        sys.exit(1)
    except ReconciliationInProgress as e:
        print(f"[run_reconcile] {e}", file=sys.stderr)
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()
