#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from concierge.container import container
from concierge.logging_utils import configure_logging


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resident outbox, deadlock and orphan sweeps.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--only",
        choices=["outbox", "deadlock", "orphans"],
        default=None,
        help="Run a single sweep once and exit.",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="With --only orphans, delete orphans instead of reporting them.",
    )
    args = parser.parse_args()
    configure_logging()

    runner = container.sweeps
    if args.only == "outbox":
        stats = runner.run_outbox_sweep()
    elif args.only == "deadlock":
        stats = runner.run_deadlock_sweep()
    elif args.only == "orphans":
        stats = runner.run_orphan_sweep(dry_run=not args.apply, force=True)
    else:
        stats = runner.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
