#!/usr/bin/env python3
"""Run scheduled workflows whose next run time has passed.

Meant to be invoked periodically by cron or a job queue:

    */5 * * * * python scripts/workflow_scheduler.py --limit 20

Options:
    --dry-run   List due workflows without executing them
    --limit N   Process at most N workflows (default: SCHEDULER_BATCH_LIMIT)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run(limit: int | None, dry_run: bool) -> dict:
    from agentflow.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.scheduler.run_due(limit, dry_run=dry_run)
    finally:
        await runtime.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Execute due scheduled workflows")
    parser.add_argument("--dry-run", action="store_true", help="Only list due workflows")
    parser.add_argument("--limit", type=int, default=None, help="Maximum workflows to process")
    args = parser.parse_args()

    if args.limit is not None and args.limit < 1:
        print("Error: --limit must be at least 1", file=sys.stderr)
        return 1

    summary = asyncio.run(run(args.limit, args.dry_run))
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
