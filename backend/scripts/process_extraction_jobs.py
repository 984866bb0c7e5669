#!/usr/bin/env python3
"""
Runs the bet-slip extraction worker outside the API process.

Usage (on the server or locally against a database):
  cd backend
  export DATABASE_URL="postgresql://..."   # or .env
  PYTHONPATH=. python scripts/process_extraction_jobs.py --limit 20

  Reset stuck jobs only:
  PYTHONPATH=. python scripts/process_extraction_jobs.py --cleanup

  Keep polling until interrupted (or --max-runtime elapses):
  PYTHONPATH=. python scripts/process_extraction_jobs.py --continuous --interval 30
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time

# Run from repo root or backend; ensure backend is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.dependencies import get_session_factory
from app.services.extraction_worker import process_pending_jobs, run_stuck_job_sweep

logger = logging.getLogger("process_extraction_jobs")


async def _run(args: argparse.Namespace) -> int:
    session_factory = get_session_factory()

    if args.cleanup:
        reset = run_stuck_job_sweep(session_factory)
        logger.info("Reset %s stuck extraction job(s)", reset)
        return 0

    started = time.monotonic()
    while True:
        summary = await process_pending_jobs(session_factory, limit=args.limit)
        logger.info("Extraction batch: %s", summary.as_dict())
        if not args.continuous:
            return 0
        if args.max_runtime and time.monotonic() - started >= args.max_runtime:
            logger.info("Max runtime of %ss reached, stopping", args.max_runtime)
            return 0
        await asyncio.sleep(args.interval)


def main() -> None:
    parser = argparse.ArgumentParser(description="Process pending bet-slip extraction jobs.")
    parser.add_argument("--limit", type=int, default=10, help="Jobs to claim per batch.")
    parser.add_argument("--cleanup", action="store_true", help="Only reset jobs stuck in processing.")
    parser.add_argument("--continuous", action="store_true", help="Keep polling for new jobs.")
    parser.add_argument("--interval", type=float, default=30.0, help="Seconds between batches in continuous mode.")
    parser.add_argument("--max-runtime", type=float, default=0.0, help="Stop continuous mode after N seconds (0 = no limit).")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    args = parser.parse_args()

    if args.limit < 1:
        parser.error("--limit must be >= 1")
    if args.interval <= 0:
        parser.error("--interval must be > 0")

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sys.exit(asyncio.run(_run(args)))
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
