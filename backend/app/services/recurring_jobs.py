from __future__ import annotations

import asyncio
import logging

from app.core import dependencies
from app.core.config import get_settings
from app.services.extraction_worker import process_pending_jobs, run_stuck_job_sweep

logger = logging.getLogger(__name__)


def _worker_enabled() -> bool:
    settings = get_settings()
    return bool(settings.enable_recurring_jobs and settings.enable_extraction_worker)


async def _extraction_worker_loop(*, interval_seconds: int, batch_size: int, concurrency: int) -> None:
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            if not _worker_enabled() or dependencies.SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            summary = await process_pending_jobs(
                dependencies.SessionLocal,
                limit=batch_size,
                concurrency=concurrency,
            )
            # Drain a full batch without waiting.
            if summary.processed < batch_size:
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Extraction worker error")
            await asyncio.sleep(error_sleep)


def start_extraction_worker() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(1, min(300, int(settings.extraction_worker_interval_seconds or 5))))
    batch_size = int(max(1, min(100, int(settings.extraction_worker_batch_size or 10))))
    concurrency = int(max(1, min(20, int(settings.extraction_worker_concurrency or 2))))
    return asyncio.create_task(
        _extraction_worker_loop(
            interval_seconds=interval,
            batch_size=batch_size,
            concurrency=concurrency,
        )
    )


async def _stuck_job_sweep_loop(*, interval_seconds: int) -> None:
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            if _worker_enabled() and dependencies.SessionLocal is not None:
                run_stuck_job_sweep(dependencies.SessionLocal)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stuck extraction job sweep error")
            await asyncio.sleep(error_sleep)


def start_stuck_job_sweeper() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(15, min(600, int(settings.extraction_sweep_interval_seconds or 60))))
    return asyncio.create_task(_stuck_job_sweep_loop(interval_seconds=interval))
