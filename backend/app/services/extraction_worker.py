"""
Extraction worker: claims due jobs, runs the vision call, writes results back.

Each job uses two short transactions (claim, then write-back); no session is held
while the vision call is in flight. Failures are classified into an
``AttemptFailure`` value and handed to the job store's retry policy; they never
propagate to the caller of ``process_pending_jobs``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_session_factory
from app.services.ai.bet_slip.service import SCOPE, extract_bet_slip
from app.services.ai.common.audit import log_ai_run
from app.services.ai.common.errors import VisionError
from app.services.extraction_jobs import (
    AttemptFailure,
    PendingJob,
    claim_job,
    complete_job,
    get_pending_jobs,
    record_attempt_failure,
    reset_stuck_jobs,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

COMPLETED = "completed"
RETRYING = "retrying"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class BatchSummary:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, outcome: str) -> None:
        self.processed += 1
        if outcome == COMPLETED:
            self.succeeded += 1
        elif outcome == RETRYING:
            self.retrying += 1
        elif outcome == FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def classify_failure(exc: BaseException) -> AttemptFailure:
    if isinstance(exc, VisionError):
        return AttemptFailure(code=exc.code, message=str(exc) or exc.code, retryable=exc.retryable)
    return AttemptFailure(
        code="unexpected_error",
        message=f"{exc.__class__.__name__}: {exc}",
        retryable=False,
    )


def _claim(job: PendingJob, session_factory: SessionFactory) -> Optional[str]:
    db = session_factory()
    try:
        token = claim_job(db, job.job_id)
        if token is None:
            db.rollback()
            return None
        db.commit()
        return token
    finally:
        db.close()


async def process_one(
    job: PendingJob,
    session_factory: SessionFactory,
    *,
    timeout_seconds: Optional[float] = None,
) -> str:
    """Run one attempt for ``job``. Returns completed / retrying / failed / skipped."""
    token = _claim(job, session_factory)
    if token is None:
        logger.debug("Extraction job already claimed: job=%s", job.job_id)
        return SKIPPED

    logger.info(
        "Processing extraction job: job=%s signup=%s attempt=%s",
        job.job_id,
        job.signup_id,
        job.attempt_count + 1,
    )

    result = None
    failure: Optional[AttemptFailure] = None
    try:
        result = await extract_bet_slip(
            job.image_ref,
            content_type=job.content_type,
            timeout_seconds=timeout_seconds,
            operator_hint=str(job.operator_id),
        )
    except asyncio.CancelledError:
        raise
    except VisionError as exc:
        failure = classify_failure(exc)
    except Exception as exc:
        logger.exception("Unexpected extraction error: job=%s", job.job_id)
        failure = classify_failure(exc)

    db = session_factory()
    try:
        if failure is None:
            if not complete_job(db, job_id=job.job_id, claim_token=token, result=result):
                db.rollback()
                return SKIPPED
            log_ai_run(
                db,
                scope=SCOPE,
                entity_type="signup",
                entity_id=job.signup_id,
                provider=result.provider,
                model=result.model,
                latency_ms=result.latency_ms,
                input_fingerprint=result.image_sha256,
                response_payload=result.raw_response,
                parsed_output=result.extracted_fields(),
                extra_meta={"job_id": job.job_id},
            )
            db.commit()
            return COMPLETED

        status = record_attempt_failure(db, job_id=job.job_id, claim_token=token, failure=failure)
        if status is None:
            db.rollback()
            return SKIPPED
        db.commit()
        return RETRYING if status == "pending" else FAILED
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def process_pending_jobs(
    session_factory: Optional[SessionFactory] = None,
    *,
    limit: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> BatchSummary:
    settings = get_settings()
    factory = session_factory or get_session_factory()
    limit = int(max(1, min(100, limit or settings.extraction_worker_batch_size)))
    concurrency = int(max(1, min(20, concurrency or settings.extraction_worker_concurrency)))

    db = factory()
    try:
        jobs = get_pending_jobs(db, limit=limit)
    finally:
        db.close()

    summary = BatchSummary()
    if not jobs:
        return summary

    semaphore = asyncio.Semaphore(concurrency)

    async def _run(job: PendingJob) -> str:
        async with semaphore:
            try:
                return await process_one(job, factory)
            except Exception:
                # Job stays in processing; the stuck-job sweep hands it back.
                logger.exception("Extraction write-back failed: job=%s", job.job_id)
                return SKIPPED

    for outcome in await asyncio.gather(*(_run(job) for job in jobs)):
        summary.add(outcome)

    logger.info(
        "Extraction batch processed: total=%s succeeded=%s retrying=%s failed=%s skipped=%s",
        summary.processed,
        summary.succeeded,
        summary.retrying,
        summary.failed,
        summary.skipped,
    )
    return summary


def run_stuck_job_sweep(session_factory: Optional[SessionFactory] = None) -> int:
    factory = session_factory or get_session_factory()
    db = factory()
    try:
        count = reset_stuck_jobs(db)
        db.commit()
        return count
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
