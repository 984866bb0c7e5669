"""
Durable queue of bet slip extraction work, one job per sign-up.

    pending --claim--> processing --complete--> completed
                            |------ retryable, budget left --> pending (next_attempt_at += backoff)
                            |------ otherwise ----------------> failed (terminal)
    processing (no update for EXTRACTION_STUCK_AFTER_SECONDS) --sweep--> pending

Every transition out of ``processing`` is conditional on the claim token, so a
worker whose job was swept and re-claimed elsewhere cannot overwrite newer state.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.signup import ExtractionJob, SignUp
from app.schemas.signup import ExtractionStatus, JobStatus
from app.services.ai.bet_slip.contracts import BetSlipExtractionResult
from app.services.transition_service import jsonable, record_signup_audit

logger = logging.getLogger(__name__)


def _now_utc(db: Session) -> datetime:
    # SQLite stores timezone-aware datetimes as naive values.
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    if getattr(dialect, "name", "") == "sqlite":
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttemptFailure:
    code: str
    message: str
    retryable: bool

    def as_error(self) -> str:
        return f"{self.code}: {self.message}"[:2000]


@dataclass(frozen=True)
class PendingJob:
    job_id: str
    signup_id: str
    image_ref: str
    content_type: Optional[str]
    operator_id: int
    customer_email: str
    attempt_count: int
    max_attempts: int


def compute_backoff(
    attempt_count: int,
    *,
    base_seconds: Optional[float] = None,
    multiplier: Optional[float] = None,
) -> timedelta:
    """Delay before retry number ``attempt_count`` (1-based): 5s, 25s, 125s by default."""
    settings = get_settings()
    base = settings.extraction_backoff_base_seconds if base_seconds is None else base_seconds
    factor = settings.extraction_backoff_multiplier if multiplier is None else multiplier
    return timedelta(seconds=float(base) * float(factor) ** max(0, attempt_count - 1))


def create_job(db: Session, *, signup_id, max_attempts: Optional[int] = None) -> ExtractionJob:
    """Queue extraction for a sign-up. Runs inside the caller's transaction."""
    settings = get_settings()
    now = _now_utc(db)
    job = ExtractionJob(
        signup_id=signup_id,
        status=JobStatus.PENDING.value,
        attempt_count=0,
        max_attempts=int(max_attempts or settings.extraction_max_attempts),
        next_attempt_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.flush()
    return job


def get_pending_jobs(db: Session, limit: int = 10) -> list[PendingJob]:
    now = _now_utc(db)
    rows = db.execute(
        select(
            ExtractionJob.id,
            ExtractionJob.signup_id,
            ExtractionJob.attempt_count,
            ExtractionJob.max_attempts,
            SignUp.bet_slip_image_ref,
            SignUp.bet_slip_content_type,
            SignUp.operator_id,
            SignUp.customer_email,
        )
        .join(SignUp, SignUp.id == ExtractionJob.signup_id)
        .where(
            ExtractionJob.status == JobStatus.PENDING.value,
            ExtractionJob.next_attempt_at <= now,
            SignUp.bet_slip_image_ref.is_not(None),
        )
        .order_by(ExtractionJob.next_attempt_at.asc(), ExtractionJob.created_at.asc())
        .limit(int(max(1, limit)))
    ).all()
    return [
        PendingJob(
            job_id=str(row.id),
            signup_id=str(row.signup_id),
            image_ref=row.bet_slip_image_ref,
            content_type=row.bet_slip_content_type,
            operator_id=row.operator_id,
            customer_email=row.customer_email,
            attempt_count=int(row.attempt_count or 0),
            max_attempts=int(row.max_attempts or 0),
        )
        for row in rows
    ]


def claim_job(db: Session, job_id: str) -> Optional[str]:
    """Compare-and-swap pending -> processing. Returns the claim token, or None if lost."""
    now = _now_utc(db)
    token = str(uuid.uuid4())
    result = db.execute(
        update(ExtractionJob)
        .where(
            ExtractionJob.id == job_id,
            ExtractionJob.status == JobStatus.PENDING.value,
            ExtractionJob.next_attempt_at <= now,
        )
        .values(status=JobStatus.PROCESSING.value, claim_token=token, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    signup_id = db.execute(select(ExtractionJob.signup_id).where(ExtractionJob.id == job_id)).scalar_one()
    db.execute(
        update(SignUp)
        .where(SignUp.id == signup_id)
        .values(extraction_status=ExtractionStatus.PROCESSING.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return token


def _held_job(db: Session, job_id: str, claim_token: str) -> Optional[ExtractionJob]:
    return db.execute(
        select(ExtractionJob).where(
            ExtractionJob.id == job_id,
            ExtractionJob.status == JobStatus.PROCESSING.value,
            ExtractionJob.claim_token == claim_token,
        )
    ).scalar_one_or_none()


def _release(db: Session, job: ExtractionJob, claim_token: str, **values: Any) -> bool:
    result = db.execute(
        update(ExtractionJob)
        .where(
            ExtractionJob.id == job.id,
            ExtractionJob.status == JobStatus.PROCESSING.value,
            ExtractionJob.claim_token == claim_token,
        )
        .values(claim_token=None, updated_at=_now_utc(db), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def complete_job(
    db: Session,
    *,
    job_id: str,
    claim_token: str,
    result: BetSlipExtractionResult,
) -> bool:
    """Write extracted fields onto the sign-up. Returns False if the claim was lost."""
    job = _held_job(db, job_id, claim_token)
    if job is None:
        logger.warning("Extraction claim lost before completion: job=%s", job_id)
        return False

    # Only failed attempts count against the budget.
    attempt = int(job.attempt_count or 0) + 1
    if not _release(
        db,
        job,
        claim_token,
        status=JobStatus.COMPLETED.value,
        last_error=None,
        ai_response=jsonable(result.raw_response),
    ):
        return False

    confidence = Decimal(str(result.confidence_score)).quantize(Decimal("0.01"))
    db.execute(
        update(SignUp)
        .where(SignUp.id == job.signup_id)
        .values(
            bet_amount=result.bet_amount,
            team_bet_on=result.team_bet_on,
            odds=result.odds,
            extraction_confidence=confidence,
            extraction_status=ExtractionStatus.COMPLETED.value,
            updated_at=_now_utc(db),
        )
        .execution_options(synchronize_session=False)
    )
    record_signup_audit(
        db,
        signup_id=job.signup_id,
        action="EXTRACTION_COMPLETED",
        new_value=result.extracted_fields(),
        metadata={
            "job_id": str(job.id),
            "attempt": attempt,
            "missing_fields": result.missing_fields,
            "warnings": result.warnings,
        },
    )
    return True


def record_attempt_failure(
    db: Session,
    *,
    job_id: str,
    claim_token: str,
    failure: AttemptFailure,
) -> Optional[str]:
    """Apply the retry policy to a failed attempt.

    Returns the job's new status ("pending" or "failed"), or None if the claim was lost.
    """
    job = _held_job(db, job_id, claim_token)
    if job is None:
        logger.warning("Extraction claim lost before failure write-back: job=%s", job_id)
        return None

    attempts = int(job.attempt_count or 0) + 1
    max_attempts = int(job.max_attempts or 0)
    meta = {"job_id": str(job.id), "attempt": attempts, "code": failure.code, "retryable": failure.retryable}

    def _audit_attempt() -> None:
        record_signup_audit(
            db,
            signup_id=job.signup_id,
            action="EXTRACTION_ATTEMPT_FAILED",
            metadata={**meta, "error": failure.message},
        )

    if failure.retryable and attempts < max_attempts:
        next_attempt_at = _now_utc(db) + compute_backoff(attempts)
        if not _release(
            db,
            job,
            claim_token,
            status=JobStatus.PENDING.value,
            attempt_count=attempts,
            last_error=failure.as_error(),
            next_attempt_at=next_attempt_at,
        ):
            return None
        _audit_attempt()
        db.execute(
            update(SignUp)
            .where(SignUp.id == job.signup_id)
            .values(extraction_status=ExtractionStatus.PENDING.value, updated_at=_now_utc(db))
            .execution_options(synchronize_session=False)
        )
        record_signup_audit(
            db,
            signup_id=job.signup_id,
            action="EXTRACTION_RETRY_SCHEDULED",
            metadata={**meta, "next_attempt_at": next_attempt_at},
        )
        logger.warning(
            "Extraction attempt failed, retry scheduled: job=%s attempt=%s/%s code=%s next=%s",
            job.id,
            attempts,
            max_attempts,
            failure.code,
            next_attempt_at.isoformat(),
        )
        return JobStatus.PENDING.value

    if not _release(
        db,
        job,
        claim_token,
        status=JobStatus.FAILED.value,
        attempt_count=min(attempts, max_attempts) if max_attempts else attempts,
        last_error=failure.as_error(),
    ):
        return None
    _audit_attempt()
    db.execute(
        update(SignUp)
        .where(SignUp.id == job.signup_id)
        .values(extraction_status=ExtractionStatus.FAILED.value, updated_at=_now_utc(db))
        .execution_options(synchronize_session=False)
    )
    record_signup_audit(
        db,
        signup_id=job.signup_id,
        action="EXTRACTION_FAILED",
        metadata={**meta, "exhausted_retries": attempts >= max_attempts},
    )
    logger.error(
        "Extraction job failed permanently: job=%s attempt=%s/%s code=%s",
        job.id,
        attempts,
        max_attempts,
        failure.code,
    )
    return JobStatus.FAILED.value


def reset_stuck_jobs(db: Session, *, stale_after_seconds: Optional[int] = None) -> int:
    """Return processing jobs with no update for the stale threshold to pending.

    Idempotent: a reset job gets a fresh ``updated_at`` and leaves ``processing``,
    so a second sweep within the interval does nothing.
    """
    settings = get_settings()
    threshold = int(stale_after_seconds or settings.extraction_stuck_after_seconds)
    now = _now_utc(db)
    cutoff = now - timedelta(seconds=threshold)

    stuck = db.execute(
        select(ExtractionJob.id, ExtractionJob.signup_id, ExtractionJob.claim_token).where(
            ExtractionJob.status == JobStatus.PROCESSING.value,
            ExtractionJob.updated_at < cutoff,
        )
    ).all()

    reset = 0
    for row in stuck:
        result = db.execute(
            update(ExtractionJob)
            .where(
                ExtractionJob.id == row.id,
                ExtractionJob.status == JobStatus.PROCESSING.value,
                ExtractionJob.updated_at < cutoff,
            )
            .values(
                status=JobStatus.PENDING.value,
                claim_token=None,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        reset += 1
        db.execute(
            update(SignUp)
            .where(
                SignUp.id == row.signup_id,
                SignUp.extraction_status == ExtractionStatus.PROCESSING.value,
            )
            .values(extraction_status=ExtractionStatus.PENDING.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        record_signup_audit(
            db,
            signup_id=row.signup_id,
            action="EXTRACTION_JOB_RESET",
            metadata={"job_id": str(row.id), "stale_after_seconds": threshold},
        )

    if reset:
        logger.info("Reset stuck extraction jobs: %s", reset)
    return reset


def get_job_stats(db: Session) -> dict[str, Any]:
    counts = dict(
        db.execute(select(ExtractionJob.status, func.count()).group_by(ExtractionJob.status)).all()
    )
    avg_confidence = db.execute(
        select(
            func.avg(
                case(
                    (ExtractionJob.status == JobStatus.COMPLETED.value, SignUp.extraction_confidence),
                    else_=None,
                )
            )
        )
        .select_from(ExtractionJob)
        .join(SignUp, SignUp.id == ExtractionJob.signup_id)
    ).scalar()
    return {
        "pending": int(counts.get(JobStatus.PENDING.value, 0)),
        "processing": int(counts.get(JobStatus.PROCESSING.value, 0)),
        "completed": int(counts.get(JobStatus.COMPLETED.value, 0)),
        "failed": int(counts.get(JobStatus.FAILED.value, 0)),
        "avg_confidence": round(float(avg_confidence), 2) if avg_confidence is not None else None,
    }
