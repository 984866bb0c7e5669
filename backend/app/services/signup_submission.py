"""
Sign-up submission: the synchronous entry point for ambassador sign-ups.

Order of checks:
  1. idempotency key replay (returns the stored sign-up unchanged)
  2. duplicate customer (same email + operator on the same UTC day)
  3. CPA rate lock
  4. bet slip decode, verify and upload
  5. insert sign-up (+ extraction job + audit) in the caller's transaction

The insert is conflict-safe on ``idempotency_key``: when two identical requests
race, the loser returns the winner's row as an idempotent replay.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from sqlalchemy import func, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.image_processing import ImageValidationError, decode_bet_slip_image
from app.core.storage import StorageError, upload_bet_slip
from app.models.signup import AuditLog, SignUp
from app.schemas.signup import (
    EventSignUpSubmission,
    ExtractionStatus,
    ReviewStatus,
    SoloSignUpSubmission,
    SourceType,
)
from app.services.extraction_jobs import create_job
from app.services.rate_service import RateNotFoundError, resolve_rate
from app.services.transition_service import Actor, record_signup_audit

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    code = "submission_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SignUpValidationError(SubmissionError):
    code = "validation_error"


class DuplicateSignUpError(SubmissionError):
    code = "duplicate_detected"


class ImageUploadError(SubmissionError):
    code = "image_upload_failed"


class RateResolutionError(SubmissionError):
    code = "cpa_lookup_failed"


@dataclass
class SubmissionOutcome:
    signup: SignUp
    is_idempotent_return: bool
    job_id: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


Submission = Union[EventSignUpSubmission, SoloSignUpSubmission]


def _now_utc(db: Session) -> datetime:
    # SQLite stores timezone-aware datetimes as naive values.
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    if getattr(dialect, "name", "") == "sqlite":
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def _parse_uuid(value: Optional[str], field_name: str, *, require_v4: bool = False) -> uuid.UUID:
    try:
        parsed = uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise SignUpValidationError(f"{field_name} must be a valid UUID", {"field": field_name})
    if require_v4 and parsed.version != 4:
        raise SignUpValidationError(f"{field_name} must be a UUID v4", {"field": field_name})
    return parsed


def get_signup(db: Session, signup_id: str) -> Optional[SignUp]:
    try:
        parsed = uuid.UUID(str(signup_id))
    except ValueError:
        return None
    return db.get(SignUp, parsed)


def get_signup_by_idempotency_key(db: Session, idempotency_key: str) -> Optional[SignUp]:
    return db.execute(select(SignUp).where(SignUp.idempotency_key == idempotency_key)).scalar_one_or_none()


def find_same_day_duplicate(db: Session, *, customer_email: str, operator_id: int, now: datetime) -> Optional[SignUp]:
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return db.execute(
        select(SignUp)
        .where(
            func.lower(SignUp.customer_email) == customer_email.lower(),
            SignUp.operator_id == operator_id,
            SignUp.submitted_at >= day_start,
            SignUp.submitted_at < day_start + timedelta(days=1),
        )
        .order_by(SignUp.submitted_at.asc())
        .limit(1)
    ).scalar_one_or_none()


def _store_bet_slip(submission: Submission) -> tuple[Optional[str], Optional[str]]:
    if not submission.bet_slip_photo:
        return None, None
    settings = get_settings()
    try:
        image = decode_bet_slip_image(
            submission.bet_slip_photo,
            declared_content_type=submission.bet_slip_content_type,
            max_bytes=settings.bet_slip_max_bytes,
        )
    except ImageValidationError as exc:
        raise SignUpValidationError(str(exc), {"field": "bet_slip_photo"}) from exc

    try:
        ref = upload_bet_slip(image.content, image.content_type)
    except StorageError as exc:
        logger.warning("Bet slip upload failed: %s", exc)
        raise ImageUploadError("Failed to upload bet slip image") from exc
    return ref, image.content_type


def _insert_signup(db: Session, values: dict[str, Any]) -> bool:
    """Insert unless the idempotency key already exists. Returns True if a row was written."""
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    dialect_name = getattr(dialect, "name", "") or ""
    table = SignUp.__table__

    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["idempotency_key"])
        return bool(db.execute(stmt).rowcount)
    if dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(**values).prefix_with("OR IGNORE")
        return bool(db.execute(stmt).rowcount)

    try:
        with db.begin_nested():
            db.execute(insert(table).values(**values))
    except IntegrityError:
        return False
    return True


def submit_signup(
    db: Session,
    *,
    submission: Submission,
    source_type: SourceType,
    actor: Actor,
) -> SubmissionOutcome:
    idempotency_key = submission.idempotency_key.strip()
    _parse_uuid(idempotency_key, "idempotency_key", require_v4=True)

    existing = get_signup_by_idempotency_key(db, idempotency_key)
    if existing is not None:
        logger.info("Idempotent sign-up replay: key=%s signup=%s", idempotency_key, existing.id)
        return SubmissionOutcome(signup=existing, is_idempotent_return=True)

    ambassador_id = _parse_uuid(actor.actor_id, "ambassador_id")
    if source_type == SourceType.EVENT:
        event_id, solo_chat_id = _parse_uuid(submission.event_id, "event_id"), None
    else:
        event_id, solo_chat_id = None, _parse_uuid(submission.solo_chat_id, "solo_chat_id")

    customer_email = str(submission.customer_email).strip().lower()
    now = _now_utc(db)

    duplicate = find_same_day_duplicate(
        db, customer_email=customer_email, operator_id=submission.operator_id, now=now
    )
    if duplicate is not None and duplicate.idempotency_key == idempotency_key:
        # The first request with this key committed after our replay lookup.
        logger.info("Idempotent sign-up replay: key=%s signup=%s", idempotency_key, duplicate.id)
        return SubmissionOutcome(signup=duplicate, is_idempotent_return=True)
    if duplicate is not None:
        logger.warning(
            "Duplicate sign-up rejected: operator=%s existing=%s", submission.operator_id, duplicate.id
        )
        raise DuplicateSignUpError(
            "A sign-up for this customer and operator already exists today",
            {"existing_signup_id": str(duplicate.id)},
        )

    try:
        cpa_amount = resolve_rate(
            db, operator_id=submission.operator_id, state_code=submission.customer_state, at=now
        )
    except RateNotFoundError as exc:
        raise RateResolutionError(str(exc), {"operator_id": submission.operator_id}) from exc

    image_ref, content_type = _store_bet_slip(submission)

    signup_id = uuid.uuid4()
    values = {
        "id": signup_id,
        "idempotency_key": idempotency_key,
        "source_type": source_type.value,
        "ambassador_id": ambassador_id,
        "event_id": event_id,
        "solo_chat_id": solo_chat_id,
        "operator_id": submission.operator_id,
        "customer_name": submission.customer_name,
        "customer_email": customer_email,
        "customer_phone": (submission.customer_phone or "").strip() or None,
        "customer_state": submission.customer_state,
        "cpa_amount": cpa_amount,
        "bet_slip_image_ref": image_ref,
        "bet_slip_content_type": content_type,
        "extraction_status": (ExtractionStatus.PENDING if image_ref else ExtractionStatus.NONE).value,
        "review_status": ReviewStatus.PENDING.value,
        "ip_address": actor.ip_address,
        "user_agent": actor.user_agent,
        "submitted_at": now,
        "created_at": now,
        "updated_at": now,
    }

    if not _insert_signup(db, values):
        winner = get_signup_by_idempotency_key(db, idempotency_key)
        if winner is None:
            raise SubmissionError("Sign-up insert was rejected")
        if image_ref:
            logger.warning("Concurrent replay left an unused bet slip: ref=%s", image_ref)
        return SubmissionOutcome(signup=winner, is_idempotent_return=True)

    record_signup_audit(
        db,
        signup_id=signup_id,
        action="SIGNUP_SUBMITTED",
        actor=actor,
        new_value={
            "source_type": source_type.value,
            "operator_id": submission.operator_id,
            "customer_email": customer_email,
            "customer_state": submission.customer_state,
            "cpa_amount": cpa_amount,
            "has_bet_slip": image_ref is not None,
        },
        metadata={"idempotency_key": idempotency_key},
    )

    job_id = None
    if image_ref:
        job = create_job(db, signup_id=signup_id)
        job_id = str(job.id)
        record_signup_audit(
            db,
            signup_id=signup_id,
            action="EXTRACTION_JOB_CREATED",
            actor=actor,
            metadata={"job_id": job_id, "image_ref": image_ref},
        )

    signup = db.get(SignUp, signup_id)
    logger.info(
        "Sign-up submitted: signup=%s source=%s operator=%s cpa=%s job=%s",
        signup_id,
        source_type.value,
        submission.operator_id,
        cpa_amount,
        job_id,
    )
    return SubmissionOutcome(signup=signup, is_idempotent_return=False, job_id=job_id)


def get_audit_log(db: Session, signup_id) -> list[AuditLog]:
    return list(
        db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == "signup", AuditLog.entity_id == signup_id)
            .order_by(AuditLog.timestamp.asc())
        )
        .scalars()
        .all()
    )
