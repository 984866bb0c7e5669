"""
Review resolution state machine for extracted bet slips, plus the shared audit writer.

    pending --confirm--> confirmed   (terminal)
    pending --skip-----> skipped
    skipped --skip-----> skipped     (re-skip updates the reason)

Both transitions are compare-and-swap updates on ``review_status`` so two reviewers
racing on the same sign-up cannot both win.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.signup import AuditLog, SignUp
from app.schemas.signup import ExtractionStatus, ReviewStatus
from app.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)


ALLOWED_REVIEW_TRANSITIONS = {
    ReviewStatus.PENDING: [ReviewStatus.CONFIRMED, ReviewStatus.SKIPPED],
    ReviewStatus.SKIPPED: [ReviewStatus.SKIPPED],
    ReviewStatus.CONFIRMED: [],
}

DEFAULT_SKIP_REASON = "Manual skip by reviewer"

EXTRACTION_IN_FLIGHT = {ExtractionStatus.PENDING.value, ExtractionStatus.PROCESSING.value}

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "customer_phone",
    "email",
    "customer_email",
}


class ReviewError(Exception):
    pass


class ReviewTransitionError(ReviewError):
    pass


@dataclass(frozen=True)
class Actor:
    actor_type: str  # "AMBASSADOR" | "MANAGER" | "ADMIN" | "SYSTEM"
    actor_id: Optional[str]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM_ACTOR = Actor(actor_type="SYSTEM", actor_id=None)


@dataclass(frozen=True)
class ExtractionCorrections:
    """Reviewer overrides. ``None`` means "keep the extracted value"."""

    bet_amount: Optional[Decimal] = None
    team_bet_on: Optional[str] = None
    odds: Optional[str] = None

    def provided(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("bet_amount", self.bet_amount),
                ("team_bet_on", self.team_bet_on),
                ("odds", self.odds),
            )
            if value is not None
        }

    def merge(self, signup: SignUp) -> dict[str, Any]:
        return {
            "bet_amount": self.bet_amount if self.bet_amount is not None else signup.bet_amount,
            "team_bet_on": self.team_bet_on if self.team_bet_on is not None else signup.team_bet_on,
            "odds": self.odds if self.odds is not None else signup.odds,
        }


def _now_utc(db: Session) -> datetime:
    # SQLite stores timezone-aware datetimes as naive values.
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    if getattr(dialect, "name", "") == "sqlite":
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return value


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    old_value = jsonable(old_value)
    new_value = jsonable(new_value)
    metadata = jsonable(metadata)
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        actor_id=actor_id,
        ip_address=ip_address,
        user_agent=user_agent,
        audit_meta=metadata,
        timestamp=_now_utc(db),
    )
    db.add(log)
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


def record_signup_audit(
    db: Session,
    *,
    signup_id: str,
    action: str,
    actor: Actor = SYSTEM_ACTOR,
    old_value: Optional[dict[str, Any]] = None,
    new_value: Optional[dict[str, Any]] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    create_audit_log(
        db,
        entity_type="signup",
        entity_id=str(signup_id),
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor.actor_type,
        actor_id=actor.actor_id,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        metadata=metadata,
    )


def _ensure_transition(signup: SignUp, new_status: ReviewStatus) -> ReviewStatus:
    current = ReviewStatus(signup.review_status)
    if new_status not in ALLOWED_REVIEW_TRANSITIONS.get(current, []):
        raise ReviewTransitionError(f"Cannot move review from {current.value} to {new_status.value}")
    if signup.extraction_status in EXTRACTION_IN_FLIGHT:
        raise ReviewTransitionError("Extraction is still in progress")
    return current


def _bet_fields(signup: SignUp) -> dict[str, Any]:
    return {
        "bet_amount": signup.bet_amount,
        "team_bet_on": signup.team_bet_on,
        "odds": signup.odds,
    }


def confirm_extraction(
    db: Session,
    *,
    signup: SignUp,
    corrections: Optional[ExtractionCorrections],
    actor: Actor,
) -> SignUp:
    current = _ensure_transition(signup, ReviewStatus.CONFIRMED)
    corrections = corrections or ExtractionCorrections()

    before = {"review_status": current.value, **_bet_fields(signup)}
    final = corrections.merge(signup)
    now = _now_utc(db)

    result = db.execute(
        update(SignUp)
        .where(SignUp.id == signup.id, SignUp.review_status == current.value)
        .values(
            review_status=ReviewStatus.CONFIRMED.value,
            resolved_by=actor.actor_id,
            resolved_at=now,
            updated_at=now,
            **final,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ReviewTransitionError("Sign-up was resolved concurrently")
    db.refresh(signup)

    record_signup_audit(
        db,
        signup_id=signup.id,
        action="EXTRACTION_CONFIRMED",
        actor=actor,
        old_value=before,
        new_value={"review_status": signup.review_status, **_bet_fields(signup)},
        metadata={"corrections": corrections.provided() or None},
    )
    logger.info(
        "Extraction confirmed: signup=%s reviewer=%s corrected=%s",
        signup.id,
        actor.actor_id,
        sorted(corrections.provided()),
    )
    return signup


def skip_extraction(
    db: Session,
    *,
    signup: SignUp,
    reason: Optional[str],
    actor: Actor,
) -> SignUp:
    current = _ensure_transition(signup, ReviewStatus.SKIPPED)
    reason = (reason or "").strip() or DEFAULT_SKIP_REASON

    before = {"review_status": current.value, "resolution_notes": signup.resolution_notes}
    now = _now_utc(db)

    result = db.execute(
        update(SignUp)
        .where(SignUp.id == signup.id, SignUp.review_status == current.value)
        .values(
            review_status=ReviewStatus.SKIPPED.value,
            resolved_by=actor.actor_id,
            resolved_at=now,
            resolution_notes=reason,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ReviewTransitionError("Sign-up was resolved concurrently")
    db.refresh(signup)

    record_signup_audit(
        db,
        signup_id=signup.id,
        action="EXTRACTION_SKIPPED",
        actor=actor,
        old_value=before,
        new_value={"review_status": signup.review_status, "resolution_notes": reason},
    )
    logger.info("Extraction skipped: signup=%s reviewer=%s", signup.id, actor.actor_id)
    return signup
