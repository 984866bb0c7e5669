"""Read-side ranking of sign-ups that need a human look at their bet slip."""

import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from app.models.signup import SignUp
from app.schemas.signup import ExtractionStatus, MissingField, ReviewStatus

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

REVIEWABLE_EXTRACTION_STATUSES = (ExtractionStatus.COMPLETED.value, ExtractionStatus.FAILED.value)


@dataclass(frozen=True)
class ReviewFilters:
    missing_fields: Optional[MissingField] = None
    operator_id: Optional[int] = None
    ambassador_id: Optional[uuid.UUID] = None
    min_confidence: Optional[float] = None
    max_confidence: Optional[float] = None


def missing_fields_of(signup: SignUp) -> list[str]:
    return [name for name in ("bet_amount", "team_bet_on", "odds") if getattr(signup, name) is None]


def _missing_clause(missing: MissingField):
    if missing == MissingField.BET_AMOUNT:
        return SignUp.bet_amount.is_(None)
    if missing == MissingField.TEAM_BET_ON:
        return SignUp.team_bet_on.is_(None)
    if missing == MissingField.ODDS:
        return SignUp.odds.is_(None)
    return or_(SignUp.bet_amount.is_(None), SignUp.team_bet_on.is_(None), SignUp.odds.is_(None))


def clamp_page(page: Optional[int], page_size: Optional[int]) -> tuple[int, int]:
    page = max(1, int(page or 1))
    page_size = max(1, min(MAX_PAGE_SIZE, int(page_size or DEFAULT_PAGE_SIZE)))
    return page, page_size


def list_for_review(
    db: Session,
    filters: Optional[ReviewFilters] = None,
    *,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[list[SignUp], int]:
    """Sign-ups awaiting review, most urgent first.

    Missing bet amount or team sorts ahead of everything else; within each group
    lower confidence (NULL as 0) comes first, then older submissions.
    """
    filters = filters or ReviewFilters()
    page, page_size = clamp_page(page, page_size)

    conditions = [
        SignUp.review_status == ReviewStatus.PENDING.value,
        SignUp.extraction_status.in_(REVIEWABLE_EXTRACTION_STATUSES),
    ]
    if filters.missing_fields is not None:
        conditions.append(_missing_clause(filters.missing_fields))
    if filters.operator_id is not None:
        conditions.append(SignUp.operator_id == filters.operator_id)
    if filters.ambassador_id is not None:
        conditions.append(SignUp.ambassador_id == filters.ambassador_id)

    confidence = func.coalesce(SignUp.extraction_confidence, 0)
    if filters.min_confidence is not None:
        conditions.append(confidence >= float(filters.min_confidence))
    if filters.max_confidence is not None:
        conditions.append(confidence <= float(filters.max_confidence))

    total = db.execute(select(func.count()).select_from(SignUp).where(*conditions)).scalar_one()

    critical_missing = case(
        (or_(SignUp.bet_amount.is_(None), SignUp.team_bet_on.is_(None)), 0),
        else_=1,
    )
    items = (
        db.execute(
            select(SignUp)
            .where(*conditions)
            .order_by(critical_missing.asc(), confidence.asc(), SignUp.submitted_at.asc(), SignUp.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        .scalars()
        .all()
    )
    return list(items), int(total)


def get_review_stats(db: Session) -> dict:
    by_extraction = dict(
        db.execute(select(SignUp.extraction_status, func.count()).group_by(SignUp.extraction_status)).all()
    )
    by_review = dict(db.execute(select(SignUp.review_status, func.count()).group_by(SignUp.review_status)).all())

    def _avg_confidence(*conditions) -> Optional[float]:
        value = db.execute(select(func.avg(SignUp.extraction_confidence)).where(*conditions)).scalar()
        return round(float(value), 2) if value is not None else None

    return {
        "by_extraction_status": {status.value: int(by_extraction.get(status.value, 0)) for status in ExtractionStatus},
        "by_review_status": {status.value: int(by_review.get(status.value, 0)) for status in ReviewStatus},
        "avg_confidence_pending_review": _avg_confidence(
            SignUp.review_status == ReviewStatus.PENDING.value,
            SignUp.extraction_status.in_(REVIEWABLE_EXTRACTION_STATUSES),
        ),
        "avg_confidence_confirmed": _avg_confidence(SignUp.review_status == ReviewStatus.CONFIRMED.value),
    }
