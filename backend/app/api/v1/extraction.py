import logging
import math
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session, sessionmaker

from app.api.v1.signups import error_detail, request_actor
from app.core.auth import ADMIN, REVIEWER_ROLES, CurrentUser, require_roles
from app.core.dependencies import get_db, get_session_factory
from app.schemas.signup import (
    CleanupResponse,
    ConfirmExtractionRequest,
    ExtractionStatsResponse,
    JobStatsOut,
    MissingField,
    ProcessJobsResponse,
    ReviewQueueItem,
    ReviewQueueResponse,
    SignUpOut,
    SkipExtractionRequest,
    VisionHealthResponse,
)
from app.services.ai.bet_slip.service import health_check
from app.services.extraction_jobs import get_job_stats
from app.services.extraction_worker import process_pending_jobs, run_stuck_job_sweep
from app.services.review_queue import (
    ReviewFilters,
    clamp_page,
    get_review_stats,
    list_for_review,
    missing_fields_of,
)
from app.services.signup_submission import get_signup
from app.services.transition_service import (
    ExtractionCorrections,
    ReviewTransitionError,
    confirm_extraction,
    skip_extraction,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_worker_session_factory() -> sessionmaker:
    return get_session_factory()


@router.get("/signups/extraction/review-queue", response_model=ReviewQueueResponse)
async def review_queue(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    missing_fields: Optional[MissingField] = Query(None),
    operator_id: Optional[int] = Query(None, gt=0),
    ambassador_id: Optional[uuid.UUID] = Query(None),
    min_confidence: Optional[float] = Query(None, ge=0, le=100),
    max_confidence: Optional[float] = Query(None, ge=0, le=100),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*REVIEWER_ROLES)),
):
    if min_confidence is not None and max_confidence is not None and min_confidence > max_confidence:
        raise HTTPException(400, error_detail("validation_error", "min_confidence must be <= max_confidence"))

    page, page_size = clamp_page(page, page_size)
    items, total = list_for_review(
        db,
        ReviewFilters(
            missing_fields=missing_fields,
            operator_id=operator_id,
            ambassador_id=ambassador_id,
            min_confidence=min_confidence,
            max_confidence=max_confidence,
        ),
        page=page,
        page_size=page_size,
    )
    return ReviewQueueResponse(
        items=[
            ReviewQueueItem(
                id=str(s.id),
                customer_name=s.customer_name,
                customer_email=s.customer_email,
                operator_id=s.operator_id,
                ambassador_id=str(s.ambassador_id),
                bet_slip_image_ref=s.bet_slip_image_ref,
                extraction_status=s.extraction_status,
                extraction_confidence=float(s.extraction_confidence or 0),
                bet_amount=s.bet_amount,
                team_bet_on=s.team_bet_on,
                odds=s.odds,
                missing_fields=missing_fields_of(s),
                submitted_at=s.submitted_at,
            )
            for s in items
        ],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


def _reviewable_signup(db: Session, signup_id: str):
    signup = get_signup(db, signup_id)
    if signup is None:
        raise HTTPException(404, error_detail("not_found", "Sign-up not found"))
    return signup


@router.post("/signups/{signup_id}/extraction/confirm", response_model=SignUpOut)
async def confirm_signup_extraction(
    signup_id: str,
    request: Request,
    payload: Optional[ConfirmExtractionRequest] = None,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*REVIEWER_ROLES)),
):
    payload = payload or ConfirmExtractionRequest()
    signup = _reviewable_signup(db, signup_id)
    try:
        signup = confirm_extraction(
            db,
            signup=signup,
            corrections=ExtractionCorrections(
                bet_amount=payload.bet_amount,
                team_bet_on=payload.team_bet_on,
                odds=payload.odds,
            ),
            actor=request_actor(request, current_user),
        )
    except ReviewTransitionError as exc:
        db.rollback()
        raise HTTPException(409, error_detail("invalid_transition", str(exc))) from exc
    db.commit()
    db.refresh(signup)
    return SignUpOut.model_validate(signup)


@router.post("/signups/{signup_id}/extraction/skip", response_model=SignUpOut)
async def skip_signup_extraction(
    signup_id: str,
    request: Request,
    payload: Optional[SkipExtractionRequest] = None,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*REVIEWER_ROLES)),
):
    payload = payload or SkipExtractionRequest()
    signup = _reviewable_signup(db, signup_id)
    try:
        signup = skip_extraction(
            db,
            signup=signup,
            reason=payload.reason,
            actor=request_actor(request, current_user),
        )
    except ReviewTransitionError as exc:
        db.rollback()
        raise HTTPException(409, error_detail("invalid_transition", str(exc))) from exc
    db.commit()
    db.refresh(signup)
    return SignUpOut.model_validate(signup)


@router.get("/signups/extraction/stats", response_model=ExtractionStatsResponse)
async def extraction_stats(
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*REVIEWER_ROLES)),
):
    return ExtractionStatsResponse(jobs=JobStatsOut(**get_job_stats(db)), **get_review_stats(db))


@router.post("/signups/extraction/process", response_model=ProcessJobsResponse)
async def process_extraction_jobs(
    limit: int = Query(10, ge=1, le=100),
    session_factory: sessionmaker = Depends(get_worker_session_factory),
    current_user: CurrentUser = Depends(require_roles(ADMIN)),
):
    summary = await process_pending_jobs(session_factory, limit=limit)
    logger.info("Manual extraction run by %s: %s", current_user.id, summary.as_dict())
    return ProcessJobsResponse(**summary.as_dict())


@router.post("/signups/extraction/cleanup", response_model=CleanupResponse)
async def cleanup_stuck_jobs(
    session_factory: sessionmaker = Depends(get_worker_session_factory),
    current_user: CurrentUser = Depends(require_roles(ADMIN)),
):
    return CleanupResponse(reset_count=run_stuck_job_sweep(session_factory))


@router.get("/signups/extraction/health", response_model=VisionHealthResponse)
async def vision_health(
    current_user: CurrentUser = Depends(require_roles(*REVIEWER_ROLES)),
):
    return VisionHealthResponse(**await health_check())
