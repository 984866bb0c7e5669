import logging
from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from app.core.auth import ALLOWED_ROLES, REVIEWER_ROLES, SUBMITTER_ROLES, CurrentUser, require_roles
from app.core.dependencies import get_db
from app.models.signup import AuditLog, SignUp
from app.schemas.signup import (
    AuditEntryOut,
    AuditLogResponse,
    EventSignUpSubmission,
    SignUpOut,
    SoloSignUpSubmission,
    SourceType,
    SubmissionMeta,
    SubmissionResponse,
)
from app.services.signup_submission import (
    SubmissionError,
    get_audit_log,
    get_signup,
    get_signup_by_idempotency_key,
    submit_signup,
)
from app.services.transition_service import Actor
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import allow_signup_submission, get_client_ip, get_user_agent

logger = logging.getLogger(__name__)

router = APIRouter()

SUBMISSION_ERROR_STATUS = {
    "validation_error": 400,
    "duplicate_detected": 409,
    "image_upload_failed": 422,
    "cpa_lookup_failed": 422,
}


def error_detail(code: str, message: str, details: dict | None = None) -> dict:
    return {"code": code, "message": message, "details": details or {}}


def request_actor(request: Request, user: CurrentUser) -> Actor:
    return Actor(
        actor_type=user.role,
        actor_id=user.id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )


def _submit(
    *,
    payload: Union[EventSignUpSubmission, SoloSignUpSubmission],
    source_type: SourceType,
    request: Request,
    response: Response,
    db: Session,
    current_user: CurrentUser,
) -> SubmissionResponse:
    # Replays of a stored key do not count against the submission budget.
    is_replay = get_signup_by_idempotency_key(db, payload.idempotency_key.strip()) is not None
    if not is_replay and not allow_signup_submission(current_user.id):
        alert_tracker.record("SIGNUP_RATE_LIMITED", {"ambassador_id": current_user.id})
        raise HTTPException(429, error_detail("rate_limited", "Too many sign-up submissions"))

    try:
        outcome = submit_signup(
            db,
            submission=payload,
            source_type=source_type,
            actor=request_actor(request, current_user),
        )
    except SubmissionError as exc:
        db.rollback()
        raise HTTPException(
            SUBMISSION_ERROR_STATUS.get(exc.code, 400),
            error_detail(exc.code, exc.message, exc.details),
        ) from exc

    if outcome.is_idempotent_return:
        response.status_code = 200
    else:
        db.commit()
        db.refresh(outcome.signup)

    return SubmissionResponse(
        data=SignUpOut.model_validate(outcome.signup),
        meta=SubmissionMeta(is_idempotent_return=outcome.is_idempotent_return),
    )


@router.post("/signups/event", response_model=SubmissionResponse, status_code=201)
async def submit_event_signup(
    payload: EventSignUpSubmission,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*SUBMITTER_ROLES)),
):
    return _submit(
        payload=payload,
        source_type=SourceType.EVENT,
        request=request,
        response=response,
        db=db,
        current_user=current_user,
    )


@router.post("/signups/solo", response_model=SubmissionResponse, status_code=201)
async def submit_solo_signup(
    payload: SoloSignUpSubmission,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*SUBMITTER_ROLES)),
):
    return _submit(
        payload=payload,
        source_type=SourceType.SOLO,
        request=request,
        response=response,
        db=db,
        current_user=current_user,
    )


def _load_signup(db: Session, signup_id: str) -> SignUp:
    signup = get_signup(db, signup_id)
    if signup is None:
        raise HTTPException(404, error_detail("not_found", "Sign-up not found"))
    return signup


@router.get("/signups/{signup_id}", response_model=SignUpOut)
async def read_signup(
    signup_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ALLOWED_ROLES)),
):
    signup = _load_signup(db, signup_id)
    if not current_user.can_view_signup(signup.ambassador_id):
        raise HTTPException(403, "Forbidden")
    return SignUpOut.model_validate(signup)


def _audit_to_out(log: AuditLog) -> AuditEntryOut:
    return AuditEntryOut(
        action=log.action,
        actor_type=log.actor_type,
        actor_id=str(log.actor_id) if log.actor_id else None,
        old_value=log.old_value,
        new_value=log.new_value,
        metadata=log.audit_meta,
        timestamp=log.timestamp,
    )


@router.get("/signups/{signup_id}/audit", response_model=AuditLogResponse)
async def read_signup_audit(
    signup_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*REVIEWER_ROLES)),
):
    signup = _load_signup(db, signup_id)
    return AuditLogResponse(
        signup_id=str(signup.id),
        items=[_audit_to_out(log) for log in get_audit_log(db, signup.id)],
    )
