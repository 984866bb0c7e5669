"""
Tests for the extraction job store and worker.

Covers:
  - Backoff schedule (5s / 25s / 125s)
  - Claim is a compare-and-swap: a second claim loses
  - Successful extraction writes fields, confidence and audit entries
    without consuming an attempt
  - Retryable failures reschedule until the attempt ceiling, then fail
  - Non-retryable and unexpected failures fail on the first attempt
  - Lost claims never overwrite newer state
  - Stuck-job sweep resets once and does not consume an attempt
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from app.models.signup import AuditLog, ExtractionJob, SignUp
from app.services.ai.bet_slip.contracts import BetSlipExtractionResult
from app.services.ai.common.errors import ExtractionTimeout, ImageProcessingFailed, VisionServiceUnavailable
from app.services.extraction_jobs import (
    AttemptFailure,
    claim_job,
    complete_job,
    compute_backoff,
    get_pending_jobs,
    record_attempt_failure,
    reset_stuck_jobs,
)
from app.services.extraction_worker import classify_failure, process_pending_jobs, run_stuck_job_sweep
from signup_fixtures import add_job, add_signup, make_session_factory, now_naive, png_bytes


@pytest.fixture
def session_factory():
    engine, factory = make_session_factory()
    yield factory
    engine.dispose()


def _queued(factory, **job_overrides):
    db = factory()
    signup = add_signup(
        db,
        bet_amount=None,
        team_bet_on=None,
        odds=None,
        extraction_confidence=None,
        extraction_status="pending",
    )
    job = add_job(db, signup, **job_overrides)
    db.commit()
    ids = (str(job.id), str(signup.id))
    db.close()
    return ids


def _state(factory, job_id, signup_id):
    db = factory()
    try:
        job = db.get(ExtractionJob, uuid.UUID(job_id))
        signup = db.get(SignUp, uuid.UUID(signup_id))
        actions = [
            row.action
            for row in db.query(AuditLog)
            .filter(AuditLog.entity_id == signup_id)
            .order_by(AuditLog.timestamp.asc())
            .all()
        ]
        return job, signup, actions
    finally:
        db.close()


def _make_due(factory, job_id):
    db = factory()
    db.query(ExtractionJob).filter(ExtractionJob.id == job_id).update(
        {ExtractionJob.next_attempt_at: now_naive() - timedelta(seconds=1)}
    )
    db.commit()
    db.close()


def _result(**overrides):
    values = {
        "bet_amount": Decimal("25.00"),
        "team_bet_on": "Dallas Cowboys",
        "odds": "-110",
        "confidence_score": 88.5,
        "raw_response": {"success": True},
        "provider": "mock",
        "model": "mock-vision-v1",
    }
    values.update(overrides)
    return BetSlipExtractionResult(**values)


def test_backoff_schedule():
    assert compute_backoff(1) == timedelta(seconds=5)
    assert compute_backoff(2) == timedelta(seconds=25)
    assert compute_backoff(3) == timedelta(seconds=125)
    assert compute_backoff(2, base_seconds=1, multiplier=2) == timedelta(seconds=2)


def test_classify_failure():
    assert classify_failure(VisionServiceUnavailable("down")) == AttemptFailure(
        "vision_service_unavailable", "down", True
    )
    assert classify_failure(ExtractionTimeout("slow")).retryable is True
    assert classify_failure(ImageProcessingFailed("blurry")).retryable is False
    unexpected = classify_failure(KeyError("x"))
    assert unexpected.code == "unexpected_error"
    assert unexpected.retryable is False


def test_second_claim_loses(session_factory):
    job_id, signup_id = _queued(session_factory)
    db = session_factory()
    try:
        token = claim_job(db, job_id)
        assert token is not None
        assert claim_job(db, job_id) is None
        db.commit()
    finally:
        db.close()

    job, signup, _ = _state(session_factory, job_id, signup_id)
    assert job.status == "processing"
    assert job.claim_token == token
    assert signup.extraction_status == "processing"


def test_jobs_not_yet_due_are_not_listed(session_factory):
    _queued(session_factory, next_attempt_at=now_naive() + timedelta(minutes=5))
    due_job, _ = _queued(session_factory)
    db = session_factory()
    try:
        assert [job.job_id for job in get_pending_jobs(db, limit=10)] == [due_job]
    finally:
        db.close()


def test_stale_token_cannot_complete(session_factory):
    job_id, signup_id = _queued(session_factory)
    db = session_factory()
    claim_job(db, job_id)
    db.commit()

    assert complete_job(db, job_id=job_id, claim_token="stale", result=_result()) is False
    assert record_attempt_failure(
        db, job_id=job_id, claim_token="stale", failure=AttemptFailure("x", "y", True)
    ) is None
    db.commit()
    db.close()

    job, signup, actions = _state(session_factory, job_id, signup_id)
    assert job.status == "processing"
    assert job.attempt_count == 0
    assert signup.bet_amount is None
    assert actions == []


async def test_successful_extraction_updates_signup(session_factory):
    job_id, signup_id = _queued(session_factory)

    with patch("app.services.ai.bet_slip.service.download_bet_slip", return_value=png_bytes()):
        summary = await process_pending_jobs(session_factory, limit=5)

    assert summary.as_dict() == {"processed": 1, "succeeded": 1, "retrying": 0, "failed": 0, "skipped": 0}

    job, signup, actions = _state(session_factory, job_id, signup_id)
    assert job.status == "completed"
    assert job.attempt_count == 0
    assert job.claim_token is None
    assert job.ai_response["success"] is True
    assert signup.extraction_status == "completed"
    assert signup.bet_amount is not None
    assert signup.team_bet_on
    assert signup.odds
    assert Decimal("0") <= signup.extraction_confidence <= Decimal("100")
    assert signup.review_status == "pending"
    assert "EXTRACTION_COMPLETED" in actions
    assert "AI_BET_SLIP_EXTRACT" in actions


async def test_success_after_a_failed_attempt_keeps_attempt_count(session_factory):
    job_id, signup_id = _queued(session_factory, attempt_count=1)

    with patch("app.services.ai.bet_slip.service.download_bet_slip", return_value=png_bytes()):
        summary = await process_pending_jobs(session_factory)

    assert summary.succeeded == 1
    job, signup, _ = _state(session_factory, job_id, signup_id)
    assert job.status == "completed"
    assert job.attempt_count == 1
    assert signup.extraction_status == "completed"


async def test_retryable_failure_reschedules_then_fails_at_ceiling(session_factory):
    job_id, signup_id = _queued(session_factory)
    failing = AsyncMock(side_effect=VisionServiceUnavailable("Vision service returned 503"))

    with patch("app.services.extraction_worker.extract_bet_slip", failing):
        before = now_naive()
        first = await process_pending_jobs(session_factory)
        assert first.retrying == 1

        job, signup, _ = _state(session_factory, job_id, signup_id)
        assert job.status == "pending"
        assert job.attempt_count == 1
        assert job.last_error.startswith("vision_service_unavailable")
        assert job.next_attempt_at >= before + timedelta(seconds=5)
        assert signup.extraction_status == "pending"

        # Not due yet: nothing is picked up.
        assert (await process_pending_jobs(session_factory)).processed == 0

        _make_due(session_factory, job_id)
        second = await process_pending_jobs(session_factory)
        assert second.retrying == 1
        job, _, _ = _state(session_factory, job_id, signup_id)
        assert job.attempt_count == 2
        assert job.next_attempt_at >= now_naive() + timedelta(seconds=20)

        _make_due(session_factory, job_id)
        third = await process_pending_jobs(session_factory)
        assert third.failed == 1

    assert failing.await_count == 3
    job, signup, actions = _state(session_factory, job_id, signup_id)
    assert job.status == "failed"
    assert job.attempt_count == 3
    assert signup.extraction_status == "failed"
    assert actions.count("EXTRACTION_ATTEMPT_FAILED") == 3
    assert actions.count("EXTRACTION_RETRY_SCHEDULED") == 2
    assert actions[-1] == "EXTRACTION_FAILED"

    _make_due(session_factory, job_id)
    assert (await process_pending_jobs(session_factory)).processed == 0


async def test_non_retryable_failure_fails_immediately(session_factory):
    job_id, signup_id = _queued(session_factory)
    failing = AsyncMock(side_effect=ImageProcessingFailed("Vision service rejected image: 400"))

    with patch("app.services.extraction_worker.extract_bet_slip", failing):
        summary = await process_pending_jobs(session_factory)

    assert summary.failed == 1
    job, signup, actions = _state(session_factory, job_id, signup_id)
    assert job.status == "failed"
    assert job.attempt_count == 1
    assert job.last_error.startswith("image_processing_failed")
    assert signup.extraction_status == "failed"
    assert "EXTRACTION_RETRY_SCHEDULED" not in actions


async def test_unexpected_error_is_not_retried(session_factory):
    job_id, signup_id = _queued(session_factory)
    failing = AsyncMock(side_effect=RuntimeError("boom"))

    with patch("app.services.extraction_worker.extract_bet_slip", failing):
        summary = await process_pending_jobs(session_factory)

    assert summary.failed == 1
    job, _, _ = _state(session_factory, job_id, signup_id)
    assert job.status == "failed"
    assert job.last_error.startswith("unexpected_error")


async def test_storage_outage_is_retried(session_factory):
    from app.core.storage import StorageError

    job_id, signup_id = _queued(session_factory)
    with patch("app.services.ai.bet_slip.service.download_bet_slip", side_effect=StorageError("down")):
        summary = await process_pending_jobs(session_factory)

    assert summary.retrying == 1
    job, _, _ = _state(session_factory, job_id, signup_id)
    assert job.status == "pending"


def test_stuck_job_sweep_resets_once_without_consuming_attempt(session_factory):
    job_id, signup_id = _queued(session_factory, attempt_count=1)
    db = session_factory()
    claim_job(db, job_id)
    db.query(ExtractionJob).filter(ExtractionJob.id == job_id).update(
        {ExtractionJob.updated_at: now_naive() - timedelta(minutes=10)}
    )
    db.commit()
    db.close()

    assert run_stuck_job_sweep(session_factory) == 1
    assert run_stuck_job_sweep(session_factory) == 0

    job, signup, actions = _state(session_factory, job_id, signup_id)
    assert job.status == "pending"
    assert job.claim_token is None
    assert job.attempt_count == 1
    assert signup.extraction_status == "pending"
    assert actions == ["EXTRACTION_JOB_RESET"]


def test_recent_processing_job_is_not_swept(session_factory):
    job_id, _ = _queued(session_factory)
    db = session_factory()
    claim_job(db, job_id)
    db.commit()
    assert reset_stuck_jobs(db, stale_after_seconds=300) == 0
    db.close()


async def test_swept_job_cannot_be_completed_by_old_worker(session_factory):
    job_id, signup_id = _queued(session_factory)
    db = session_factory()
    old_token = claim_job(db, job_id)
    db.query(ExtractionJob).filter(ExtractionJob.id == job_id).update(
        {ExtractionJob.updated_at: now_naive() - timedelta(minutes=10)}
    )
    db.commit()
    reset_stuck_jobs(db)
    db.commit()

    new_token = claim_job(db, job_id)
    db.commit()
    assert new_token and new_token != old_token

    assert complete_job(db, job_id=job_id, claim_token=old_token, result=_result()) is False
    assert complete_job(db, job_id=job_id, claim_token=new_token, result=_result()) is True
    db.commit()
    db.close()

    job, signup, _ = _state(session_factory, job_id, signup_id)
    assert job.status == "completed"
    assert signup.team_bet_on == "Dallas Cowboys"
    assert signup.extraction_confidence == Decimal("88.50")
