import os
import unittest
import uuid
from datetime import timedelta
from unittest.mock import patch

from fastapi.testclient import TestClient

from app.api.v1.extraction import get_worker_session_factory
from app.core.auth import CurrentUser, get_current_user
from app.core.config import get_settings
from app.core.dependencies import get_db
from app.main import app
from app.models.signup import ExtractionJob, SignUp
from signup_fixtures import add_job, add_signup, make_session_factory, now_naive, png_bytes


class ExtractionOpsApiTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="ADMIN")

        def override_get_current_user():
            return self.current_user

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = override_get_current_user
        app.dependency_overrides[get_worker_session_factory] = lambda: self.SessionLocal
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()
        self.engine.dispose()

    def _queue(self, **job_overrides):
        db = self.SessionLocal()
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
        ids = (job.id, signup.id)
        db.close()
        return ids

    def test_manual_process_run(self):
        job_id, signup_id = self._queue()
        with patch("app.services.ai.bet_slip.service.download_bet_slip", return_value=png_bytes()):
            resp = self.client.post("/api/v1/signups/extraction/process", params={"limit": 5})
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json(), {"processed": 1, "succeeded": 1, "retrying": 0, "failed": 0, "skipped": 0})

        db = self.SessionLocal()
        self.assertEqual(db.get(ExtractionJob, job_id).status, "completed")
        self.assertEqual(db.get(SignUp, signup_id).extraction_status, "completed")
        db.close()

    def test_process_with_nothing_due(self):
        resp = self.client.post("/api/v1/signups/extraction/process")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["processed"], 0)

    def test_process_is_admin_only(self):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="MANAGER")
        self.assertEqual(self.client.post("/api/v1/signups/extraction/process").status_code, 403)
        self.assertEqual(self.client.post("/api/v1/signups/extraction/cleanup").status_code, 403)

    def test_cleanup_resets_stuck_jobs(self):
        job_id, _ = self._queue(status="processing", claim_token=str(uuid.uuid4()))
        db = self.SessionLocal()
        db.query(ExtractionJob).filter(ExtractionJob.id == job_id).update(
            {ExtractionJob.updated_at: now_naive() - timedelta(minutes=30)}
        )
        db.commit()
        db.close()

        resp = self.client.post("/api/v1/signups/extraction/cleanup")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"reset_count": 1})
        self.assertEqual(self.client.post("/api/v1/signups/extraction/cleanup").json(), {"reset_count": 0})

    def test_vision_health(self):
        self.current_user = CurrentUser(id=str(uuid.uuid4()), role="MANAGER")
        resp = self.client.get("/api/v1/signups/extraction/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["available"])
        self.assertEqual(body["provider"], "mock")


class AppShellTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()
        app.dependency_overrides.clear()

    def test_health_and_security_headers(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})
        self.assertEqual(resp.headers["X-Content-Type-Options"], "nosniff")
        self.assertEqual(resp.headers["X-Frame-Options"], "DENY")

    def test_missing_token_is_unauthorized(self):
        resp = self.client.get("/api/v1/signups/extraction/review-queue")
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json(), {"detail": "Missing bearer token"})

    def test_api_rate_limit(self):
        with patch.dict(os.environ, {"RATE_LIMIT_API_ENABLED": "true", "RATE_LIMIT_API_PER_MIN": "2"}):
            get_settings.cache_clear()
            codes = [self.client.get("/api/v1/signups/extraction/review-queue").status_code for _ in range(3)]
        self.assertEqual(codes, [401, 401, 429])
        # Non-API routes are not limited.
        self.assertEqual(self.client.get("/health").status_code, 200)


if __name__ == "__main__":
    unittest.main()
