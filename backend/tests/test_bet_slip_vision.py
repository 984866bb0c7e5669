"""Tests for bet slip vision extraction.

Covers:
- Common layer: json_tools, provider factory fallbacks
- Confidence policy: missing-field penalties, warnings, clamping, value parsing
- HTTP provider: request shape and failure taxonomy (5xx, 4xx, timeout, transport)
- extract_bet_slip: end-to-end normalization, timeout, unparseable output
- health_check never raises
"""

import asyncio
import hashlib
import json
import os
import unittest
from decimal import Decimal
from unittest.mock import patch

import httpx

from app.services.ai.bet_slip.service import extract_bet_slip, health_check, normalize_response
from app.services.ai.common.errors import ExtractionTimeout, ImageProcessingFailed, VisionServiceUnavailable
from app.services.ai.common.json_tools import extract_json_object
from app.services.ai.common.providers import MockProvider, get_provider
from app.services.ai.common.providers.base import BaseProvider, ProviderResult
from app.services.ai.common.providers.http import HttpVisionProvider
from app.services.ai.common.router import ResolvedConfig
from signup_fixtures import IMAGE_REF, png_bytes

_RealAsyncClient = httpx.AsyncClient


def _mock_transport(handler):
    """Patch httpx.AsyncClient so every client created by the code under test uses ``handler``."""

    def _factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return _RealAsyncClient(*args, **kwargs)

    return patch("httpx.AsyncClient", _factory)


def _payload(amount=25, team="Kansas City Chiefs", odds="-110", overall=90):
    return {
        "success": True,
        "data": {
            "bet_amount": {"value": amount, "confidence": 95},
            "team_bet_on": {"value": team, "confidence": 90},
            "odds": {"value": odds, "confidence": 85},
            "overall_confidence": overall,
            "image_quality": "good",
            "warnings": [],
        },
    }


class JsonToolsTests(unittest.TestCase):
    def test_plain_object(self):
        self.assertEqual(extract_json_object('{"a": 1}'), {"a": 1})

    def test_fenced_object(self):
        self.assertEqual(extract_json_object('```json\n{"a": {"b": 2}}\n```'), {"a": {"b": 2}})

    def test_object_inside_prose(self):
        text = 'Here you go: {"team": "A {B}", "odds": "+150"} hope that helps'
        self.assertEqual(extract_json_object(text), {"team": "A {B}", "odds": "+150"})

    def test_no_object(self):
        self.assertIsNone(extract_json_object(""))
        self.assertIsNone(extract_json_object("[1, 2, 3]"))
        self.assertIsNone(extract_json_object("no json here"))


class ProviderFactoryTests(unittest.TestCase):
    def test_mock_by_default(self):
        self.assertIsInstance(get_provider("mock"), MockProvider)

    def test_not_allowlisted_falls_back_to_mock(self):
        with patch.dict(os.environ, {"AI_ALLOWED_PROVIDERS": "mock"}):
            from app.core.config import get_settings

            get_settings.cache_clear()
            self.assertIsInstance(get_provider("http"), MockProvider)

    def test_http_without_url_falls_back_to_mock(self):
        self.assertIsInstance(get_provider("http"), MockProvider)

    def test_http_with_url(self):
        with patch.dict(os.environ, {"AI_VISION_API_URL": "http://vision.test"}):
            from app.core.config import get_settings

            get_settings.cache_clear()
            self.assertIsInstance(get_provider("http"), HttpVisionProvider)

    def test_claude_without_key_falls_back_to_mock(self):
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": ""}):
            from app.core.config import get_settings

            get_settings.cache_clear()
            self.assertIsInstance(get_provider("claude"), MockProvider)

    def test_unknown_provider_falls_back_to_mock(self):
        self.assertIsInstance(get_provider("nonexistent"), MockProvider)

    def test_mock_is_deterministic(self):
        provider = MockProvider()
        first = asyncio.run(provider.analyze_image(b"slip", content_type="image/png", prompt="p"))
        second = asyncio.run(provider.analyze_image(b"slip", content_type="image/png", prompt="p"))
        self.assertEqual(first.raw_text, second.raw_text)
        data = json.loads(first.raw_text)["data"]
        self.assertTrue(60 <= data["overall_confidence"] <= 95)


class ConfidencePolicyTests(unittest.TestCase):
    def test_all_fields_present(self):
        result = normalize_response(_payload())
        self.assertEqual(result.bet_amount, Decimal("25.00"))
        self.assertEqual(result.team_bet_on, "Kansas City Chiefs")
        self.assertEqual(result.odds, "-110")
        self.assertEqual(result.confidence_score, 90.0)
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.missing_fields, [])
        self.assertEqual(result.field_confidence.bet_amount, 95.0)

    def test_missing_odds(self):
        result = normalize_response(_payload(odds=None))
        self.assertEqual(result.confidence_score, 81.0)
        self.assertEqual(result.warnings, ["odds not detected"])
        self.assertEqual(result.missing_fields, ["odds"])

    def test_missing_amount_and_team(self):
        result = normalize_response(_payload(amount=None, team=None))
        self.assertEqual(result.confidence_score, 50.4)
        self.assertEqual(result.warnings, ["bet amount not detected", "team/selection not detected"])

    def test_all_missing(self):
        result = normalize_response(_payload(amount=None, team=None, odds=None))
        self.assertEqual(result.confidence_score, 45.36)
        self.assertEqual(result.missing_fields, ["bet_amount", "team_bet_on", "odds"])

    def test_score_is_clamped(self):
        self.assertEqual(normalize_response(_payload(overall=150)).confidence_score, 100.0)
        self.assertEqual(normalize_response(_payload(overall=-5)).confidence_score, 0.0)
        self.assertEqual(normalize_response(_payload(overall="n/a")).confidence_score, 0.0)

    def test_provider_warnings_are_kept(self):
        payload = _payload(odds="")
        payload["data"]["warnings"] = ["glare on lower half"]
        result = normalize_response(payload)
        self.assertEqual(result.warnings, ["glare on lower half", "odds not detected"])

    def test_amount_parsing(self):
        self.assertEqual(normalize_response(_payload(amount="$1,250.50")).bet_amount, Decimal("1250.50"))
        self.assertIsNone(normalize_response(_payload(amount=0)).bet_amount)
        self.assertIsNone(normalize_response(_payload(amount="abc")).bet_amount)

    def test_bare_data_object(self):
        result = normalize_response({"bet_amount": 10, "team_bet_on": "Miami Heat", "odds": "+300", "overall_confidence": 70})
        self.assertEqual(result.bet_amount, Decimal("10.00"))
        self.assertEqual(result.confidence_score, 70.0)

    def test_unsuccessful_payload(self):
        with self.assertRaises(ImageProcessingFailed) as ctx:
            normalize_response({"success": False, "error": {"code": "not_a_bet_slip", "message": "Not a bet slip"}})
        self.assertEqual(str(ctx.exception), "Not a bet slip")


class HttpProviderTests(unittest.TestCase):
    def _analyze(self, handler):
        provider = HttpVisionProvider(api_url="http://vision.test/", api_key="secret")
        with _mock_transport(handler):
            return asyncio.run(
                provider.analyze_image(b"img", content_type="image/png", prompt="p", operator_hint="3")
            )

    def test_success_request_shape(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_payload())

        result = self._analyze(handler)
        self.assertEqual(seen["url"], "http://vision.test/extract/bet-slip")
        self.assertEqual(seen["auth"], "Bearer secret")
        self.assertEqual(seen["body"]["image_base64"], "aW1n")
        self.assertEqual(seen["body"]["operator_hint"], "3")
        self.assertEqual(seen["body"]["extraction_fields"], ["bet_amount", "team_bet_on", "odds"])
        self.assertEqual(json.loads(result.raw_text)["data"]["overall_confidence"], 90)
        self.assertEqual(result.provider, "http")

    def test_server_error_is_unavailable(self):
        with self.assertRaises(VisionServiceUnavailable):
            self._analyze(lambda request: httpx.Response(503))

    def test_client_error_is_processing_failure(self):
        with self.assertRaises(ImageProcessingFailed):
            self._analyze(lambda request: httpx.Response(400, json={"error": "bad image"}))

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with self.assertRaises(ExtractionTimeout):
            self._analyze(handler)

    def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(VisionServiceUnavailable):
            self._analyze(handler)

    def test_health_check(self):
        provider = HttpVisionProvider(api_url="http://vision.test")
        with _mock_transport(lambda request: httpx.Response(200, json={"status": "ok"})):
            self.assertTrue(asyncio.run(provider.health_check()))
        with _mock_transport(lambda request: httpx.Response(500)):
            self.assertFalse(asyncio.run(provider.health_check()))


class _SlowProvider(BaseProvider):
    name = "slow"

    async def analyze_image(self, image_bytes, **kwargs):
        await asyncio.sleep(5)
        return ProviderResult(raw_text="{}", model="", provider=self.name)


class _TextProvider(BaseProvider):
    name = "text"

    def __init__(self, text):
        self.text = text

    async def analyze_image(self, image_bytes, **kwargs):
        return ProviderResult(raw_text=self.text, model="text-v1", provider=self.name)


class _BrokenProvider(BaseProvider):
    name = "broken"

    async def analyze_image(self, image_bytes, **kwargs):
        raise AssertionError("not used")

    async def health_check(self, *, timeout_seconds=5.0):
        raise RuntimeError("health check exploded")


def _resolved(provider, timeout=30.0):
    return ResolvedConfig(provider=provider, model="", max_tokens=1024, timeout_seconds=timeout)


class ExtractBetSlipTests(unittest.TestCase):
    def setUp(self):
        self.image = png_bytes()
        patcher = patch("app.services.ai.bet_slip.service.download_bet_slip", return_value=self.image)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_fenced_provider_output(self):
        text = "```json\n" + json.dumps(_payload(odds=None)) + "\n```"
        with patch("app.services.ai.bet_slip.service.ai_router.resolve", return_value=_resolved(_TextProvider(text))):
            result = asyncio.run(extract_bet_slip(IMAGE_REF))
        self.assertEqual(result.confidence_score, 81.0)
        self.assertEqual(result.provider, "text")
        self.assertEqual(result.model, "text-v1")
        self.assertEqual(result.image_sha256, hashlib.sha256(self.image).hexdigest())

    def test_unparseable_output(self):
        with patch("app.services.ai.bet_slip.service.ai_router.resolve", return_value=_resolved(_TextProvider("sorry"))):
            with self.assertRaises(ImageProcessingFailed):
                asyncio.run(extract_bet_slip(IMAGE_REF))

    def test_timeout(self):
        with patch("app.services.ai.bet_slip.service.ai_router.resolve", return_value=_resolved(_SlowProvider())):
            with self.assertRaises(ExtractionTimeout):
                asyncio.run(extract_bet_slip(IMAGE_REF, timeout_seconds=0.05))

    def test_http_provider_end_to_end(self):
        env = {"AI_VISION_PROVIDER": "http", "AI_VISION_API_URL": "http://vision.test"}
        with patch.dict(os.environ, env), _mock_transport(lambda request: httpx.Response(200, json=_payload(team=None))):
            from app.core.config import get_settings

            get_settings.cache_clear()
            result = asyncio.run(extract_bet_slip(IMAGE_REF))
        self.assertEqual(result.provider, "http")
        self.assertIsNone(result.team_bet_on)
        self.assertEqual(result.confidence_score, 72.0)


class HealthCheckTests(unittest.TestCase):
    def test_mock_is_available(self):
        status = asyncio.run(health_check())
        self.assertTrue(status["available"])
        self.assertEqual(status["provider"], "mock")
        self.assertIsNotNone(status["latency_ms"])

    def test_health_check_error_reports_unavailable(self):
        with patch("app.services.ai.bet_slip.service.ai_router.resolve", return_value=_resolved(_BrokenProvider())):
            status = asyncio.run(health_check())
        self.assertEqual(status, {"available": False, "provider": "broken", "latency_ms": None})


if __name__ == "__main__":
    unittest.main()
