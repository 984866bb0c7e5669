"""Mock provider: deterministic answers derived from the image bytes."""

from __future__ import annotations

import hashlib
import json
import time

from .base import BaseProvider, ProviderResult

_TEAMS = (
    "New York Yankees",
    "Los Angeles Lakers",
    "Kansas City Chiefs",
    "Boston Celtics",
    "Dallas Cowboys",
    "Golden State Warriors",
    "New England Patriots",
    "Miami Heat",
)
_ODDS = ("-110", "+150", "-200", "+250", "-150", "+300", "-125")
_AMOUNTS = (10, 20, 25, 50, 100, 200, 500)


class MockProvider(BaseProvider):
    name = "mock"

    async def analyze_image(
        self,
        image_bytes: bytes,
        *,
        content_type: str,
        prompt: str,
        model: str = "",
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
        operator_hint: str | None = None,
    ) -> ProviderResult:
        t0 = time.monotonic()
        digest = hashlib.sha256(image_bytes).digest()
        overall = 60 + digest[0] % 36
        payload = {
            "success": True,
            "data": {
                "bet_amount": {"value": _AMOUNTS[digest[1] % len(_AMOUNTS)], "confidence": overall - digest[4] % 15},
                "team_bet_on": {"value": _TEAMS[digest[2] % len(_TEAMS)], "confidence": overall - digest[5] % 10},
                "odds": {"value": _ODDS[digest[3] % len(_ODDS)], "confidence": overall - digest[6] % 20},
                "overall_confidence": overall,
                "image_quality": "good",
                "warnings": [],
            },
        }
        text = json.dumps(payload)
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-vision-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
