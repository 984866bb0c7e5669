"""Generic bet slip vision endpoint (``AI_VISION_API_URL``)."""

from __future__ import annotations

import base64
import logging
import time

import httpx

from .base import BaseProvider, ProviderResult, post_json

logger = logging.getLogger(__name__)

EXTRACTION_FIELDS = ["bet_amount", "team_bet_on", "odds"]


class HttpVisionProvider(BaseProvider):
    name = "http"

    def __init__(self, api_url: str, api_key: str = "") -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

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
        payload = {
            "image_base64": base64.b64encode(image_bytes).decode("ascii"),
            "content_type": content_type,
            "enhance_image": True,
            "operator_hint": operator_hint,
            "extraction_fields": EXTRACTION_FIELDS,
        }
        if model:
            payload["model"] = model

        resp = await post_json(
            f"{self._api_url}/extract/bet-slip",
            headers=self._headers(),
            payload=payload,
            timeout_seconds=timeout_seconds,
        )
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=resp.text,
            model=model or "http-vision",
            provider=self.name,
            latency_ms=round(elapsed, 2),
        )

    async def health_check(self, *, timeout_seconds: float = 5.0) -> bool:
        try:
            async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                resp = await client.get(f"{self._api_url}/health", headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("Vision health check failed: %s", exc.__class__.__name__)
            return False
        return resp.is_success
