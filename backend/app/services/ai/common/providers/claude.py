"""Anthropic / Claude provider (messages API with a base64 image block)."""

from __future__ import annotations

import base64
import logging
import time

from ..errors import ImageProcessingFailed
from .base import BaseProvider, ProviderResult, post_json, response_json

logger = logging.getLogger(__name__)


class ClaudeProvider(BaseProvider):
    name = "claude"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

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
        model = model or "claude-3-5-haiku-20241022"
        t0 = time.monotonic()

        text_part = prompt if not operator_hint else f"{prompt}\nSportsbook: {operator_hint}"
        resp = await post_json(
            "https://api.anthropic.com/v1/messages",
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            payload={
                "model": model,
                "max_tokens": max_tokens,
                "temperature": 0,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image",
                                "source": {
                                    "type": "base64",
                                    "media_type": content_type,
                                    "data": base64.b64encode(image_bytes).decode("ascii"),
                                },
                            },
                            {"type": "text", "text": text_part},
                        ],
                    }
                ],
            },
            timeout_seconds=timeout_seconds,
        )
        data = response_json(resp)

        elapsed = (time.monotonic() - t0) * 1000
        text = "".join(block.get("text", "") for block in data.get("content") or [] if isinstance(block, dict))
        if not text:
            raise ImageProcessingFailed("Claude response has no text content")
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
