"""OpenAI provider (chat completions with an image content part)."""

from __future__ import annotations

import base64
import logging
import time

from ..errors import ImageProcessingFailed
from .base import BaseProvider, ProviderResult, post_json, response_json

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    name = "openai"

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
        model = model or "gpt-4o-mini"
        t0 = time.monotonic()

        data_url = f"data:{content_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        text_part = prompt if not operator_hint else f"{prompt}\nSportsbook: {operator_hint}"

        resp = await post_json(
            "https://api.openai.com/v1/chat/completions",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            payload={
                "model": model,
                "max_tokens": max_tokens,
                "temperature": 0,
                "response_format": {"type": "json_object"},
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": text_part},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
            },
            timeout_seconds=timeout_seconds,
        )
        data = response_json(resp)

        elapsed = (time.monotonic() - t0) * 1000
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ImageProcessingFailed("OpenAI response has no message content") from exc
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text or "",
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
