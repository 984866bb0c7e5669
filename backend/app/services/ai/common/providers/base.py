"""Abstract base for vision providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import ExtractionTimeout, ImageProcessingFailed, VisionServiceUnavailable


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class BaseProvider(abc.ABC):
    """Contract that every vision provider must implement."""

    name: str = "base"

    @abc.abstractmethod
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
        """Send the image and return the provider's JSON answer as ``raw_text``."""

    async def health_check(self, *, timeout_seconds: float = 5.0) -> bool:
        return True


async def post_json(
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout_seconds: float,
) -> httpx.Response:
    """POST and map transport/status failures onto the vision error taxonomy."""
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(url, headers=headers, json=payload)
    except httpx.TimeoutException as exc:
        raise ExtractionTimeout(f"Vision request timed out after {timeout_seconds:g}s") from exc
    except httpx.HTTPError as exc:
        raise VisionServiceUnavailable(f"Vision request failed: {exc.__class__.__name__}") from exc

    if resp.status_code >= 500:
        raise VisionServiceUnavailable(f"Vision service returned {resp.status_code}")
    if resp.status_code >= 400:
        raise ImageProcessingFailed(f"Vision service rejected image: {resp.status_code}")
    return resp


def response_json(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise ImageProcessingFailed("Vision service returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise ImageProcessingFailed("Vision service returned unexpected payload")
    return data
