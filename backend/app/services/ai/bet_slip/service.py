"""Bet slip extraction: one vision call for one stored image.

The image is fetched from object storage by reference, sent to the configured
provider, and the provider's JSON answer is normalized into a
``BetSlipExtractionResult`` with a penalized overall confidence.

Failures are raised as the vision error taxonomy; callers decide whether the
attempt is retried.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from app.core.storage import StorageError, download_bet_slip
from app.services.ai.common import router as ai_router
from app.services.ai.common.errors import ExtractionTimeout, ImageProcessingFailed, VisionServiceUnavailable
from app.services.ai.common.json_tools import extract_json_object

from .contracts import (
    MAX_ODDS_LENGTH,
    MAX_TEAM_LENGTH,
    MISSING_FIELD_PENALTIES,
    MISSING_FIELD_WARNINGS,
    BetSlipExtractionResult,
    FieldConfidence,
)

logger = logging.getLogger(__name__)

SCOPE = "bet_slip"

BET_SLIP_PROMPT = (
    "You read photos of sportsbook bet slips. Return ONLY valid JSON, no other text.\n\n"
    'Schema: {"success": true, "data": {'
    '"bet_amount": {"value": number|null, "confidence": 0-100}, '
    '"team_bet_on": {"value": string|null, "confidence": 0-100}, '
    '"odds": {"value": string|null, "confidence": 0-100}, '
    '"overall_confidence": 0-100, "image_quality": "good|fair|poor", "warnings": [string]}}\n'
    "bet_amount is the stake in dollars. odds keep their printed format (e.g. -110, +150, 2.5).\n"
    'If the image is not a bet slip, return {"success": false, "error": {"code": "not_a_bet_slip", "message": "..."}}.'
)

_CONTENT_TYPE_BY_EXT = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
_AMOUNT_CLEAN_RE = re.compile(r"[^0-9.\-]")


def _guess_content_type(image_ref: str) -> str:
    for ext, content_type in _CONTENT_TYPE_BY_EXT.items():
        if image_ref.lower().endswith(ext):
            return content_type
    return "image/jpeg"


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _clamp_score(value: float) -> float:
    return round(max(0.0, min(100.0, value)), 2)


def _field(data: dict[str, Any], key: str) -> tuple[Any, float]:
    raw = data.get(key)
    if isinstance(raw, dict):
        return raw.get("value"), _to_float(raw.get("confidence"))
    return raw, 0.0


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    text = _AMOUNT_CLEAN_RE.sub("", str(value))
    if not text:
        return None
    try:
        amount = Decimal(text).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None
    return amount if amount > 0 else None


def _parse_text(value: Any, max_length: int) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text[:max_length] or None


def normalize_response(payload: dict[str, Any]) -> BetSlipExtractionResult:
    """Apply the confidence policy to a provider payload.

    Accepts ``{"success": ..., "data": {...}}`` or the bare ``data`` object.
    """
    if "success" in payload or "data" in payload:
        if not payload.get("success", True) or not isinstance(payload.get("data"), dict):
            error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
            raise ImageProcessingFailed(error.get("message") or "Vision service could not read the bet slip")
        data = payload["data"]
    else:
        data = payload

    amount_value, amount_conf = _field(data, "bet_amount")
    team_value, team_conf = _field(data, "team_bet_on")
    odds_value, odds_conf = _field(data, "odds")

    values = {
        "bet_amount": _parse_amount(amount_value),
        "team_bet_on": _parse_text(team_value, MAX_TEAM_LENGTH),
        "odds": _parse_text(odds_value, MAX_ODDS_LENGTH),
    }

    warnings = [str(item) for item in data.get("warnings") or [] if item]
    score = _to_float(data.get("overall_confidence"))
    for name, multiplier in MISSING_FIELD_PENALTIES.items():
        if values[name] is None:
            score *= multiplier
            warnings.append(MISSING_FIELD_WARNINGS[name])

    return BetSlipExtractionResult(
        bet_amount=values["bet_amount"],
        team_bet_on=values["team_bet_on"],
        odds=values["odds"],
        confidence_score=_clamp_score(score),
        field_confidence=FieldConfidence(
            bet_amount=_clamp_score(amount_conf),
            team_bet_on=_clamp_score(team_conf),
            odds=_clamp_score(odds_conf),
        ),
        warnings=warnings,
        raw_response=payload,
    )


async def _fetch_image(image_ref: str) -> bytes:
    try:
        return await asyncio.to_thread(download_bet_slip, image_ref)
    except StorageError as exc:
        raise VisionServiceUnavailable(f"Could not fetch bet slip image: {exc}") from exc


async def extract_bet_slip(
    image_ref: str,
    *,
    content_type: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    operator_hint: Optional[str] = None,
) -> BetSlipExtractionResult:
    config = ai_router.resolve(SCOPE)
    timeout = timeout_seconds or config.timeout_seconds

    image_bytes = await _fetch_image(image_ref)
    image_sha256 = hashlib.sha256(image_bytes).hexdigest()

    t0 = time.monotonic()
    try:
        provider_result = await asyncio.wait_for(
            config.provider.analyze_image(
                image_bytes,
                content_type=content_type or _guess_content_type(image_ref),
                prompt=BET_SLIP_PROMPT,
                model=config.model,
                max_tokens=config.max_tokens,
                timeout_seconds=timeout,
                operator_hint=operator_hint,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise ExtractionTimeout(f"Extraction timed out after {timeout:g}s") from exc
    latency_ms = round((time.monotonic() - t0) * 1000, 2)

    parsed = extract_json_object(provider_result.raw_text)
    if parsed is None:
        raise ImageProcessingFailed("Vision response did not contain a JSON object")

    result = normalize_response(parsed)
    result.provider = provider_result.provider
    result.model = provider_result.model
    result.latency_ms = latency_ms
    result.image_sha256 = image_sha256

    logger.info(
        "Bet slip extracted: ref=%s provider=%s confidence=%.2f missing=%s latency_ms=%.0f",
        image_ref,
        result.provider,
        result.confidence_score,
        result.missing_fields,
        latency_ms,
    )
    return result


async def health_check() -> dict[str, Any]:
    """Check the configured provider. Never raises."""
    provider_name = "unknown"
    t0 = time.monotonic()
    try:
        config = ai_router.resolve(SCOPE)
        provider_name = config.provider.name
        available = await config.provider.health_check(timeout_seconds=5.0)
    except Exception:
        logger.warning("Vision health check raised", exc_info=True)
        return {"available": False, "provider": provider_name, "latency_ms": None}
    return {
        "available": bool(available),
        "provider": provider_name,
        "latency_ms": round((time.monotonic() - t0) * 1000, 2),
    }
