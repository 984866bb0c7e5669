"""AI audit: one ``audit_logs`` entry per successful model run."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.services.transition_service import create_audit_log

logger = logging.getLogger(__name__)

SCOPE_ACTIONS: dict[str, str] = {
    "bet_slip": "AI_BET_SLIP_EXTRACT",
}


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def log_ai_run(
    db: Session,
    *,
    scope: str,
    entity_type: str,
    entity_id: str,
    provider: str,
    model: str,
    latency_ms: float,
    input_fingerprint: str,
    response_payload: dict[str, Any],
    parsed_output: dict[str, Any] | None,
    extra_meta: dict[str, Any] | None = None,
) -> None:
    """Record a model run against the entity it was run for.

    The raw response is only stored when ``AI_DEBUG_STORE_RAW=true``; otherwise
    only its hash is kept.
    """
    settings = get_settings()
    response_text = json.dumps(response_payload, sort_keys=True, default=str)

    metadata: dict[str, Any] = {
        "scope": scope,
        "provider": provider,
        "model": model,
        "latency_ms": latency_ms,
        "input_hash": input_fingerprint,
        "response_hash": _sha256(response_text),
    }
    if settings.ai_debug_store_raw:
        metadata["response_raw"] = response_payload
    if extra_meta:
        metadata.update(extra_meta)

    create_audit_log(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        action=SCOPE_ACTIONS.get(scope, "AI_RUN"),
        old_value=None,
        new_value=parsed_output,
        actor_type="SYSTEM",
        actor_id=None,
        ip_address=None,
        user_agent=None,
        metadata=metadata,
    )
