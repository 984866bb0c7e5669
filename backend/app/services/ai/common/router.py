"""AI Router: resolves provider, model and timeout for a scope from settings."""

from __future__ import annotations

from dataclasses import dataclass

from app.core.config import get_settings

from .providers import BaseProvider, get_provider


@dataclass(frozen=True)
class ResolvedConfig:
    provider: BaseProvider
    model: str
    max_tokens: int
    timeout_seconds: float


# scope -> (provider setting, model setting, timeout setting)
_SCOPE_SETTINGS = {
    "bet_slip": ("ai_vision_provider", "ai_vision_model", "ai_vision_timeout_seconds"),
}


def resolve(scope: str) -> ResolvedConfig:
    if scope not in _SCOPE_SETTINGS:
        raise ValueError(f"Unknown AI scope: {scope}")
    settings = get_settings()
    provider_attr, model_attr, timeout_attr = _SCOPE_SETTINGS[scope]

    provider_name = (getattr(settings, provider_attr) or "mock").lower().strip()
    timeout = float(getattr(settings, timeout_attr) or 30.0)

    return ResolvedConfig(
        provider=get_provider(provider_name),
        model=(getattr(settings, model_attr) or "").strip(),
        max_tokens=1024,
        timeout_seconds=max(1.0, timeout),
    )
