"""Contracts for bet slip extraction."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

# Multiplier applied to the overall confidence for each missing field.
MISSING_FIELD_PENALTIES = {
    "bet_amount": 0.7,
    "team_bet_on": 0.8,
    "odds": 0.9,
}

MISSING_FIELD_WARNINGS = {
    "bet_amount": "bet amount not detected",
    "team_bet_on": "team/selection not detected",
    "odds": "odds not detected",
}

MAX_TEAM_LENGTH = 255
MAX_ODDS_LENGTH = 50


@dataclass(frozen=True)
class FieldConfidence:
    bet_amount: float = 0.0
    team_bet_on: float = 0.0
    odds: float = 0.0


@dataclass
class BetSlipExtractionResult:
    bet_amount: Optional[Decimal]
    team_bet_on: Optional[str]
    odds: Optional[str]
    confidence_score: float  # 0-100, two decimals
    field_confidence: FieldConfidence = field(default_factory=FieldConfidence)
    warnings: list[str] = field(default_factory=list)
    raw_response: dict[str, Any] = field(default_factory=dict)
    provider: str = ""
    model: str = ""
    latency_ms: float = 0.0
    image_sha256: str = ""

    @property
    def missing_fields(self) -> list[str]:
        return [name for name in MISSING_FIELD_PENALTIES if getattr(self, name) is None]

    def extracted_fields(self) -> dict[str, Any]:
        return {
            "bet_amount": self.bet_amount,
            "team_bet_on": self.team_bet_on,
            "odds": self.odds,
            "confidence_score": self.confidence_score,
        }
