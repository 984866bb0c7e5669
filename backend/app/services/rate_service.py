import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models.signup import CommissionRate

logger = logging.getLogger(__name__)


class RateNotFoundError(Exception):
    pass


def _active_rate(db: Session, *, operator_id: int, state_code: Optional[str], at: datetime) -> Optional[Decimal]:
    state_clause = CommissionRate.state_code.is_(None) if state_code is None else CommissionRate.state_code == state_code
    return db.execute(
        select(CommissionRate.cpa_amount)
        .where(
            CommissionRate.operator_id == operator_id,
            state_clause,
            CommissionRate.is_active.is_(True),
            CommissionRate.effective_from <= at,
            or_(CommissionRate.effective_until.is_(None), CommissionRate.effective_until > at),
        )
        .order_by(CommissionRate.effective_from.desc())
        .limit(1)
    ).scalar_one_or_none()


def resolve_rate(db: Session, *, operator_id: int, state_code: Optional[str], at: datetime) -> Decimal:
    """Current CPA for an operator: state-specific rate first, then the operator default."""
    if state_code:
        amount = _active_rate(db, operator_id=operator_id, state_code=state_code.upper(), at=at)
        if amount is not None:
            return Decimal(amount)
    amount = _active_rate(db, operator_id=operator_id, state_code=None, at=at)
    if amount is None:
        logger.warning("No active CPA rate: operator=%s state=%s", operator_id, state_code)
        raise RateNotFoundError(f"No active CPA rate for operator {operator_id}")
    return Decimal(amount)
