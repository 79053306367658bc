"""Incentive rule selection and bonus math.

Bonuses accrue per whole unit of ``time_saved_threshold`` minutes saved:

    units = floor(time_saved / threshold)
    bonus = units * bonus_per_unit * multiplier

Saving 29 minutes against a 30 minute threshold earns nothing. Units are
computed on integer minutes; only the currency result is rounded (2 dp).
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import logging

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from servicebay.models.incentive_rule import IncentiveRule

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class BonusResult:
    time_saved: int
    units: int
    bonus: Decimal
    rule_id: Optional[int] = None


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


async def select_active_rule(
    db: AsyncSession,
    shop_id: int,
    required_cert: str,
    as_of: Optional[datetime] = None,
) -> Optional[IncentiveRule]:
    """Most recently created active rule covering the certification.

    Several active rules may match; the newest wins, with the id breaking ties
    between rules created in the same instant. None means no bonus is possible.
    """
    as_of = as_of or datetime.utcnow()
    result = await db.execute(
        select(IncentiveRule)
        .where(
            IncentiveRule.shop_id == shop_id,
            IncentiveRule.is_active.is_(True),
            or_(IncentiveRule.effective_until.is_(None), IncentiveRule.effective_until >= as_of),
        )
        .order_by(IncentiveRule.created_at.desc(), IncentiveRule.id.desc())
    )
    # Certification membership lives in a JSON list, so it is matched here
    for rule in result.scalars():
        if rule.applies_to(required_cert):
            return rule
    return None


def compute_bonus(
    book_time: int,
    actual_time: int,
    rule: Optional[IncentiveRule],
    multiplier=Decimal("1"),
) -> BonusResult:
    if actual_time >= book_time:
        return BonusResult(time_saved=0, units=0, bonus=Decimal("0.00"), rule_id=rule.id if rule else None)

    time_saved = book_time - actual_time
    if rule is None:
        return BonusResult(time_saved=time_saved, units=0, bonus=Decimal("0.00"))

    units = time_saved // rule.time_saved_threshold
    bonus = Decimal(units) * Decimal(str(rule.bonus_per_unit)) * Decimal(str(multiplier))
    return BonusResult(
        time_saved=time_saved,
        units=units,
        bonus=to_money(bonus),
        rule_id=rule.id,
    )


async def preview_bonus(
    db: AsyncSession,
    shop_id: int,
    required_cert: str,
    book_time: int,
    actual_time: int,
    multiplier=Decimal("1"),
) -> BonusResult:
    """What completing in ``actual_time`` minutes would pay right now."""
    rule = await select_active_rule(db, shop_id, required_cert)
    return compute_bonus(book_time, actual_time, rule, multiplier)
