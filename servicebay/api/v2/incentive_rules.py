from fastapi import APIRouter, status
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import select

from servicebay.api.deps import DbSession, CurrentUser
from servicebay.exceptions import NotFoundError, ValidationError
from servicebay.models.incentive_rule import IncentiveRule, ALL_CERTS
from servicebay.models.user import Certification
from servicebay.schemas.incentive_rule import (
    IncentiveRuleCreate,
    IncentiveRuleResponse,
    IncentiveRuleUpdate,
)
from servicebay.security.rbac import ManagerUser, ensure_same_shop
from servicebay.services.incentive_engine import select_active_rule

logger = logging.getLogger(__name__)

router = APIRouter()


def _cert_values(certs) -> list[str]:
    return [c.value if isinstance(c, Certification) else c for c in certs]


def _check_window(effective_from: Optional[datetime], effective_until: Optional[datetime]) -> None:
    if effective_from and effective_until and effective_until < effective_from:
        raise ValidationError("effective_until must not be before effective_from")


async def _get_rule(db, manager, rule_id: int) -> IncentiveRule:
    rule = await db.get(IncentiveRule, rule_id)
    if rule is None:
        raise NotFoundError("Incentive rule", rule_id)
    ensure_same_shop(manager, rule.shop_id, "rule")
    return rule


@router.get("", response_model=list[IncentiveRuleResponse])
async def list_rules(db: DbSession, current_user: CurrentUser):
    """Rules of the caller's shop, newest first."""
    result = await db.execute(
        select(IncentiveRule)
        .where(IncentiveRule.shop_id == current_user.shop_id)
        .order_by(IncentiveRule.created_at.desc(), IncentiveRule.id.desc())
    )
    return result.scalars().all()


@router.get("/active", response_model=IncentiveRuleResponse)
async def get_active_rule(db: DbSession, current_user: CurrentUser, cert: Optional[Certification] = None):
    """The rule a completion would use right now for the certification."""
    rule = await select_active_rule(db, current_user.shop_id, cert.value if cert else ALL_CERTS)
    if rule is None:
        raise NotFoundError("Active incentive rule")
    return rule


@router.post("", response_model=IncentiveRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(data: IncentiveRuleCreate, db: DbSession, manager: ManagerUser):
    _check_window(data.effective_from, data.effective_until)
    rule = IncentiveRule(
        shop_id=manager.shop_id,
        name=data.name,
        description=data.description,
        time_saved_threshold=data.time_saved_threshold,
        bonus_per_unit=data.bonus_per_unit,
        is_active=data.is_active,
        applicable_certs=_cert_values(data.applicable_certs),
        created_by_id=manager.id,
        effective_from=data.effective_from or datetime.utcnow(),
        effective_until=data.effective_until,
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    logger.info(f"Incentive rule {rule.id} created by manager {manager.id}")
    return rule


@router.patch("/{rule_id}", response_model=IncentiveRuleResponse)
async def update_rule(rule_id: int, data: IncentiveRuleUpdate, db: DbSession, manager: ManagerUser):
    rule = await _get_rule(db, manager, rule_id)

    update_data = data.model_dump(exclude_unset=True)
    if "applicable_certs" in update_data and data.applicable_certs is not None:
        update_data["applicable_certs"] = _cert_values(data.applicable_certs)
    for field, value in update_data.items():
        if value is None and field != "effective_until" and field != "description":
            continue
        setattr(rule, field, value)
    _check_window(rule.effective_from, rule.effective_until)

    await db.commit()
    await db.refresh(rule)
    return rule


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: int, db: DbSession, manager: ManagerUser):
    rule = await _get_rule(db, manager, rule_id)
    await db.delete(rule)
    await db.commit()
    logger.info(f"Incentive rule {rule_id} deleted by manager {manager.id}")
