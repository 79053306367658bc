"""Shop membership workflow.

Shop codes look like ``TG-4F2A`` and are stored uppercase. A technician joins
by code and waits, pending and inactive, until the shop's manager approves or
rejects them, either in the app or through single-use links in the request
email. Decisions are conditional updates on ``membership_status``, so a
session click and an email click cannot both land.
"""

from typing import Optional
import logging
import secrets

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from servicebay.config import settings
from servicebay.exceptions import (
    InvalidShopCodeError,
    InvalidStateError,
    InvalidTokenError,
    NotFoundError,
)
from servicebay.models.shop import Shop
from servicebay.models.user import User, UserRole, MembershipStatus
from servicebay.schemas.shop import ShopUpdate
from servicebay.security.rbac import ensure_same_shop
from servicebay.services import capability_tokens as tokens
from servicebay.services.notifications import Notifier, NotificationKind, public_url

logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 20


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class ShopMembershipService:
    """Shop creation, join requests and manager decisions."""

    def __init__(self, db: AsyncSession, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier
        self._outbox: list[tuple[User, NotificationKind, dict]] = []

    async def _commit(self) -> None:
        """Commit, then deliver queued notifications."""
        await self.db.commit()
        outbox, self._outbox = self._outbox, []
        if self.notifier is None:
            return
        for recipient, kind, data in outbox:
            await self.notifier.notify(recipient, kind, data)

    # Shop codes

    async def _code_taken(self, code: str) -> bool:
        result = await self.db.execute(select(Shop.id).where(Shop.code == code))
        return result.scalar_one_or_none() is not None

    async def generate_code(self) -> str:
        for _ in range(CODE_ATTEMPTS):
            code = f"{settings.SHOP_CODE_PREFIX}-{secrets.token_hex(2).upper()}"
            if not await self._code_taken(code):
                return code
        raise RuntimeError("Could not generate a unique shop code")

    async def create_shop(
        self,
        manager: User,
        name: str,
        address: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Shop:
        """Create the manager's shop and bind the manager to it. The caller commits."""
        existing = await self.db.execute(select(Shop).where(Shop.manager_id == manager.id))
        if existing.scalar_one_or_none() is not None:
            raise InvalidStateError("This manager already owns a shop")

        shop = Shop(
            name=name,
            code=await self.generate_code(),
            address=address,
            phone=phone,
            manager_id=manager.id,
        )
        self.db.add(shop)
        await self.db.flush()
        manager.shop_id = shop.id
        logger.info(f"Shop {shop.id} created for manager {manager.id}")
        return shop

    async def resolve_code(self, code: str) -> Shop:
        normalized = normalize_code(code)
        if not normalized:
            raise InvalidShopCodeError()
        result = await self.db.execute(select(Shop).where(Shop.code == normalized))
        shop = result.scalar_one_or_none()
        if shop is None or not shop.is_active:
            raise InvalidShopCodeError()
        return shop

    async def get_manager_shop(self, manager: User) -> Shop:
        shop = await self.db.get(Shop, manager.shop_id) if manager.shop_id else None
        if shop is None:
            raise NotFoundError("Shop")
        return shop

    async def regenerate_code(self, manager: User) -> Shop:
        """Issue a new code. The old one stops working at once; members are unaffected."""
        shop = await self.get_manager_shop(manager)
        old_code = shop.code
        shop.code = await self.generate_code()
        await self._commit()
        logger.info(f"Shop {shop.id} code regenerated ({old_code} -> {shop.code})")
        return shop

    async def update_shop(self, manager: User, data: ShopUpdate) -> Shop:
        shop = await self.get_manager_shop(manager)
        for field, value in data.model_dump(exclude_unset=True).items():
            if field == "name" and not value:
                continue
            setattr(shop, field, value)
        await self._commit()
        await self.db.refresh(shop)
        return shop

    # Join requests

    async def request_membership(
        self,
        tech: User,
        shop_code: str,
        certifications: Optional[list[str]] = None,
    ) -> Shop:
        """File a join request: the technician goes pending and inactive at the shop.

        Mints approve and reject links for the manager and acknowledges the
        technician. Commits.
        """
        shop = await self.resolve_code(shop_code)

        tech.shop_id = shop.id
        tech.membership_status = MembershipStatus.PENDING.value
        tech.is_active = False
        if certifications is not None:
            tech.certifications = list(certifications)

        await tokens.revoke_all(self.db, tokens.SUBJECT_MEMBERSHIP, tech.id)
        approve_token = await tokens.mint(self.db, tokens.SUBJECT_MEMBERSHIP, tech.id, tokens.ACTION_APPROVE)
        reject_token = await tokens.mint(self.db, tokens.SUBJECT_MEMBERSHIP, tech.id, tokens.ACTION_REJECT)

        manager = await self.db.get(User, shop.manager_id)
        if manager is not None:
            self._outbox.append((manager, NotificationKind.MEMBERSHIP_REQUEST_TO_MANAGER, {
                "technician_name": tech.name,
                "technician_email": tech.email,
                "shop_name": shop.name,
                "certifications": list(tech.certifications or []),
                "approve_url": public_url(f"/api/v2/shop/email-approve/{approve_token}"),
                "reject_url": public_url(f"/api/v2/shop/email-reject/{reject_token}"),
            }))
        self._outbox.append((tech, NotificationKind.MEMBERSHIP_REQUEST_ACK, {"shop_name": shop.name}))

        await self._commit()
        logger.info(f"Technician {tech.id} requested to join shop {shop.id}")
        return shop

    async def rejoin(self, tech: User, shop_code: str, certifications: Optional[list[str]] = None) -> Shop:
        """Join request from an existing technician who was removed or rejected."""
        if tech.membership_status == MembershipStatus.APPROVED.value and tech.is_active:
            raise InvalidStateError("You are already an approved member of a shop")
        if tech.membership_status == MembershipStatus.PENDING.value and tech.shop_id is not None:
            raise InvalidStateError("You already have a pending request")
        return await self.request_membership(tech, shop_code, certifications)

    async def list_pending(self, manager: User) -> list[User]:
        result = await self.db.execute(
            select(User)
            .where(
                User.role == UserRole.TECHNICIAN.value,
                User.shop_id == manager.shop_id,
                User.membership_status == MembershipStatus.PENDING.value,
            )
            .order_by(User.created_at.desc())
        )
        return list(result.scalars().all())

    # Decisions

    async def _load_pending_target(self, tech_id: int) -> User:
        tech = await self.db.get(User, tech_id)
        if tech is None or tech.role != UserRole.TECHNICIAN.value:
            raise NotFoundError("Technician", tech_id)
        return tech

    async def _decide(self, tech: User, shop_id: int, approve: bool, reason: Optional[str]) -> bool:
        """Move a pending member to approved or rejected. False if no longer pending."""
        values = {
            "membership_status": (MembershipStatus.APPROVED if approve else MembershipStatus.REJECTED).value,
            "is_active": approve,
        }
        result = await self.db.execute(
            update(User)
            .where(
                User.id == tech.id,
                User.shop_id == shop_id,
                User.membership_status == MembershipStatus.PENDING.value,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            return False

        await tokens.revoke_all(self.db, tokens.SUBJECT_MEMBERSHIP, tech.id)
        shop = await self.db.get(Shop, shop_id)
        self._outbox.append((tech, NotificationKind.MEMBERSHIP_DECISION_TO_TECH, {
            "approved": approve,
            "shop_name": shop.name if shop else "",
            "reason": reason,
        }))
        return True

    async def approve(self, manager: User, tech_id: int) -> User:
        tech = await self._load_pending_target(tech_id)
        ensure_same_shop(manager, tech.shop_id, "technician")
        if not await self._decide(tech, manager.shop_id, approve=True, reason=None):
            raise InvalidStateError("Technician is not pending approval")
        await self._commit()
        await self.db.refresh(tech)
        logger.info(f"Technician {tech.id} approved by manager {manager.id}")
        return tech

    async def reject(self, manager: User, tech_id: int, reason: Optional[str] = None) -> User:
        tech = await self._load_pending_target(tech_id)
        ensure_same_shop(manager, tech.shop_id, "technician")
        if not await self._decide(tech, manager.shop_id, approve=False, reason=reason):
            raise InvalidStateError("Technician is not pending approval")
        await self._commit()
        await self.db.refresh(tech)
        logger.info(f"Technician {tech.id} rejected by manager {manager.id}")
        return tech

    async def _decide_via_token(self, token: str, action: str, reason: Optional[str]) -> User:
        tech_id = await tokens.consume(self.db, token, tokens.SUBJECT_MEMBERSHIP, action)
        tech = await self.db.get(User, tech_id)
        if tech is None or tech.shop_id is None:
            await self.db.rollback()
            raise InvalidTokenError()
        if not await self._decide(tech, tech.shop_id, approve=action == tokens.ACTION_APPROVE, reason=reason):
            await self.db.rollback()
            raise InvalidTokenError()
        await self._commit()
        await self.db.refresh(tech)
        logger.info(f"Technician {tech.id} membership decided via email link ({action})")
        return tech

    async def approve_via_token(self, token: str) -> User:
        return await self._decide_via_token(token, tokens.ACTION_APPROVE, None)

    async def reject_via_token(self, token: str, reason: Optional[str] = None) -> User:
        return await self._decide_via_token(token, tokens.ACTION_REJECT, reason)

    async def remove(self, manager: User, tech_id: int) -> User:
        """Detach a technician; they must file a new join request to come back."""
        tech = await self._load_pending_target(tech_id)
        ensure_same_shop(manager, tech.shop_id, "technician")

        tech.shop_id = None
        tech.membership_status = MembershipStatus.PENDING.value
        tech.is_active = False
        await tokens.revoke_all(self.db, tokens.SUBJECT_MEMBERSHIP, tech.id)
        await self._commit()
        logger.info(f"Technician {tech.id} removed from shop {manager.shop_id}")
        return tech
