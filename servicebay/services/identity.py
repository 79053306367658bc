"""Identity store: accounts, credentials and technician settings.

Managers are created approved and active together with their shop.
Technicians are created pending and inactive; membership decisions live in
``servicebay.services.membership``.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from servicebay.api.deps import verify_password, get_password_hash, create_session_token
from servicebay.config import settings
from servicebay.exceptions import (
    ConflictError,
    ForbiddenError,
    NotEligibleError,
    NotFoundError,
    UnauthorizedError,
)
from servicebay.models.job import Job, JobStatus, RequestStatus, TERMINAL_STATUSES
from servicebay.models.shop import Shop
from servicebay.models.user import User, UserRole, MembershipStatus, EfficiencySnapshot
from servicebay.schemas.auth import ManagerSignup, TechnicianSignup
from servicebay.schemas.shop import RejoinRequest
from servicebay.schemas.user import EfficiencySnapshotResponse, TechnicianSettingsUpdate, UserUpdate
from servicebay.security.rbac import ensure_same_shop
from servicebay.services.incentive_engine import to_money
from servicebay.services.membership import ShopMembershipService
from servicebay.services.notifications import Notifier

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def _ensure_email_free(db: AsyncSession, email: str) -> None:
    if await get_user_by_email(db, email):
        raise ConflictError("A user with this email already exists")


async def signup_manager(db: AsyncSession, data: ManagerSignup) -> tuple[User, Shop, str]:
    """Create a manager and their shop in one transaction."""
    await _ensure_email_free(db, data.email)

    manager = User(
        name=data.name,
        email=normalize_email(data.email),
        hashed_password=get_password_hash(data.password),
        role=UserRole.MANAGER.value,
        certifications=[],
        membership_status=MembershipStatus.APPROVED.value,
        is_active=True,
        weekly_bonus_goal=Decimal(str(settings.DEFAULT_WEEKLY_BONUS_GOAL)),
    )
    db.add(manager)
    await db.flush()

    shop = await ShopMembershipService(db).create_shop(
        manager, data.shop_name, address=data.shop_address, phone=data.shop_phone
    )
    await db.commit()
    await db.refresh(manager)

    logger.info(f"Manager {manager.id} signed up with shop {shop.code}")
    return manager, shop, create_session_token(manager)


async def signup_technician(
    db: AsyncSession, data: TechnicianSignup, notifier: Optional[Notifier] = None
) -> tuple[User, Shop]:
    """Create a pending technician and file their join request."""
    await _ensure_email_free(db, data.email)
    membership = ShopMembershipService(db, notifier)
    # Resolve before creating the account so a bad code leaves nothing behind
    await membership.resolve_code(data.shop_code)

    tech = User(
        name=data.name,
        email=normalize_email(data.email),
        hashed_password=get_password_hash(data.password),
        role=UserRole.TECHNICIAN.value,
        certifications=[c.value for c in data.certifications],
        membership_status=MembershipStatus.PENDING.value,
        is_active=False,
        weekly_bonus_goal=Decimal(str(settings.DEFAULT_WEEKLY_BONUS_GOAL)),
    )
    db.add(tech)
    await db.flush()

    shop = await membership.request_membership(tech, data.shop_code)
    logger.info(f"Technician {tech.id} signed up, pending approval at shop {shop.id}")
    return tech, shop


async def authenticate(db: AsyncSession, email: str, password: str) -> tuple[User, str]:
    user = await get_user_by_email(db, email)
    if not user or not verify_password(password, user.hashed_password):
        logger.info("Failed login attempt")
        raise UnauthorizedError("Incorrect email or password")

    if user.is_technician:
        if user.membership_status == MembershipStatus.PENDING.value:
            raise ForbiddenError("Your account is pending manager approval")
        if user.membership_status == MembershipStatus.REJECTED.value:
            raise ForbiddenError("Your request to join the shop was not approved")

    if not user.is_active:
        raise UnauthorizedError("Account is deactivated")

    logger.info(f"User {user.id} logged in")
    return user, create_session_token(user)


async def get_shop(db: AsyncSession, shop_id: Optional[int]) -> Optional[Shop]:
    if shop_id is None:
        return None
    return await db.get(Shop, shop_id)


async def get_technician(db: AsyncSession, manager: User, tech_id: int) -> User:
    """A technician of the manager's shop, by id."""
    tech = await db.get(User, tech_id)
    if tech is None or not tech.is_technician:
        raise NotFoundError("Technician", tech_id)
    ensure_same_shop(manager, tech.shop_id, "technician")
    return tech


async def list_technicians(db: AsyncSession, manager: User) -> list[User]:
    """Approved technicians of the manager's shop, by name."""
    result = await db.execute(
        select(User)
        .where(
            User.role == UserRole.TECHNICIAN.value,
            User.shop_id == manager.shop_id,
            User.membership_status == MembershipStatus.APPROVED.value,
        )
        .order_by(User.name)
    )
    return list(result.scalars().all())


async def update_profile(db: AsyncSession, actor: User, user_id: int, data: UserUpdate) -> User:
    """Edit a profile: your own name, or a same-shop technician as manager."""
    if actor.id == user_id:
        if data.is_active is not None:
            raise ForbiddenError("You cannot change your own active status")
        user = actor
    elif actor.is_technician:
        raise ForbiddenError("Access denied")
    else:
        user = await get_technician(db, actor, user_id)

    if data.name is not None:
        user.name = data.name.strip() or user.name
    if data.is_active is not None:
        user.is_active = data.is_active

    await db.commit()
    await db.refresh(user)
    logger.info(f"User {user.id} profile updated by {actor.id}")
    return user


async def _ensure_certs_cover_open_jobs(db: AsyncSession, tech: User, certs: list[str]) -> None:
    """Refuse to drop a certification that an assigned or requested job still needs."""
    result = await db.execute(
        select(Job.service_order_number, Job.required_cert).where(
            or_(
                Job.assigned_tech_id == tech.id,
                and_(Job.requested_by_id == tech.id, Job.request_status == RequestStatus.PENDING.value),
            ),
            Job.status.not_in(list(TERMINAL_STATUSES)),
            Job.required_cert.not_in(certs),
        )
    )
    blocked = result.first()
    if blocked is not None:
        raise NotEligibleError(
            f"{blocked.service_order_number} still requires {blocked.required_cert}; reassign it first"
        )


async def update_technician_settings(
    db: AsyncSession, manager: User, tech_id: int, data: TechnicianSettingsUpdate
) -> User:
    """Apply manager-tuned settings; numbers outside the allowed range are clamped."""
    tech = await get_technician(db, manager, tech_id)

    if data.bonus_multiplier is not None:
        multiplier = min(max(data.bonus_multiplier, 0.0), settings.MAX_BONUS_MULTIPLIER)
        tech.bonus_multiplier = Decimal(str(multiplier)).quantize(Decimal("0.01"))
    if data.weekly_bonus_goal is not None:
        tech.weekly_bonus_goal = to_money(max(data.weekly_bonus_goal, 0.0))
    if data.certifications is not None:
        certs = [c.value for c in data.certifications]
        await _ensure_certs_cover_open_jobs(db, tech, certs)
        tech.certifications = certs

    await db.commit()
    await db.refresh(tech)
    logger.info(f"Technician {tech.id} settings updated by manager {manager.id}")
    return tech


async def reset_weekly(db: AsyncSession, manager: User, tech_id: int) -> User:
    """Archive the week's totals into the efficiency history and zero earnings.

    Only the archived amount is subtracted, so a bonus credited by a job
    completing mid-reset carries into the new week.
    """
    tech = await get_technician(db, manager, tech_id)

    last = await db.execute(
        select(EfficiencySnapshot)
        .where(EfficiencySnapshot.user_id == tech.id)
        .order_by(EfficiencySnapshot.created_at.desc(), EfficiencySnapshot.id.desc())
        .limit(1)
    )
    previous = last.scalar_one_or_none()
    since = previous.created_at if previous else tech.created_at

    current = (await db.execute(select(User.weekly_earnings).where(User.id == tech.id))).scalar_one()
    archived = to_money(current or 0)

    if archived > 0:
        query = select(
            func.coalesce(func.sum(Job.book_time), 0),
            func.coalesce(func.sum(Job.actual_time), 0),
        ).where(
            Job.assigned_tech_id == tech.id,
            Job.status == JobStatus.COMPLETED.value,
        )
        if since is not None:
            query = query.where(Job.completed_at > since)
        flagged, clocked = (await db.execute(query)).one()

        ratio = round(flagged / clocked, 2) if clocked else 1.0
        db.add(EfficiencySnapshot(
            user_id=tech.id,
            week_start_date=since or datetime.utcnow(),
            flagged_minutes=int(flagged),
            clocked_minutes=int(clocked),
            efficiency_ratio=ratio,
            bonus_earned=archived,
        ))

        await db.execute(
            update(User)
            .where(User.id == tech.id)
            .values(weekly_earnings=User.weekly_earnings - archived)
            .execution_options(synchronize_session=False)
        )

    await db.commit()
    await db.refresh(tech)
    logger.info(f"Weekly earnings reset for technician {tech.id}", extra={"archived": str(archived)})
    return tech


async def technician_stats(db: AsyncSession, actor: User, tech_id: int) -> dict:
    if actor.is_technician:
        if actor.id != tech_id:
            raise ForbiddenError("Technicians may only view their own stats")
        tech = actor
    else:
        tech = await get_technician(db, actor, tech_id)

    total_incentive = (await db.execute(
        select(func.coalesce(func.sum(Job.incentive_earned), 0)).where(
            Job.assigned_tech_id == tech.id,
            Job.status == JobStatus.COMPLETED.value,
        )
    )).scalar_one()

    history = await db.execute(
        select(EfficiencySnapshot)
        .where(EfficiencySnapshot.user_id == tech.id)
        .order_by(EfficiencySnapshot.created_at.desc(), EfficiencySnapshot.id.desc())
        .limit(HISTORY_LIMIT)
    )

    weekly = float(tech.weekly_earnings or 0)
    goal = float(tech.weekly_bonus_goal or 0)
    progress = min(round(weekly / goal * 100, 1), 100.0) if goal > 0 else 0.0

    return {
        "technician_id": tech.id,
        "total_jobs_completed": tech.total_jobs_completed,
        "total_time_saved": tech.total_time_saved,
        "total_incentive_earned": float(total_incentive),
        "weekly_earnings": weekly,
        "weekly_bonus_goal": goal,
        "bonus_multiplier": float(tech.bonus_multiplier or 1),
        "progress_to_goal": progress,
        "efficiency_history": [EfficiencySnapshotResponse.model_validate(s) for s in history.scalars()],
    }


async def rejoin(db: AsyncSession, data: RejoinRequest, notifier: Optional[Notifier] = None) -> tuple[User, Shop]:
    """Re-file a join request for a removed or rejected technician."""
    user = await get_user_by_email(db, data.email)
    if not user or not verify_password(data.password, user.hashed_password):
        raise UnauthorizedError("Incorrect email or password")
    if not user.is_technician:
        raise ForbiddenError("Only technicians can join a shop by code")

    certs = [c.value for c in data.certifications] if data.certifications is not None else None
    shop = await ShopMembershipService(db, notifier).rejoin(user, data.shop_code, certs)
    return user, shop
