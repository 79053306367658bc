"""
Role-Based Access Control (RBAC) Module

Managers run a shop; technicians work its jobs. Shop scoping (a caller may
only touch records of their own shop) is enforced alongside the role gate.
"""

from enum import Enum
from typing import Annotated
from fastapi import Depends
import logging

from servicebay.api.deps import get_current_user
from servicebay.exceptions import ForbiddenError, NotEligibleError
from servicebay.models.user import User

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """User roles."""
    MANAGER = "manager"
    TECHNICIAN = "technician"


def get_user_role(user: User) -> Role:
    return Role(user.role)


def ensure_role(user: User, *roles: Role) -> None:
    """Raise ForbiddenError unless the user holds one of the roles."""
    role = get_user_role(user)
    if role not in roles:
        logger.warning(
            f"Role denied: user {user.id} is {role.value}",
            extra={"user_id": user.id, "role": role.value}
        )
        raise ForbiddenError(
            f"Access denied. Required role(s): {', '.join(r.value for r in roles)}"
        )


def ensure_same_shop(actor: User, shop_id: int | None, what: str = "record") -> None:
    """Raise NotEligibleError when the actor is not a member of shop_id."""
    if actor.shop_id is None or actor.shop_id != shop_id:
        logger.warning(
            f"Cross-shop access denied for user {actor.id}",
            extra={"user_id": actor.id, "shop_id": shop_id}
        )
        raise NotEligibleError(f"This {what} does not belong to your shop")


async def require_manager(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    """
    Dependency resolving to the caller when they are a manager.

    Usage:
        @router.post("/jobs")
        async def create_job(manager: ManagerUser): ...
    """
    ensure_role(current_user, Role.MANAGER)
    return current_user


async def require_technician(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    ensure_role(current_user, Role.TECHNICIAN)
    return current_user


ManagerUser = Annotated[User, Depends(require_manager)]
TechnicianUser = Annotated[User, Depends(require_technician)]
