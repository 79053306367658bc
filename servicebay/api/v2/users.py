from fastapi import APIRouter
import logging

from servicebay.api.deps import DbSession, CurrentUser
from servicebay.exceptions import ForbiddenError
from servicebay.schemas.auth import UserResponse
from servicebay.schemas.user import TechnicianSettingsUpdate, TechnicianStats, UserUpdate
from servicebay.security.rbac import ManagerUser
from servicebay.services import identity

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=list[UserResponse])
async def list_technicians(db: DbSession, manager: ManagerUser):
    """Approved technicians of the manager's shop."""
    return await identity.list_technicians(db, manager)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: int, db: DbSession, current_user: CurrentUser):
    if current_user.id == user_id:
        return current_user
    if current_user.is_technician:
        raise ForbiddenError("Access denied")
    return await identity.get_technician(db, current_user, user_id)


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(user_id: int, data: UserUpdate, db: DbSession, current_user: CurrentUser):
    return await identity.update_profile(db, current_user, user_id, data)


@router.put("/{user_id}/settings", response_model=UserResponse)
async def update_settings(user_id: int, data: TechnicianSettingsUpdate, db: DbSession, manager: ManagerUser):
    return await identity.update_technician_settings(db, manager, user_id, data)


@router.post("/{user_id}/reset-weekly", response_model=UserResponse)
async def reset_weekly(user_id: int, db: DbSession, manager: ManagerUser):
    return await identity.reset_weekly(db, manager, user_id)


@router.get("/{user_id}/stats", response_model=TechnicianStats)
async def technician_stats(user_id: int, db: DbSession, current_user: CurrentUser):
    return await identity.technician_stats(db, current_user, user_id)
