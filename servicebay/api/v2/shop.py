from fastapi import APIRouter
from fastapi.responses import HTMLResponse
from typing import Optional
import logging

from servicebay.api.deps import DbSession, NotifierDep
from servicebay.api.v2.link_pages import link_page, already_processed_page
from servicebay.exceptions import InvalidTokenError
from servicebay.schemas.auth import UserResponse
from servicebay.schemas.shop import (
    MembershipActionResponse,
    MembershipRejection,
    ShopCodeResponse,
    ShopCodeValidation,
    ShopResponse,
    ShopUpdate,
)
from servicebay.security.rbac import ManagerUser
from servicebay.services import identity
from servicebay.services.membership import ShopMembershipService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/my-shop", response_model=ShopResponse)
async def get_my_shop(db: DbSession, manager: ManagerUser):
    return await ShopMembershipService(db).get_manager_shop(manager)


@router.patch("/my-shop", response_model=ShopResponse)
async def update_my_shop(data: ShopUpdate, db: DbSession, manager: ManagerUser):
    return await ShopMembershipService(db).update_shop(manager, data)


@router.get("/validate-code/{code}", response_model=ShopCodeValidation)
async def validate_shop_code(code: str, db: DbSession):
    """Public lookup used by the signup form."""
    shop = await ShopMembershipService(db).resolve_code(code)
    return ShopCodeValidation(name=shop.name)


@router.post("/regenerate-code", response_model=ShopCodeResponse)
async def regenerate_code(db: DbSession, manager: ManagerUser):
    shop = await ShopMembershipService(db).regenerate_code(manager)
    return ShopCodeResponse(code=shop.code)


@router.get("/pending-techs", response_model=list[UserResponse])
async def list_pending_technicians(db: DbSession, manager: ManagerUser):
    return await ShopMembershipService(db).list_pending(manager)


@router.get("/technicians", response_model=list[UserResponse])
async def list_technicians(db: DbSession, manager: ManagerUser):
    return await identity.list_technicians(db, manager)


@router.post("/approve-tech/{tech_id}", response_model=MembershipActionResponse)
async def approve_technician(tech_id: int, db: DbSession, manager: ManagerUser, notifier: NotifierDep):
    tech = await ShopMembershipService(db, notifier).approve(manager, tech_id)
    return MembershipActionResponse(
        message=f"{tech.name} has been approved",
        technician_id=tech.id,
        membership_status=tech.membership_status,
    )


@router.post("/reject-tech/{tech_id}", response_model=MembershipActionResponse)
async def reject_technician(
    tech_id: int,
    db: DbSession,
    manager: ManagerUser,
    notifier: NotifierDep,
    data: Optional[MembershipRejection] = None,
):
    tech = await ShopMembershipService(db, notifier).reject(manager, tech_id, data.reason if data else None)
    return MembershipActionResponse(
        message=f"{tech.name} has been rejected",
        technician_id=tech.id,
        membership_status=tech.membership_status,
    )


@router.post("/remove-tech/{tech_id}", response_model=MembershipActionResponse)
async def remove_technician(tech_id: int, db: DbSession, manager: ManagerUser):
    tech = await ShopMembershipService(db).remove(manager, tech_id)
    return MembershipActionResponse(
        message=f"{tech.name} has been removed from the shop",
        technician_id=tech.id,
        membership_status=tech.membership_status,
    )


@router.get("/email-approve/{token}", response_class=HTMLResponse)
async def email_approve_technician(token: str, db: DbSession, notifier: NotifierDep):
    """Unauthenticated approve link from the manager's request email."""
    try:
        tech = await ShopMembershipService(db, notifier).approve_via_token(token)
    except InvalidTokenError:
        return already_processed_page()
    return link_page("Technician approved", f"{tech.name} can now log in and start working.")


@router.get("/email-reject/{token}", response_class=HTMLResponse)
async def email_reject_technician(token: str, db: DbSession, notifier: NotifierDep):
    try:
        tech = await ShopMembershipService(db, notifier).reject_via_token(token)
    except InvalidTokenError:
        return already_processed_page()
    return link_page("Request rejected", f"{tech.name}'s request to join has been declined.")
