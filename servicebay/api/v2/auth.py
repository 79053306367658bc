from fastapi import APIRouter, Response, status
import logging

from servicebay.api.deps import DbSession, CurrentUser, NotifierDep
from servicebay.config import settings
from servicebay.schemas.auth import (
    AuthMeResponse,
    LoginRequest,
    LoginResponse,
    ManagerSignup,
    ManagerSignupResponse,
    ShopSummary,
    TechnicianSignup,
    TechnicianSignupResponse,
    UserResponse,
)
from servicebay.schemas.shop import RejoinRequest
from servicebay.services import identity

logger = logging.getLogger(__name__)

router = APIRouter()


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key="session",
        value=token,
        httponly=True,
        secure=settings.ENVIRONMENT != "development",
        samesite="lax",
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/signup/manager", response_model=ManagerSignupResponse, status_code=status.HTTP_201_CREATED)
async def signup_manager(response: Response, data: ManagerSignup, db: DbSession):
    """Create a manager account together with their shop."""
    manager, shop, token = await identity.signup_manager(db, data)
    _set_session_cookie(response, token)
    return ManagerSignupResponse(
        message="Shop created successfully",
        user=UserResponse.model_validate(manager),
        shop=ShopSummary.model_validate(shop),
        access_token=token,
    )


@router.post("/signup/technician", response_model=TechnicianSignupResponse, status_code=status.HTTP_201_CREATED)
async def signup_technician(data: TechnicianSignup, db: DbSession, notifier: NotifierDep):
    """Create a technician account pending the shop manager's approval."""
    tech, shop = await identity.signup_technician(db, data, notifier)
    return TechnicianSignupResponse(
        message="Signup successful! Your manager must approve your request before you can log in.",
        user=UserResponse.model_validate(tech),
        shop_name=shop.name,
    )


@router.post("/login", response_model=LoginResponse)
async def login(response: Response, login_data: LoginRequest, db: DbSession):
    """Authenticate user and return JWT token."""
    user, token = await identity.authenticate(db, login_data.email, login_data.password)
    _set_session_cookie(response, token)
    return LoginResponse(access_token=token, user=UserResponse.model_validate(user))


@router.post("/rejoin", response_model=TechnicianSignupResponse)
async def rejoin(data: RejoinRequest, db: DbSession, notifier: NotifierDep):
    """Join request from a technician who was removed from or rejected by a shop."""
    tech, shop = await identity.rejoin(db, data, notifier)
    return TechnicianSignupResponse(
        message="Request sent. Your manager must approve it before you can log in.",
        user=UserResponse.model_validate(tech),
        shop_name=shop.name,
    )


@router.post("/logout")
async def logout(response: Response):
    """Logout user by clearing session cookie."""
    response.delete_cookie(key="session")
    return {"message": "Successfully logged out"}


@router.get("/me", response_model=AuthMeResponse)
async def get_current_user_info(current_user: CurrentUser, db: DbSession):
    shop = await identity.get_shop(db, current_user.shop_id)
    return AuthMeResponse(
        user=UserResponse.model_validate(current_user),
        shop=ShopSummary.model_validate(shop) if shop else None,
    )
