from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime
from typing import Optional

from servicebay.models.user import Certification, UserRole, MembershipStatus


class ManagerSignup(BaseModel):
    """Manager signup: creates the account and the manager's shop."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    shop_name: str = Field(..., min_length=1, max_length=100)
    shop_address: Optional[str] = Field(None, max_length=255)
    shop_phone: Optional[str] = Field(None, max_length=30)


class TechnicianSignup(BaseModel):
    """Technician signup: joins an existing shop by code, pending approval."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    shop_code: str = Field(..., min_length=1, max_length=20)
    certifications: list[Certification] = Field(default_factory=list)


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenData(BaseModel):
    """Data encoded in the session JWT."""

    user_id: int
    role: UserRole
    email: Optional[str] = None


class ShopSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: Optional[str] = None


class UserResponse(BaseModel):
    """Public view of a user; the credential hash is never exposed."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: EmailStr
    role: UserRole
    certifications: list[Certification] = []
    shop_id: Optional[int] = None
    membership_status: MembershipStatus
    is_active: bool
    weekly_earnings: float = 0
    weekly_bonus_goal: float = 0
    bonus_multiplier: float = 1.0
    total_jobs_completed: int = 0
    total_time_saved: int = 0
    created_at: Optional[datetime] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ManagerSignupResponse(BaseModel):
    message: str
    user: UserResponse
    shop: ShopSummary
    access_token: str
    token_type: str = "bearer"


class TechnicianSignupResponse(BaseModel):
    message: str
    user: UserResponse
    shop_name: str
    requires_approval: bool = True


class LoginResponse(Token):
    user: UserResponse


class AuthMeResponse(BaseModel):
    user: UserResponse
    shop: Optional[ShopSummary] = None
