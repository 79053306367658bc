from pydantic import BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime
from typing import Optional

from servicebay.models.user import Certification


class ShopResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str
    address: Optional[str] = None
    phone: Optional[str] = None
    manager_id: int
    is_active: bool
    created_at: Optional[datetime] = None


class ShopUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    address: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)


class ShopCodeResponse(BaseModel):
    code: str
    message: str = "Shop code regenerated successfully"


class ShopCodeValidation(BaseModel):
    name: str


class MembershipRejection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = Field(None, max_length=500)


class RejoinRequest(BaseModel):
    """A removed or rejected technician asking to join a shop again.

    Such accounts are inactive and cannot hold a session, so the request
    carries the credentials.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(..., min_length=1)
    shop_code: str = Field(..., min_length=1, max_length=20)
    certifications: Optional[list[Certification]] = None


class MembershipActionResponse(BaseModel):
    message: str
    technician_id: int
    membership_status: str
