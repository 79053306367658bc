from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional, Union

from servicebay.models.user import Certification

RuleCert = Union[Certification, Literal["All"]]


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Rule windows are stored as naive UTC; offsets are converted, naive values kept."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class IncentiveRuleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    time_saved_threshold: int = Field(30, ge=1)
    bonus_per_unit: Decimal = Field(Decimal("10"), ge=0, max_digits=10, decimal_places=2)
    is_active: bool = True
    applicable_certs: list[RuleCert] = Field(default_factory=lambda: ["All"], min_length=1)
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None

    @field_validator("effective_from", "effective_until")
    @classmethod
    def normalize_window(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class IncentiveRuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    time_saved_threshold: Optional[int] = Field(None, ge=1)
    bonus_per_unit: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    is_active: Optional[bool] = None
    applicable_certs: Optional[list[RuleCert]] = Field(None, min_length=1)
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None

    @field_validator("effective_from", "effective_until")
    @classmethod
    def normalize_window(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class IncentiveRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    shop_id: int
    name: str
    description: Optional[str] = None
    time_saved_threshold: int
    bonus_per_unit: float
    is_active: bool
    applicable_certs: list[str]
    created_by_id: int
    effective_from: datetime
    effective_until: Optional[datetime] = None
    created_at: datetime


class BonusPreview(BaseModel):
    job_id: int
    book_time: int
    actual_time: int
    time_saved: int
    units: int
    bonus: float
    multiplier: float
    rule_id: Optional[int] = None
