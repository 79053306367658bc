from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional

from servicebay.models.user import Certification


class UserUpdate(BaseModel):
    """Profile edit. Technicians may only rename themselves; managers may also
    activate or deactivate their technicians."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    is_active: Optional[bool] = None


class TechnicianSettingsUpdate(BaseModel):
    """Manager-tunable settings. Out-of-range numbers are clamped, not rejected."""

    model_config = ConfigDict(extra="forbid")

    bonus_multiplier: Optional[float] = None
    weekly_bonus_goal: Optional[float] = None
    certifications: Optional[list[Certification]] = None


class EfficiencySnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    week_start_date: datetime
    flagged_minutes: int
    clocked_minutes: int
    efficiency_ratio: float
    bonus_earned: float


class TechnicianStats(BaseModel):
    technician_id: int
    total_jobs_completed: int
    total_time_saved: int
    total_incentive_earned: float
    weekly_earnings: float
    weekly_bonus_goal: float
    bonus_multiplier: float
    progress_to_goal: float
    efficiency_history: list[EfficiencySnapshotResponse]
