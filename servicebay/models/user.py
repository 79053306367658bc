from enum import Enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, JSON, Numeric
from datetime import datetime
from servicebay.database import Base


class UserRole(str, Enum):
    MANAGER = "manager"
    TECHNICIAN = "technician"


class Certification(str, Enum):
    """Qualification tags gating which jobs a technician may request or start."""

    EV = "EV"
    ENGINE = "Engine"
    BRAKES = "Brakes"
    TRANSMISSION = "Transmission"
    ELECTRICAL = "Electrical"
    HVAC = "HVAC"
    DIAGNOSTICS = "Diagnostics"


class MembershipStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class User(Base):
    """Manager or technician account.

    An active technician is always an approved member of a shop. Removed
    technicians keep their row with shop_id cleared and is_active off.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=UserRole.TECHNICIAN.value)

    # Technicians only; values from Certification
    certifications = Column(JSON, default=list, nullable=False)

    # Shop membership
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=True, index=True)
    membership_status = Column(String(20), nullable=False, default=MembershipStatus.PENDING.value)
    is_active = Column(Boolean, default=False, nullable=False)

    # Incentives
    weekly_earnings = Column(Numeric(10, 2), default=0, nullable=False)
    weekly_bonus_goal = Column(Numeric(10, 2), default=500, nullable=False)
    bonus_multiplier = Column(Numeric(4, 2), default=1, nullable=False)
    total_jobs_completed = Column(Integer, default=0, nullable=False)
    total_time_saved = Column(Integer, default=0, nullable=False)  # minutes

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"

    @property
    def is_manager(self) -> bool:
        return self.role == UserRole.MANAGER.value

    @property
    def is_technician(self) -> bool:
        return self.role == UserRole.TECHNICIAN.value

    def holds(self, cert: str) -> bool:
        return cert in (self.certifications or [])


class EfficiencySnapshot(Base):
    """Weekly archive row written when a manager resets a technician's week."""

    __tablename__ = "efficiency_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    week_start_date = Column(DateTime, nullable=False)
    flagged_minutes = Column(Integer, default=0, nullable=False)  # book time of completed jobs
    clocked_minutes = Column(Integer, default=0, nullable=False)  # actual time of completed jobs
    efficiency_ratio = Column(Float, default=1.0, nullable=False)
    bonus_earned = Column(Numeric(10, 2), default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<EfficiencySnapshot user={self.user_id} week={self.week_start_date:%Y-%m-%d}>"
