from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Numeric, Index
from datetime import datetime
from servicebay.database import Base


class JobStatus(str, Enum):
    AVAILABLE = "available"
    PENDING_APPROVAL = "pending-approval"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class AssignmentType(str, Enum):
    NONE = "none"
    DIRECT = "direct"
    REQUESTED = "requested"


class RequestStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_STATUSES = {JobStatus.COMPLETED.value, JobStatus.CANCELLED.value}


class Job(Base):
    """A shop-scoped unit of work with a manager-estimated book time."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    service_order_number = Column(String(20), unique=True, nullable=False)

    title = Column(String(200), nullable=False)
    description = Column(Text)

    # Vehicle info (free text)
    vehicle_make = Column(String(100))
    vehicle_model = Column(String(100))
    vehicle_year = Column(Integer)
    vehicle_vin = Column(String(32))

    required_cert = Column(String(30), nullable=False)
    book_time = Column(Integer, nullable=False)  # minutes
    actual_time = Column(Integer)  # minutes, set on completion

    status = Column(String(30), nullable=False, default=JobStatus.AVAILABLE.value)
    priority = Column(String(20), nullable=False, default=Priority.MEDIUM.value)

    # Ownership; shop_id never changes after creation
    shop_id = Column(Integer, ForeignKey("shops.id"), nullable=False, index=True)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    assigned_tech_id = Column(Integer, ForeignKey("users.id"), index=True)

    # Time tracking (server clock only)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Outcome
    incentive_earned = Column(Numeric(10, 2), default=0, nullable=False)
    time_saved = Column(Integer, default=0, nullable=False)
    notes = Column(Text, default="")

    # Request / approval workflow
    assignment_type = Column(String(20), nullable=False, default=AssignmentType.NONE.value)
    requested_by_id = Column(Integer, ForeignKey("users.id"))
    request_status = Column(String(20), nullable=False, default=RequestStatus.NONE.value)
    approved_by_id = Column(Integer, ForeignKey("users.id"))
    approved_at = Column(DateTime)
    rejected_reason = Column(Text, default="")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_jobs_status_required_cert", "status", "required_cert"),
        Index("ix_jobs_assigned_tech_status", "assigned_tech_id", "status"),
    )

    def __repr__(self):
        return f"<Job {self.service_order_number} - {self.title} ({self.status})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
