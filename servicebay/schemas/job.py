from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, Any

from servicebay.models.user import Certification
from servicebay.models.job import JobStatus, Priority, AssignmentType, RequestStatus


class VehicleInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    make: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    year: Optional[int] = Field(None, ge=1886, le=2100)
    vin: Optional[str] = Field(None, max_length=32)


class JobCreate(BaseModel):
    """Schema for creating a job. Book time is in whole minutes."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    vehicle: Optional[VehicleInfo] = None
    required_cert: Certification
    book_time: int = Field(..., gt=0)
    priority: Priority = Priority.MEDIUM


class JobUpdate(BaseModel):
    """Schema for editing a job's descriptive fields (all optional)."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    vehicle: Optional[VehicleInfo] = None
    required_cert: Optional[Certification] = None
    book_time: Optional[int] = Field(None, gt=0)
    priority: Optional[Priority] = None


class JobCompleteRequest(BaseModel):
    """Completion payload. actual_time overrides the server-measured duration."""

    model_config = ConfigDict(extra="forbid")

    actual_time: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=2000)


class JobRejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = Field(None, max_length=500)


class JobAssignRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    technician_id: int


class JobReassignRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    technician_id: int
    reason: Optional[str] = Field(None, max_length=500)


class JobResponse(BaseModel):
    """Schema for job response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    service_order_number: str
    title: str
    description: Optional[str] = None
    vehicle: VehicleInfo
    required_cert: Certification
    book_time: int
    actual_time: Optional[int] = None
    status: JobStatus
    priority: Priority
    shop_id: int
    created_by_id: int
    assigned_tech_id: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    incentive_earned: float = 0
    time_saved: int = 0
    notes: Optional[str] = None
    assignment_type: AssignmentType
    requested_by_id: Optional[int] = None
    request_status: RequestStatus
    approved_by_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobResponse":
        """Build the response, nesting the flat vehicle columns."""
        data = {
            field: getattr(job, field)
            for field in cls.model_fields
            if field != "vehicle"
        }
        data["vehicle"] = VehicleInfo(
            make=job.vehicle_make,
            model=job.vehicle_model,
            year=job.vehicle_year,
            vin=job.vehicle_vin,
        )
        return cls(**data)


class JobListResponse(BaseModel):
    items: list[JobResponse]
    total: int


class IncentiveResult(BaseModel):
    time_saved: int
    units: int
    incentive_earned: float
    rule_id: Optional[int] = None
    message: str


class JobCompleteResponse(BaseModel):
    job: JobResponse
    incentive: IncentiveResult


class JobActionResponse(BaseModel):
    job: JobResponse
    message: str


class JobAuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    description: Optional[str] = None
    actor_id: Optional[int] = None
    source: str
    changes: Optional[dict[str, Any]] = None
    created_at: datetime
