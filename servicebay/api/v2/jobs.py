from fastapi import APIRouter, Query, status
from fastapi.responses import HTMLResponse
from decimal import Decimal
from typing import Optional
import logging

from servicebay.api.deps import DbSession, CurrentUser, NotifierDep
from servicebay.api.v2.link_pages import link_page, already_processed_page
from servicebay.exceptions import InvalidTokenError
from servicebay.models.job import JobStatus
from servicebay.models.user import Certification
from servicebay.schemas.incentive_rule import BonusPreview
from servicebay.schemas.job import (
    IncentiveResult,
    JobActionResponse,
    JobAssignRequest,
    JobAuditEntry,
    JobCompleteRequest,
    JobCompleteResponse,
    JobCreate,
    JobListResponse,
    JobReassignRequest,
    JobRejectRequest,
    JobResponse,
    JobUpdate,
)
from servicebay.security.rbac import ManagerUser, TechnicianUser
from servicebay.services.incentive_engine import preview_bonus
from servicebay.services.job_lifecycle import JobLifecycleService

logger = logging.getLogger(__name__)

router = APIRouter()


def _listing(jobs) -> JobListResponse:
    return JobListResponse(items=[JobResponse.from_job(j) for j in jobs], total=len(jobs))


def _action(job, message: str) -> JobActionResponse:
    return JobActionResponse(job=JobResponse.from_job(job), message=message)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    db: DbSession,
    current_user: CurrentUser,
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    required_cert: Optional[Certification] = None,
):
    """Managers: all shop jobs. Technicians: open jobs matching their certifications."""
    jobs = await JobLifecycleService(db).list_jobs(
        current_user,
        status=status_filter.value if status_filter else None,
        required_cert=required_cert.value if required_cert else None,
    )
    return _listing(jobs)


@router.get("/my-jobs", response_model=JobListResponse)
async def my_jobs(
    db: DbSession,
    tech: TechnicianUser,
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
):
    jobs = await JobLifecycleService(db).my_jobs(tech, status_filter.value if status_filter else None)
    return _listing(jobs)


@router.get("/pending-requests", response_model=JobListResponse)
async def pending_requests(db: DbSession, manager: ManagerUser):
    return _listing(await JobLifecycleService(db).list_pending_requests(manager))


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(data: JobCreate, db: DbSession, manager: ManagerUser):
    job = await JobLifecycleService(db).create(manager, data)
    return JobResponse.from_job(job)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, db: DbSession, current_user: CurrentUser):
    return JobResponse.from_job(await JobLifecycleService(db).get(current_user, job_id))


@router.patch("/{job_id}", response_model=JobResponse)
async def update_job(job_id: int, data: JobUpdate, db: DbSession, manager: ManagerUser):
    return JobResponse.from_job(await JobLifecycleService(db).update(manager, job_id, data))


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(job_id: int, db: DbSession, manager: ManagerUser):
    await JobLifecycleService(db).delete(manager, job_id)


@router.get("/{job_id}/history", response_model=list[JobAuditEntry])
async def job_history(job_id: int, db: DbSession, current_user: CurrentUser):
    return await JobLifecycleService(db).history(current_user, job_id)


@router.get("/{job_id}/bonus-preview", response_model=BonusPreview)
async def bonus_preview(
    job_id: int,
    db: DbSession,
    current_user: CurrentUser,
    actual_time: int = Query(..., ge=0),
):
    """What completing the job in actual_time minutes would pay the caller."""
    job = await JobLifecycleService(db).get(current_user, job_id)
    multiplier = current_user.bonus_multiplier if current_user.is_technician else Decimal("1")
    result = await preview_bonus(db, job.shop_id, job.required_cert, job.book_time, actual_time, multiplier)
    return BonusPreview(
        job_id=job.id,
        book_time=job.book_time,
        actual_time=actual_time,
        time_saved=result.time_saved,
        units=result.units,
        bonus=float(result.bonus),
        multiplier=float(multiplier),
        rule_id=result.rule_id,
    )


@router.post("/{job_id}/request", response_model=JobActionResponse)
async def request_job(job_id: int, db: DbSession, tech: TechnicianUser, notifier: NotifierDep):
    job = await JobLifecycleService(db, notifier).request_to_work(tech, job_id)
    return _action(job, "Request sent to your manager")


@router.post("/{job_id}/approve", response_model=JobActionResponse)
async def approve_request(job_id: int, db: DbSession, manager: ManagerUser, notifier: NotifierDep):
    job = await JobLifecycleService(db, notifier).approve_request(manager, job_id)
    return _action(job, "Request approved")


@router.get("/{job_id}/email-approve", response_class=HTMLResponse)
async def email_approve_request(job_id: int, db: DbSession, notifier: NotifierDep, token: str = ""):
    """Unauthenticated approve link from the manager's request email."""
    try:
        job = await JobLifecycleService(db, notifier).approve_via_token(job_id, token)
    except InvalidTokenError:
        return already_processed_page()
    return link_page("Request approved", f"{job.service_order_number} ({job.title}) is ready to start.")


@router.post("/{job_id}/reject", response_model=JobActionResponse)
async def reject_request(
    job_id: int,
    db: DbSession,
    manager: ManagerUser,
    notifier: NotifierDep,
    data: Optional[JobRejectRequest] = None,
):
    job = await JobLifecycleService(db, notifier).reject_request(manager, job_id, data.reason if data else None)
    return _action(job, "Request rejected")


@router.post("/{job_id}/assign", response_model=JobActionResponse)
async def assign_job(job_id: int, data: JobAssignRequest, db: DbSession, manager: ManagerUser):
    job = await JobLifecycleService(db).direct_assign(manager, job_id, data.technician_id)
    return _action(job, "Job assigned")


@router.post("/{job_id}/reassign", response_model=JobActionResponse)
async def reassign_job(job_id: int, data: JobReassignRequest, db: DbSession, manager: ManagerUser):
    job = await JobLifecycleService(db).reassign(manager, job_id, data.technician_id, data.reason)
    return _action(job, "Job reassigned")


@router.post("/{job_id}/start", response_model=JobActionResponse)
async def start_job(job_id: int, db: DbSession, tech: TechnicianUser):
    job = await JobLifecycleService(db).start(tech, job_id)
    return _action(job, "Job started")


@router.post("/{job_id}/complete", response_model=JobCompleteResponse)
async def complete_job(
    job_id: int,
    db: DbSession,
    tech: TechnicianUser,
    notifier: NotifierDep,
    data: Optional[JobCompleteRequest] = None,
):
    data = data or JobCompleteRequest()
    job, result = await JobLifecycleService(db, notifier).complete(tech, job_id, data.actual_time, data.notes)

    if result.bonus > 0:
        message = f"You beat the clock by {result.time_saved} minutes and earned ${result.bonus}"
    elif result.time_saved > 0:
        message = f"Saved {result.time_saved} minutes, not enough for a bonus unit"
    else:
        message = "Job completed"

    return JobCompleteResponse(
        job=JobResponse.from_job(job),
        incentive=IncentiveResult(
            time_saved=result.time_saved,
            units=result.units,
            incentive_earned=float(result.bonus),
            rule_id=result.rule_id,
            message=message,
        ),
    )


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_job(job_id: int, db: DbSession, manager: ManagerUser):
    job = await JobLifecycleService(db).cancel(manager, job_id)
    return _action(job, "Job cancelled")
