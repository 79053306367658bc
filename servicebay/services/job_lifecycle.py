"""Job lifecycle state machine.

    available --request--> pending-approval --approve--> available (assigned)
        |                         |--reject--> available (open again)
        |--assign--> available (assigned)
        |--start--> in-progress --complete--> completed
        |                 |--reassign--> available (timer discarded)
        `--cancel--> cancelled

Every transition is a conditional UPDATE keyed on the status it expects, so
two technicians racing for the same job cannot both win; the loser gets
InvalidStateError. Notifications go out only after the commit and never fail
the transition.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
import logging

from sqlalchemy import select, update, delete, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from servicebay.exceptions import (
    InvalidStateError,
    InvalidTokenError,
    NotEligibleError,
    NotFoundError,
)
from servicebay.models.capability_token import CapabilityToken
from servicebay.models.job import Job, JobStatus, AssignmentType, RequestStatus
from servicebay.models.job_audit import JobAuditLog
from servicebay.models.shop import Shop
from servicebay.models.user import User, MembershipStatus
from servicebay.schemas.job import JobCreate, JobUpdate
from servicebay.security.rbac import ensure_same_shop
from servicebay.services import capability_tokens as tokens
from servicebay.services.incentive_engine import BonusResult, compute_bonus, select_active_rule
from servicebay.services.notifications import Notifier, NotificationKind, public_url
from servicebay.services.service_orders import next_service_order_number

logger = logging.getLogger(__name__)

SOURCE_API = "api"
SOURCE_EMAIL_LINK = "email_link"

EDITABLE_STATUSES = (JobStatus.AVAILABLE.value, JobStatus.PENDING_APPROVAL.value)


def elapsed_minutes(started_at: datetime, now: datetime) -> int:
    """Whole minutes between two instants, rounded half up, never negative."""
    seconds = max((now - started_at).total_seconds(), 0)
    return int(seconds / 60 + 0.5)


class JobLifecycleService:
    def __init__(self, db: AsyncSession, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier
        self._outbox: list[tuple[User, NotificationKind, dict]] = []

    async def _commit(self) -> None:
        await self.db.commit()
        outbox, self._outbox = self._outbox, []
        if self.notifier is None:
            return
        for recipient, kind, data in outbox:
            await self.notifier.notify(recipient, kind, data)

    def _audit(
        self,
        job: Job,
        action: str,
        actor: Optional[User],
        description: str,
        changes: Optional[dict[str, Any]] = None,
        source: str = SOURCE_API,
    ) -> None:
        self.db.add(JobAuditLog(
            job_id=job.id,
            action=action,
            description=description,
            actor_id=actor.id if actor else None,
            source=source,
            changes=changes,
        ))

    async def _transition(self, job: Job, expected: dict[str, Any], **values) -> bool:
        """Conditional update of one job. False when another writer got there first."""
        conditions = [Job.id == job.id]
        for column, value in expected.items():
            attr = getattr(Job, column)
            if isinstance(value, (list, tuple, set)):
                conditions.append(attr.in_(value))
            elif value is None:
                conditions.append(attr.is_(None))
            else:
                conditions.append(attr == value)

        result = await self.db.execute(
            update(Job)
            .where(*conditions)
            .values(updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _finish(self, job: Job) -> Job:
        await self._commit()
        await self.db.refresh(job)
        return job

    # Lookups and eligibility

    async def _load(self, job_id: int) -> Job:
        job = await self.db.get(Job, job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def _load_for_manager(self, manager: User, job_id: int) -> Job:
        job = await self._load(job_id)
        ensure_same_shop(manager, job.shop_id, "job")
        return job

    async def _load_technician(self, tech_id: int) -> User:
        tech = await self.db.get(User, tech_id)
        if tech is None or not tech.is_technician:
            raise NotFoundError("Technician", tech_id)
        return tech

    @staticmethod
    def ensure_eligible(tech: User, job: Job) -> None:
        """An approved, active member of the job's shop holding its certification."""
        if not tech.is_technician:
            raise NotEligibleError("Only technicians can work jobs")
        if not tech.is_active or tech.membership_status != MembershipStatus.APPROVED.value:
            raise NotEligibleError("Technician is not an approved member of a shop")
        ensure_same_shop(tech, job.shop_id, "job")
        if not tech.holds(job.required_cert):
            raise NotEligibleError(f"{job.required_cert} certification required for this job")

    def _can_view(self, user: User, job: Job) -> bool:
        if user.shop_id is None or user.shop_id != job.shop_id:
            return False
        if user.is_manager:
            return True
        if job.assigned_tech_id == user.id or job.requested_by_id == user.id:
            return True
        return (
            job.status == JobStatus.AVAILABLE.value
            and job.assigned_tech_id is None
            and user.holds(job.required_cert)
        )

    async def _shop_manager(self, shop_id: int) -> Optional[User]:
        shop = await self.db.get(Shop, shop_id)
        if shop is None:
            return None
        return await self.db.get(User, shop.manager_id)

    # Queries

    async def get(self, user: User, job_id: int) -> Job:
        job = await self._load(job_id)
        if not self._can_view(user, job):
            raise NotEligibleError("You do not have access to this job")
        return job

    async def list_jobs(
        self,
        user: User,
        status: Optional[str] = None,
        required_cert: Optional[str] = None,
    ) -> list[Job]:
        """Managers see their shop's jobs; technicians see open jobs they can work."""
        query = select(Job).where(Job.shop_id == user.shop_id)

        if user.is_manager:
            if status:
                query = query.where(Job.status == status)
            if required_cert:
                query = query.where(Job.required_cert == required_cert)
        else:
            certs = list(user.certifications or [])
            if required_cert:
                certs = [c for c in certs if c == required_cert]
            query = query.where(
                Job.status == JobStatus.AVAILABLE.value,
                Job.required_cert.in_(certs),
                or_(Job.assigned_tech_id.is_(None), Job.assigned_tech_id == user.id),
            )

        result = await self.db.execute(query.order_by(Job.created_at.desc(), Job.id.desc()))
        return list(result.scalars().all())

    async def my_jobs(self, tech: User, status: Optional[str] = None) -> list[Job]:
        """Jobs assigned to the technician plus their open requests."""
        query = select(Job).where(
            or_(
                Job.assigned_tech_id == tech.id,
                and_(
                    Job.requested_by_id == tech.id,
                    Job.request_status == RequestStatus.PENDING.value,
                ),
            )
        )
        if status:
            query = query.where(Job.status == status)
        result = await self.db.execute(query.order_by(Job.updated_at.desc(), Job.id.desc()))
        return list(result.scalars().all())

    async def list_pending_requests(self, manager: User) -> list[Job]:
        result = await self.db.execute(
            select(Job)
            .where(
                Job.shop_id == manager.shop_id,
                Job.status == JobStatus.PENDING_APPROVAL.value,
                Job.request_status == RequestStatus.PENDING.value,
            )
            .order_by(Job.updated_at.asc(), Job.id.asc())
        )
        return list(result.scalars().all())

    async def history(self, user: User, job_id: int) -> list[JobAuditLog]:
        job = await self.get(user, job_id)
        result = await self.db.execute(
            select(JobAuditLog)
            .where(JobAuditLog.job_id == job.id)
            .order_by(JobAuditLog.created_at.asc(), JobAuditLog.id.asc())
        )
        return list(result.scalars().all())

    # Manager operations

    async def create(self, manager: User, data: JobCreate) -> Job:
        if manager.shop_id is None:
            raise NotEligibleError("You must own a shop to create jobs")

        vehicle = data.vehicle
        job = Job(
            service_order_number=await next_service_order_number(self.db),
            title=data.title,
            description=data.description,
            vehicle_make=vehicle.make if vehicle else None,
            vehicle_model=vehicle.model if vehicle else None,
            vehicle_year=vehicle.year if vehicle else None,
            vehicle_vin=vehicle.vin if vehicle else None,
            required_cert=data.required_cert.value,
            book_time=data.book_time,
            priority=data.priority.value,
            status=JobStatus.AVAILABLE.value,
            request_status=RequestStatus.NONE.value,
            assignment_type=AssignmentType.NONE.value,
            shop_id=manager.shop_id,
            created_by_id=manager.id,
        )
        self.db.add(job)
        await self.db.flush()

        self._audit(job, "created", manager, f"Job {job.service_order_number} created")
        await self._finish(job)
        logger.info(f"Job {job.id} ({job.service_order_number}) created by manager {manager.id}")
        return job

    async def update(self, manager: User, job_id: int, data: JobUpdate) -> Job:
        job = await self._load_for_manager(manager, job_id)
        if job.status not in EDITABLE_STATUSES:
            raise InvalidStateError(f"Cannot edit a job that is {job.status}")

        fields = data.model_dump(exclude_unset=True)
        vehicle = fields.pop("vehicle", None)
        if vehicle is not None:
            for key, value in vehicle.items():
                fields[f"vehicle_{key}"] = value
        for key in ("required_cert", "priority"):
            if fields.get(key) is not None:
                fields[key] = getattr(data, key).value

        new_cert = fields.get("required_cert")
        if new_cert and new_cert != job.required_cert:
            for holder_id in {job.assigned_tech_id, job.requested_by_id} - {None}:
                holder = await self.db.get(User, holder_id)
                if holder is not None and not holder.holds(new_cert):
                    raise NotEligibleError(
                        f"Technician {holder.name} does not hold {new_cert} certification"
                    )

        changes = {}
        for key, value in fields.items():
            if value is None and key in ("title", "book_time", "required_cert", "priority"):
                continue
            old = getattr(job, key)
            if old != value:
                changes[key] = {"old": old, "new": value}
                setattr(job, key, value)

        if changes:
            self._audit(job, "updated", manager, f"Updated {', '.join(sorted(changes))}", changes)
        return await self._finish(job)

    async def approve_request(self, manager: User, job_id: int) -> Job:
        job = await self._load_for_manager(manager, job_id)
        await self._approve(job, manager, approver_id=manager.id, source=SOURCE_API)
        return await self._finish(job)

    async def approve_via_token(self, job_id: int, token: str) -> Job:
        """Approve a request from an emailed link; the token stands in for the manager."""
        await tokens.consume(self.db, token, tokens.SUBJECT_JOB, tokens.ACTION_APPROVE, subject_id=job_id)
        job = await self._load(job_id)
        shop = await self.db.get(Shop, job.shop_id)
        try:
            await self._approve(job, None, approver_id=shop.manager_id if shop else None, source=SOURCE_EMAIL_LINK)
        except InvalidStateError:
            await self.db.rollback()
            raise InvalidTokenError()
        return await self._finish(job)

    async def _approve(self, job: Job, actor: Optional[User], approver_id: Optional[int], source: str) -> None:
        requester_id = job.requested_by_id
        now = datetime.utcnow()
        won = await self._transition(
            job,
            {
                "status": JobStatus.PENDING_APPROVAL.value,
                "request_status": RequestStatus.PENDING.value,
                "requested_by_id": requester_id,
            },
            status=JobStatus.AVAILABLE.value,
            request_status=RequestStatus.APPROVED.value,
            assigned_tech_id=requester_id,
            approved_by_id=approver_id,
            approved_at=now,
        )
        if not won or requester_id is None:
            raise InvalidStateError("There is no pending request to approve")

        await tokens.revoke_all(self.db, tokens.SUBJECT_JOB, job.id)
        self._audit(
            job, "approved", actor,
            f"Request by technician {requester_id} approved",
            {"assigned_tech_id": {"old": job.assigned_tech_id, "new": requester_id}},
            source=source,
        )

        requester = await self.db.get(User, requester_id)
        if requester is not None:
            self._outbox.append((requester, NotificationKind.JOB_DECISION_TO_TECH, {
                "approved": True,
                "job_title": job.title,
                "service_order_number": job.service_order_number,
            }))
        logger.info(f"Job {job.id} request approved for technician {requester_id} via {source}")

    async def reject_request(self, manager: User, job_id: int, reason: Optional[str] = None) -> Job:
        job = await self._load_for_manager(manager, job_id)
        requester_id = job.requested_by_id

        won = await self._transition(
            job,
            {
                "status": JobStatus.PENDING_APPROVAL.value,
                "request_status": RequestStatus.PENDING.value,
            },
            status=JobStatus.AVAILABLE.value,
            request_status=RequestStatus.REJECTED.value,
            requested_by_id=None,
            assignment_type=AssignmentType.NONE.value,
            rejected_reason=reason or "",
        )
        if not won:
            raise InvalidStateError("There is no pending request to reject")

        await tokens.revoke_all(self.db, tokens.SUBJECT_JOB, job.id)
        self._audit(job, "rejected", manager, f"Request by technician {requester_id} rejected", {
            "requested_by_id": {"old": requester_id, "new": None},
            "reason": reason,
        })

        requester = await self.db.get(User, requester_id) if requester_id else None
        if requester is not None:
            self._outbox.append((requester, NotificationKind.JOB_DECISION_TO_TECH, {
                "approved": False,
                "job_title": job.title,
                "service_order_number": job.service_order_number,
                "reason": reason,
            }))
        logger.info(f"Job {job.id} request rejected by manager {manager.id}")
        return await self._finish(job)

    async def direct_assign(self, manager: User, job_id: int, tech_id: int) -> Job:
        job = await self._load_for_manager(manager, job_id)
        tech = await self._load_technician(tech_id)
        self.ensure_eligible(tech, job)

        won = await self._transition(
            job,
            {"status": JobStatus.AVAILABLE.value},
            assigned_tech_id=tech.id,
            assignment_type=AssignmentType.DIRECT.value,
            request_status=RequestStatus.APPROVED.value,
            approved_by_id=manager.id,
            approved_at=datetime.utcnow(),
        )
        if not won:
            raise InvalidStateError("Only available jobs can be assigned")

        self._audit(job, "assigned", manager, f"Assigned to technician {tech.id}", {
            "assigned_tech_id": {"old": job.assigned_tech_id, "new": tech.id},
        })
        logger.info(f"Job {job.id} assigned to technician {tech.id} by manager {manager.id}")
        return await self._finish(job)

    async def reassign(self, manager: User, job_id: int, tech_id: int, reason: Optional[str] = None) -> Job:
        """Hand a job to another technician. In-progress work is discarded."""
        job = await self._load_for_manager(manager, job_id)
        if job.is_terminal:
            raise InvalidStateError(f"Cannot reassign a job that is {job.status}")

        tech = await self._load_technician(tech_id)
        self.ensure_eligible(tech, job)

        previous_tech_id = job.assigned_tech_id
        previous_status = job.status
        values = dict(
            assigned_tech_id=tech.id,
            assignment_type=AssignmentType.DIRECT.value,
            request_status=RequestStatus.APPROVED.value,
            approved_by_id=manager.id,
            approved_at=datetime.utcnow(),
        )
        if previous_status in (JobStatus.IN_PROGRESS.value, JobStatus.PENDING_APPROVAL.value):
            values.update(status=JobStatus.AVAILABLE.value, started_at=None, requested_by_id=None)

        won = await self._transition(
            job,
            {"status": previous_status, "assigned_tech_id": previous_tech_id},
            **values,
        )
        if not won:
            raise InvalidStateError("Job changed while reassigning; reload and try again")

        await tokens.revoke_all(self.db, tokens.SUBJECT_JOB, job.id)
        self._audit(
            job, "reassigned", manager,
            f"Reassigned from technician {previous_tech_id} to {tech.id}: {reason or 'no reason given'}",
            {
                "assigned_tech_id": {"old": previous_tech_id, "new": tech.id},
                "status": {"old": previous_status, "new": values.get("status", previous_status)},
                "reason": reason,
            },
        )
        logger.info(f"Job {job.id} reassigned {previous_tech_id} -> {tech.id} by manager {manager.id}")
        return await self._finish(job)

    async def cancel(self, manager: User, job_id: int) -> Job:
        job = await self._load_for_manager(manager, job_id)
        if job.status == JobStatus.IN_PROGRESS.value:
            raise InvalidStateError("Cannot cancel a job in progress; reassign or complete it first")
        if job.is_terminal:
            raise InvalidStateError(f"Job is already {job.status}")

        won = await self._transition(
            job,
            {"status": EDITABLE_STATUSES},
            status=JobStatus.CANCELLED.value,
        )
        if not won:
            raise InvalidStateError("Job changed while cancelling; reload and try again")

        await tokens.revoke_all(self.db, tokens.SUBJECT_JOB, job.id)
        self._audit(job, "cancelled", manager, "Job cancelled", {
            "status": {"old": job.status, "new": JobStatus.CANCELLED.value},
        })
        logger.info(f"Job {job.id} cancelled by manager {manager.id}")
        return await self._finish(job)

    async def delete(self, manager: User, job_id: int) -> None:
        job = await self._load_for_manager(manager, job_id)
        if job.status == JobStatus.IN_PROGRESS.value:
            raise InvalidStateError("Cannot delete a job in progress; reassign or complete it first")

        await self.db.execute(delete(JobAuditLog).where(JobAuditLog.job_id == job.id))
        await self.db.execute(
            delete(CapabilityToken).where(
                CapabilityToken.subject_type == tokens.SUBJECT_JOB,
                CapabilityToken.subject_id == job.id,
            )
        )
        result = await self.db.execute(
            delete(Job)
            .where(Job.id == job.id, Job.status != JobStatus.IN_PROGRESS.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidStateError("Job was started while deleting")

        self.db.expunge(job)
        await self._commit()
        logger.info(f"Job {job_id} deleted by manager {manager.id}")

    # Technician operations

    async def request_to_work(self, tech: User, job_id: int) -> Job:
        job = await self._load(job_id)
        self.ensure_eligible(tech, job)
        if job.status != JobStatus.AVAILABLE.value:
            raise InvalidStateError("Job is not available")
        if job.assigned_tech_id is not None:
            raise InvalidStateError("Job is already assigned")

        won = await self._transition(
            job,
            {"status": JobStatus.AVAILABLE.value, "assigned_tech_id": None},
            status=JobStatus.PENDING_APPROVAL.value,
            request_status=RequestStatus.PENDING.value,
            requested_by_id=tech.id,
            assignment_type=AssignmentType.REQUESTED.value,
            rejected_reason="",
        )
        if not won:
            raise InvalidStateError("Job is not available")

        await tokens.revoke_all(self.db, tokens.SUBJECT_JOB, job.id)
        approve_token = await tokens.mint(self.db, tokens.SUBJECT_JOB, job.id, tokens.ACTION_APPROVE)
        self._audit(job, "requested", tech, f"Technician {tech.id} requested this job")

        manager = await self._shop_manager(job.shop_id)
        if manager is not None:
            self._outbox.append((manager, NotificationKind.JOB_REQUEST_TO_MANAGER, {
                "technician_name": tech.name,
                "job_title": job.title,
                "service_order_number": job.service_order_number,
                "approve_url": public_url(f"/api/v2/jobs/{job.id}/email-approve?token={approve_token}"),
            }))
        logger.info(f"Technician {tech.id} requested job {job.id}")
        return await self._finish(job)

    async def start(self, tech: User, job_id: int) -> Job:
        job = await self._load(job_id)
        self.ensure_eligible(tech, job)
        if job.assigned_tech_id is not None and job.assigned_tech_id != tech.id:
            raise NotEligibleError("This job is assigned to another technician")
        if job.status != JobStatus.AVAILABLE.value:
            raise InvalidStateError("Job is not available to start")

        started_at = datetime.utcnow()
        won = await self._transition(
            job,
            {"status": JobStatus.AVAILABLE.value, "assigned_tech_id": job.assigned_tech_id},
            status=JobStatus.IN_PROGRESS.value,
            assigned_tech_id=tech.id,
            started_at=started_at,
        )
        if not won:
            raise InvalidStateError("Job was taken by another technician")

        self._audit(job, "started", tech, f"Started by technician {tech.id}")
        logger.info(f"Job {job.id} started by technician {tech.id}")
        return await self._finish(job)

    async def complete(
        self,
        tech: User,
        job_id: int,
        actual_time: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> tuple[Job, BonusResult]:
        """Finish a job and pay out its bonus.

        A caller-supplied actual_time overrides the measured duration and is
        not checked against started_at.
        """
        job = await self._load(job_id)
        if job.status != JobStatus.IN_PROGRESS.value:
            raise InvalidStateError("Only jobs in progress can be completed")
        if job.assigned_tech_id != tech.id:
            raise NotEligibleError("This job is assigned to another technician")

        now = datetime.utcnow()
        if actual_time is None:
            actual_time = elapsed_minutes(job.started_at, now)
        if actual_time < 0:
            raise InvalidStateError("Actual time cannot be negative")

        rule = await select_active_rule(self.db, job.shop_id, job.required_cert, as_of=now)
        result = compute_bonus(job.book_time, actual_time, rule, tech.bonus_multiplier or Decimal("1"))

        values = dict(
            status=JobStatus.COMPLETED.value,
            completed_at=now,
            actual_time=actual_time,
            time_saved=result.time_saved,
            incentive_earned=result.bonus,
        )
        if notes is not None:
            values["notes"] = notes
        won = await self._transition(
            job,
            {"status": JobStatus.IN_PROGRESS.value, "assigned_tech_id": tech.id},
            **values,
        )
        if not won:
            raise InvalidStateError("Job is no longer in progress")

        await self.db.execute(
            update(User)
            .where(User.id == tech.id)
            .values(
                weekly_earnings=User.weekly_earnings + result.bonus,
                total_jobs_completed=User.total_jobs_completed + 1,
                total_time_saved=User.total_time_saved + result.time_saved,
            )
            .execution_options(synchronize_session=False)
        )
        self._audit(job, "completed", tech, f"Completed in {actual_time} min (book {job.book_time})", {
            "actual_time": actual_time,
            "time_saved": result.time_saved,
            "incentive_earned": str(result.bonus),
            "rule_id": result.rule_id,
        })

        if result.bonus > 0:
            self._outbox.append((tech, NotificationKind.BONUS_EARNED, {
                "job_title": job.title,
                "time_saved": result.time_saved,
                "incentive_earned": result.bonus,
            }))

        await self._finish(job)
        await self.db.refresh(tech)
        logger.info(f"Job {job.id} completed by technician {tech.id}, bonus {result.bonus}")
        return job, result
