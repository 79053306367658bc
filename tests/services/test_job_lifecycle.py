"""
Tests for the job lifecycle state machine.

Covers eligibility, the request/approval workflow, single-writer transitions,
reassignment and completion payouts.
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import select

from servicebay.exceptions import InvalidStateError, InvalidTokenError, NotEligibleError, NotFoundError
from servicebay.models.capability_token import CapabilityToken
from servicebay.models.job import Job, JobStatus, RequestStatus, AssignmentType
from servicebay.models.user import User
from servicebay.schemas.job import JobCreate, JobUpdate
from servicebay.services.email_service import MockEmailService
from servicebay.services.job_lifecycle import JobLifecycleService, elapsed_minutes
from servicebay.services.notifications import Notifier
from servicebay.services.service_orders import next_service_order_number


async def create_job(db, manager, **overrides):
    data = {"title": "Oil Change", "required_cert": "Engine", "book_time": 120}
    data.update(overrides)
    return await JobLifecycleService(db).create(manager, JobCreate(**data))


async def open_tokens(db, job_id):
    result = await db.execute(
        select(CapabilityToken).where(
            CapabilityToken.subject_type == "job",
            CapabilityToken.subject_id == job_id,
        )
    )
    return [t for t in result.scalars().all() if t.is_open]


class ExplodingEmailService(MockEmailService):
    async def send_email(self, *args, **kwargs):
        raise RuntimeError("mail relay down")


class TestCreate:
    @pytest.mark.asyncio
    async def test_service_order_numbers_are_sequential(self, test_db, manager, shop):
        first = await create_job(test_db, manager)
        second = await create_job(test_db, manager, title="Brake pads", required_cert="Brakes")

        assert first.service_order_number == "SO-001001"
        assert second.service_order_number == "SO-001002"

    @pytest.mark.asyncio
    async def test_rolled_back_number_is_not_reissued(self, test_db, session_maker, manager, shop):
        first = await create_job(test_db, manager)

        async with session_maker() as session:
            dropped = await next_service_order_number(session)
            await session.rollback()

        after = await create_job(test_db, manager)

        assert first.service_order_number == "SO-001001"
        assert dropped == "SO-001002"
        assert after.service_order_number == "SO-001003"

    @pytest.mark.asyncio
    async def test_new_job_is_available_and_unassigned(self, test_db, manager, shop):
        job = await create_job(test_db, manager, vehicle={"make": "Honda", "model": "Civic", "year": 2018})

        assert job.status == JobStatus.AVAILABLE.value
        assert job.assigned_tech_id is None
        assert job.request_status == RequestStatus.NONE.value
        assert job.shop_id == shop.id
        assert job.vehicle_make == "Honda"

    @pytest.mark.asyncio
    async def test_creation_is_audited(self, test_db, manager, shop):
        job = await create_job(test_db, manager)
        history = await JobLifecycleService(test_db).history(manager, job.id)
        assert [entry.action for entry in history] == ["created"]


class TestEligibility:
    @pytest.mark.asyncio
    async def test_missing_certification_leaves_job_untouched(self, test_db, manager, ev_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)

        with pytest.raises(NotEligibleError):
            await service.request_to_work(ev_technician, job.id)
        with pytest.raises(NotEligibleError):
            await service.start(ev_technician, job.id)

        await test_db.refresh(job)
        assert job.status == JobStatus.AVAILABLE.value
        assert job.requested_by_id is None
        assert job.assigned_tech_id is None

    @pytest.mark.asyncio
    async def test_pending_member_is_not_eligible(self, test_db, manager, shop, make_technician):
        pending = await make_technician(shop, "pending@example.com", approved=False)
        job = await create_job(test_db, manager)

        with pytest.raises(NotEligibleError):
            await JobLifecycleService(test_db).start(pending, job.id)

    @pytest.mark.asyncio
    async def test_other_shop_technician_is_not_eligible(self, test_db, manager, make_shop, make_technician):
        _, other_shop = await make_shop(name="Uptown", code="TG-CD34", email="other@example.com")
        outsider = await make_technician(other_shop, "outsider@example.com")
        job = await create_job(test_db, manager)

        with pytest.raises(NotEligibleError):
            await JobLifecycleService(test_db).request_to_work(outsider, job.id)

    @pytest.mark.asyncio
    async def test_technician_listing_filters_by_certification(self, test_db, manager, technician, ev_technician):
        await create_job(test_db, manager, title="Engine job")
        await create_job(test_db, manager, title="EV job", required_cert="EV")
        service = JobLifecycleService(test_db)

        assert [j.title for j in await service.list_jobs(technician)] == ["Engine job"]
        assert [j.title for j in await service.list_jobs(ev_technician)] == ["EV job"]


class TestRequestWorkflow:
    @pytest.mark.asyncio
    async def test_request_notifies_manager_with_link(self, test_db, manager, technician, notifier, email_service):
        job = await create_job(test_db, manager)
        job = await JobLifecycleService(test_db, notifier).request_to_work(technician, job.id)

        assert job.status == JobStatus.PENDING_APPROVAL.value
        assert job.requested_by_id == technician.id
        assert job.assignment_type == AssignmentType.REQUESTED.value

        sent = email_service._sent_emails
        assert len(sent) == 1
        assert sent[0]["to"] == manager.email
        tokens = await open_tokens(test_db, job.id)
        assert len(tokens) == 1
        assert f"/api/v2/jobs/{job.id}/email-approve?token={tokens[0].token}" in sent[0]["body"]

    @pytest.mark.asyncio
    async def test_approve_assigns_requester(self, test_db, manager, technician, notifier, email_service):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db, notifier)
        await service.request_to_work(technician, job.id)

        job = await service.approve_request(manager, job.id)

        assert job.status == JobStatus.AVAILABLE.value
        assert job.assigned_tech_id == technician.id
        assert job.request_status == RequestStatus.APPROVED.value
        assert job.approved_by_id == manager.id
        assert await open_tokens(test_db, job.id) == []
        assert email_service._sent_emails[-1]["subject"] == "Job request approved"

    @pytest.mark.asyncio
    async def test_second_approve_is_invalid_state(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, job.id)
        await service.approve_request(manager, job.id)

        with pytest.raises(InvalidStateError):
            await service.approve_request(manager, job.id)

    @pytest.mark.asyncio
    async def test_email_token_is_single_use(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, job.id)
        token = (await open_tokens(test_db, job.id))[0].token

        job = await service.approve_via_token(job.id, token)
        assert job.assigned_tech_id == technician.id
        assert job.approved_by_id == manager.id

        with pytest.raises(InvalidTokenError):
            await service.approve_via_token(job.id, token)

    @pytest.mark.asyncio
    async def test_token_for_another_job_is_rejected(self, test_db, manager, technician):
        first = await create_job(test_db, manager)
        second = await create_job(test_db, manager, title="Timing belt")
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, first.id)
        token = (await open_tokens(test_db, first.id))[0].token

        with pytest.raises(InvalidTokenError):
            await service.approve_via_token(second.id, token)

    @pytest.mark.asyncio
    async def test_session_approval_spends_email_link(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, job.id)
        token = (await open_tokens(test_db, job.id))[0].token

        await service.approve_request(manager, job.id)

        with pytest.raises(InvalidTokenError):
            await service.approve_via_token(job.id, token)

    @pytest.mark.asyncio
    async def test_reject_reopens_job(self, test_db, manager, technician, second_technician, notifier, email_service):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db, notifier)
        await service.request_to_work(technician, job.id)

        job = await service.reject_request(manager, job.id, reason="Need you on brakes today")

        assert job.status == JobStatus.AVAILABLE.value
        assert job.requested_by_id is None
        assert job.request_status == RequestStatus.REJECTED.value
        assert job.rejected_reason == "Need you on brakes today"
        assert "Need you on brakes today" in email_service._sent_emails[-1]["body"]

        job = await service.request_to_work(second_technician, job.id)
        assert job.requested_by_id == second_technician.id

    @pytest.mark.asyncio
    async def test_cannot_request_pending_job(self, test_db, manager, technician, second_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, job.id)

        with pytest.raises(InvalidStateError):
            await service.request_to_work(second_technician, job.id)

    @pytest.mark.asyncio
    async def test_my_jobs_includes_open_requests(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, job.id)

        assert [j.id for j in await service.my_jobs(technician)] == [job.id]
        assert [j.id for j in await service.list_pending_requests(manager)] == [job.id]


class TestStart:
    @pytest.mark.asyncio
    async def test_start_claims_open_job(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        job = await JobLifecycleService(test_db).start(technician, job.id)

        assert job.status == JobStatus.IN_PROGRESS.value
        assert job.assigned_tech_id == technician.id
        assert job.started_at is not None

    @pytest.mark.asyncio
    async def test_assigned_job_belongs_to_assignee(self, test_db, manager, technician, second_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.direct_assign(manager, job.id, technician.id)

        with pytest.raises(NotEligibleError):
            await service.start(second_technician, job.id)

        job = await service.start(technician, job.id)
        assert job.status == JobStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_concurrent_start_has_one_winner(
        self, test_db, session_maker, manager, technician, second_technician
    ):
        job = await create_job(test_db, manager)

        async with session_maker() as session_a, session_maker() as session_b:
            tech_a = await session_a.get(User, technician.id)
            tech_b = await session_b.get(User, second_technician.id)
            # B reads the job while it is still available
            stale = await session_b.get(Job, job.id)
            assert stale.status == JobStatus.AVAILABLE.value

            await JobLifecycleService(session_a).start(tech_a, job.id)

            with pytest.raises(InvalidStateError):
                await JobLifecycleService(session_b).start(tech_b, job.id)

        await test_db.refresh(job)
        assert job.status == JobStatus.IN_PROGRESS.value
        assert job.assigned_tech_id == technician.id

    @pytest.mark.asyncio
    async def test_concurrent_request_has_one_winner(
        self, test_db, session_maker, manager, technician, second_technician
    ):
        job = await create_job(test_db, manager)

        async with session_maker() as session_a, session_maker() as session_b:
            tech_a = await session_a.get(User, technician.id)
            tech_b = await session_b.get(User, second_technician.id)
            stale = await session_b.get(Job, job.id)
            assert stale.status == JobStatus.AVAILABLE.value

            won = await JobLifecycleService(session_a).request_to_work(tech_a, job.id)
            assert won.status == JobStatus.PENDING_APPROVAL.value

            with pytest.raises(InvalidStateError):
                await JobLifecycleService(session_b).request_to_work(tech_b, job.id)

        await test_db.refresh(job)
        assert job.status == JobStatus.PENDING_APPROVAL.value
        assert job.requested_by_id == technician.id
        assert len(await open_tokens(test_db, job.id)) == 1

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(technician, job.id)

        with pytest.raises(InvalidStateError):
            await service.start(technician, job.id)


class TestReassign:
    @pytest.mark.asyncio
    async def test_reassign_discards_timer(self, test_db, manager, technician, second_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        job = await service.start(technician, job.id)
        first_start = job.started_at

        job = await service.reassign(manager, job.id, second_technician.id, reason="Alex went home sick")
        assert job.status == JobStatus.AVAILABLE.value
        assert job.started_at is None
        assert job.assigned_tech_id == second_technician.id

        await asyncio.sleep(0.01)
        job = await service.start(second_technician, job.id)
        assert job.started_at > first_start

        history = await service.history(manager, job.id)
        reassigned = [entry for entry in history if entry.action == "reassigned"][0]
        assert reassigned.changes["assigned_tech_id"] == {"old": technician.id, "new": second_technician.id}
        assert "Alex went home sick" in reassigned.description

    @pytest.mark.asyncio
    async def test_reassign_supersedes_pending_request(self, test_db, manager, technician, second_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, job.id)
        token = (await open_tokens(test_db, job.id))[0].token

        job = await service.reassign(manager, job.id, second_technician.id)
        assert job.requested_by_id is None
        assert job.assigned_tech_id == second_technician.id

        with pytest.raises(InvalidTokenError):
            await service.approve_via_token(job.id, token)

    @pytest.mark.asyncio
    async def test_reassign_requires_certification(self, test_db, manager, technician, ev_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(technician, job.id)

        with pytest.raises(NotEligibleError):
            await service.reassign(manager, job.id, ev_technician.id)

    @pytest.mark.asyncio
    async def test_cannot_reassign_completed_job(self, test_db, manager, technician, second_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(technician, job.id)
        await service.complete(technician, job.id, actual_time=100)

        with pytest.raises(InvalidStateError):
            await service.reassign(manager, job.id, second_technician.id)


class TestComplete:
    @pytest.mark.asyncio
    async def test_completion_pays_bonus(self, test_db, manager, technician, rule, notifier, email_service):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db, notifier)
        await service.start(technician, job.id)

        job, result = await service.complete(technician, job.id, actual_time=60, notes="Went smoothly")

        assert job.status == JobStatus.COMPLETED.value
        assert job.actual_time == 60
        assert job.time_saved == 60
        assert Decimal(str(job.incentive_earned)) == Decimal("20.00")
        assert job.notes == "Went smoothly"
        assert job.completed_at is not None
        assert result.units == 2
        assert result.rule_id == rule.id

        assert Decimal(str(technician.weekly_earnings)) == Decimal("20.00")
        assert technician.total_jobs_completed == 1
        assert technician.total_time_saved == 60
        assert email_service._sent_emails[-1]["subject"] == "Efficiency Bonus Earned!"
        assert email_service._sent_emails[-1]["to"] == technician.email

    @pytest.mark.asyncio
    async def test_multiplier_applies(self, test_db, manager, shop, rule, make_technician):
        ace = await make_technician(shop, "ace@example.com", multiplier="2.00")
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(ace, job.id)

        _, result = await service.complete(ace, job.id, actual_time=90)
        assert result.bonus == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_over_book_time_earns_nothing(self, test_db, manager, technician, rule, notifier, email_service):
        job = await create_job(test_db, manager, book_time=60)
        service = JobLifecycleService(test_db, notifier)
        await service.start(technician, job.id)

        job, result = await service.complete(technician, job.id, actual_time=75)

        assert result.bonus == Decimal("0.00")
        assert job.time_saved == 0
        assert technician.total_jobs_completed == 1
        assert email_service._sent_emails == []

    @pytest.mark.asyncio
    async def test_measured_duration_used_when_not_supplied(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(technician, job.id)

        job, _ = await service.complete(technician, job.id)
        assert job.actual_time == 0

    @pytest.mark.asyncio
    async def test_only_assignee_completes(self, test_db, manager, technician, second_technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(technician, job.id)

        with pytest.raises(NotEligibleError):
            await service.complete(second_technician, job.id, actual_time=30)

    @pytest.mark.asyncio
    async def test_cannot_complete_unstarted_job(self, test_db, manager, technician):
        job = await create_job(test_db, manager)

        with pytest.raises(InvalidStateError):
            await JobLifecycleService(test_db).complete(technician, job.id, actual_time=30)

    @pytest.mark.asyncio
    async def test_cannot_complete_twice(self, test_db, manager, technician, rule):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(technician, job.id)
        await service.complete(technician, job.id, actual_time=60)

        with pytest.raises(InvalidStateError):
            await service.complete(technician, job.id, actual_time=60)
        await test_db.refresh(technician)
        assert Decimal(str(technician.weekly_earnings)) == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_mail_outage_does_not_undo_completion(self, test_db, manager, technician, rule):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db, Notifier(ExplodingEmailService()))
        await service.start(technician, job.id)

        job, result = await service.complete(technician, job.id, actual_time=60)

        assert result.bonus == Decimal("20.00")
        await test_db.refresh(job)
        assert job.status == JobStatus.COMPLETED.value


class TestManagerEdits:
    @pytest.mark.asyncio
    async def test_cannot_cancel_in_progress(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.start(technician, job.id)

        with pytest.raises(InvalidStateError):
            await service.cancel(manager, job.id)
        with pytest.raises(InvalidStateError):
            await service.delete(manager, job.id)

    @pytest.mark.asyncio
    async def test_cancel_available_job(self, test_db, manager):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)

        job = await service.cancel(manager, job.id)
        assert job.status == JobStatus.CANCELLED.value

        with pytest.raises(InvalidStateError):
            await service.cancel(manager, job.id)

    @pytest.mark.asyncio
    async def test_delete_removes_job(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.request_to_work(technician, job.id)
        job_id = job.id

        await service.delete(manager, job_id)

        with pytest.raises(NotFoundError):
            await service.get(manager, job_id)
        assert await open_tokens(test_db, job_id) == []

    @pytest.mark.asyncio
    async def test_update_records_changes(self, test_db, manager):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)

        job = await service.update(manager, job.id, JobUpdate(book_time=90, priority="high"))

        assert job.book_time == 90
        assert job.priority == "high"
        history = await service.history(manager, job.id)
        assert history[-1].action == "updated"
        assert history[-1].changes["book_time"] == {"old": 120, "new": 90}

    @pytest.mark.asyncio
    async def test_cert_change_must_fit_assignee(self, test_db, manager, technician):
        job = await create_job(test_db, manager)
        service = JobLifecycleService(test_db)
        await service.direct_assign(manager, job.id, technician.id)

        with pytest.raises(NotEligibleError):
            await service.update(manager, job.id, JobUpdate(required_cert="EV"))

    @pytest.mark.asyncio
    async def test_other_shop_manager_cannot_touch_job(self, test_db, manager, make_shop):
        other_manager, _ = await make_shop(name="Uptown", code="TG-CD34", email="other@example.com")
        job = await create_job(test_db, manager)

        with pytest.raises(NotEligibleError):
            await JobLifecycleService(test_db).cancel(other_manager, job.id)


class TestElapsedMinutes:
    def test_rounds_half_up(self):
        start = datetime(2024, 1, 1, 8, 0, 0)
        assert elapsed_minutes(start, start + timedelta(seconds=89)) == 1
        assert elapsed_minutes(start, start + timedelta(seconds=90)) == 2
        assert elapsed_minutes(start, start - timedelta(minutes=5)) == 0
