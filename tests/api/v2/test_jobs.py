"""
Tests for the jobs API endpoints (/api/v2/jobs).
"""
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from servicebay.models.capability_token import CapabilityToken
from tests.factories import JobCreateFactory

JOBS_PREFIX = "/api/v2/jobs"


async def create_job(client, headers, **overrides):
    response = await client.post(JOBS_PREFIX, headers=headers, json=JobCreateFactory(**overrides))
    assert response.status_code == 201
    return response.json()


class TestJobCRUD:
    @pytest.mark.asyncio
    async def test_create_job(self, client: AsyncClient, auth_headers, manager, shop):
        job = await create_job(client, auth_headers(manager), title="Oil Change", book_time=60)

        assert job["service_order_number"] == "SO-001001"
        assert job["status"] == "available"
        assert job["book_time"] == 60
        assert job["shop_id"] == shop.id
        assert job["vehicle"]["make"]

    @pytest.mark.asyncio
    async def test_technician_cannot_create(self, client: AsyncClient, auth_headers, technician):
        response = await client.post(JOBS_PREFIX, headers=auth_headers(technician), json=JobCreateFactory())
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_book_time(self, client: AsyncClient, auth_headers, manager):
        response = await client.post(JOBS_PREFIX, headers=auth_headers(manager), json=JobCreateFactory(book_time=0))
        assert response.status_code == 422
        assert response.json()["errors"]

    @pytest.mark.asyncio
    async def test_unknown_certification(self, client: AsyncClient, auth_headers, manager):
        response = await client.post(
            JOBS_PREFIX, headers=auth_headers(manager), json=JobCreateFactory(required_cert="Plumbing")
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_manager_listing_with_filters(self, client: AsyncClient, auth_headers, manager):
        headers = auth_headers(manager)
        await create_job(client, headers, required_cert="Engine")
        await create_job(client, headers, required_cert="EV")

        response = await client.get(JOBS_PREFIX, headers=headers)
        assert response.json()["total"] == 2

        response = await client.get(JOBS_PREFIX, headers=headers, params={"required_cert": "EV"})
        assert [j["required_cert"] for j in response.json()["items"]] == ["EV"]

        response = await client.get(JOBS_PREFIX, headers=headers, params={"status": "completed"})
        assert response.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_technician_sees_matching_jobs(self, client: AsyncClient, auth_headers, manager, ev_technician):
        await create_job(client, auth_headers(manager), required_cert="Engine")
        ev_job = await create_job(client, auth_headers(manager), required_cert="EV")

        response = await client.get(JOBS_PREFIX, headers=auth_headers(ev_technician))
        assert [j["id"] for j in response.json()["items"]] == [ev_job["id"]]

    @pytest.mark.asyncio
    async def test_update_and_history(self, client: AsyncClient, auth_headers, manager):
        headers = auth_headers(manager)
        job = await create_job(client, headers)

        response = await client.patch(f"{JOBS_PREFIX}/{job['id']}", headers=headers, json={"priority": "urgent"})
        assert response.status_code == 200
        assert response.json()["priority"] == "urgent"

        response = await client.get(f"{JOBS_PREFIX}/{job['id']}/history", headers=headers)
        assert [e["action"] for e in response.json()] == ["created", "updated"]

    @pytest.mark.asyncio
    async def test_delete(self, client: AsyncClient, auth_headers, manager):
        headers = auth_headers(manager)
        job = await create_job(client, headers)

        response = await client.delete(f"{JOBS_PREFIX}/{job['id']}", headers=headers)
        assert response.status_code == 204

        response = await client.get(f"{JOBS_PREFIX}/{job['id']}", headers=headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_other_shop_job_hidden(self, client: AsyncClient, auth_headers, manager, make_shop):
        other_manager, _ = await make_shop(name="Uptown", code="TG-CD34", email="other@example.com")
        job = await create_job(client, auth_headers(manager))

        response = await client.get(f"{JOBS_PREFIX}/{job['id']}", headers=auth_headers(other_manager))
        assert response.status_code == 403


class TestRequestFlow:
    @pytest.mark.asyncio
    async def test_request_approve_start_complete(
        self, client: AsyncClient, auth_headers, manager, technician, rule, email_service
    ):
        job = await create_job(client, auth_headers(manager), book_time=120)
        tech_headers = auth_headers(technician)

        response = await client.post(f"{JOBS_PREFIX}/{job['id']}/request", headers=tech_headers)
        assert response.status_code == 200
        assert response.json()["job"]["status"] == "pending-approval"

        response = await client.get(f"{JOBS_PREFIX}/pending-requests", headers=auth_headers(manager))
        assert response.json()["total"] == 1

        response = await client.post(f"{JOBS_PREFIX}/{job['id']}/approve", headers=auth_headers(manager))
        assert response.json()["job"]["assigned_tech_id"] == technician.id

        response = await client.get(f"{JOBS_PREFIX}/my-jobs", headers=tech_headers)
        assert [j["id"] for j in response.json()["items"]] == [job["id"]]

        response = await client.post(f"{JOBS_PREFIX}/{job['id']}/start", headers=tech_headers)
        assert response.json()["job"]["status"] == "in-progress"

        response = await client.post(
            f"{JOBS_PREFIX}/{job['id']}/complete", headers=tech_headers, json={"actual_time": 60}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["job"]["status"] == "completed"
        assert data["incentive"]["incentive_earned"] == 20.0
        assert data["incentive"]["units"] == 2
        assert "$20.00" in data["incentive"]["message"]

        subjects = [e["subject"] for e in email_service._sent_emails]
        assert subjects[-1] == "Efficiency Bonus Earned!"

    @pytest.mark.asyncio
    async def test_email_approve_link(self, client: AsyncClient, test_db, auth_headers, manager, technician):
        job = await create_job(client, auth_headers(manager))
        await client.post(f"{JOBS_PREFIX}/{job['id']}/request", headers=auth_headers(technician))
        token = (await test_db.execute(
            select(CapabilityToken.token).where(
                CapabilityToken.subject_type == "job", CapabilityToken.subject_id == job["id"]
            )
        )).scalar_one()

        response = await client.get(f"{JOBS_PREFIX}/{job['id']}/email-approve", params={"token": token})
        assert response.status_code == 200
        assert "Request approved" in response.text

        response = await client.get(f"{JOBS_PREFIX}/{job['id']}/email-approve", params={"token": token})
        assert "Already processed" in response.text

        response = await client.get(f"{JOBS_PREFIX}/{job['id']}", headers=auth_headers(manager))
        assert response.json()["assigned_tech_id"] == technician.id

    @pytest.mark.asyncio
    async def test_email_link_without_token(self, client: AsyncClient, auth_headers, manager):
        job = await create_job(client, auth_headers(manager))
        response = await client.get(f"{JOBS_PREFIX}/{job['id']}/email-approve")
        assert "Already processed" in response.text

    @pytest.mark.asyncio
    async def test_reject_request(self, client: AsyncClient, auth_headers, manager, technician):
        job = await create_job(client, auth_headers(manager))
        await client.post(f"{JOBS_PREFIX}/{job['id']}/request", headers=auth_headers(technician))

        response = await client.post(
            f"{JOBS_PREFIX}/{job['id']}/reject", headers=auth_headers(manager), json={"reason": "Not today"}
        )
        assert response.status_code == 200
        assert response.json()["job"]["request_status"] == "rejected"
        assert response.json()["job"]["status"] == "available"

    @pytest.mark.asyncio
    async def test_uncertified_request_is_403(self, client: AsyncClient, auth_headers, manager, ev_technician):
        job = await create_job(client, auth_headers(manager), required_cert="Engine")
        response = await client.post(f"{JOBS_PREFIX}/{job['id']}/request", headers=auth_headers(ev_technician))

        assert response.status_code == 403
        assert response.json()["code"] == "BIZ_004"


class TestManagerActions:
    @pytest.mark.asyncio
    async def test_assign_then_reassign(
        self, client: AsyncClient, auth_headers, manager, technician, second_technician
    ):
        job = await create_job(client, auth_headers(manager))

        response = await client.post(
            f"{JOBS_PREFIX}/{job['id']}/assign",
            headers=auth_headers(manager),
            json={"technician_id": technician.id},
        )
        assert response.json()["job"]["assignment_type"] == "direct"

        await client.post(f"{JOBS_PREFIX}/{job['id']}/start", headers=auth_headers(technician))

        response = await client.post(
            f"{JOBS_PREFIX}/{job['id']}/reassign",
            headers=auth_headers(manager),
            json={"technician_id": second_technician.id, "reason": "Shift change"},
        )
        assert response.status_code == 200
        data = response.json()["job"]
        assert data["assigned_tech_id"] == second_technician.id
        assert data["status"] == "available"
        assert data["started_at"] is None

    @pytest.mark.asyncio
    async def test_cancel_in_progress_is_409(self, client: AsyncClient, auth_headers, manager, technician):
        job = await create_job(client, auth_headers(manager))
        await client.post(f"{JOBS_PREFIX}/{job['id']}/start", headers=auth_headers(technician))

        response = await client.post(f"{JOBS_PREFIX}/{job['id']}/cancel", headers=auth_headers(manager))
        assert response.status_code == 409
        assert response.json()["code"] == "BIZ_005"

        response = await client.delete(f"{JOBS_PREFIX}/{job['id']}", headers=auth_headers(manager))
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_cancel_available(self, client: AsyncClient, auth_headers, manager):
        job = await create_job(client, auth_headers(manager))
        response = await client.post(f"{JOBS_PREFIX}/{job['id']}/cancel", headers=auth_headers(manager))
        assert response.json()["job"]["status"] == "cancelled"


class TestBonusPreview:
    @pytest.mark.asyncio
    async def test_preview_uses_callers_multiplier(self, client: AsyncClient, auth_headers, manager, shop, rule, make_technician):
        ace = await make_technician(shop, "ace@example.com", multiplier="1.50")
        job = await create_job(client, auth_headers(manager), book_time=120)

        response = await client.get(
            f"{JOBS_PREFIX}/{job['id']}/bonus-preview",
            headers=auth_headers(ace),
            params={"actual_time": 60},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["units"] == 2
        assert data["bonus"] == 30.0
        assert data["multiplier"] == 1.5

    @pytest.mark.asyncio
    async def test_preview_requires_actual_time(self, client: AsyncClient, auth_headers, manager):
        job = await create_job(client, auth_headers(manager))
        response = await client.get(f"{JOBS_PREFIX}/{job['id']}/bonus-preview", headers=auth_headers(manager))
        assert response.status_code == 422
