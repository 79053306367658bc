"""
Tests for notification rendering and best-effort delivery.
"""

import pytest
from decimal import Decimal
from types import SimpleNamespace

from servicebay.services.email_service import EmailService, MockEmailService
from servicebay.services.notifications import Notifier, NotificationKind, render, public_url

RECIPIENT = SimpleNamespace(id=7, name="Alex Tech", email="alex@example.com")


class UnconfiguredEmailService(EmailService):
    def __init__(self):
        self.api_key = None
        self.from_address = "noreply@example.com"
        self.from_name = "Test"


class FailingEmailService(MockEmailService):
    async def send_email(self, *args, **kwargs):
        return {"success": False, "error": "Brevo API error: quota", "status_code": 402, "message_id": None}


class RaisingEmailService(MockEmailService):
    async def send_email(self, *args, **kwargs):
        raise ConnectionError("relay unreachable")


class TestRender:
    def test_bonus_message(self):
        message = render(NotificationKind.BONUS_EARNED, "Alex", {
            "job_title": "Oil Change",
            "time_saved": 60,
            "incentive_earned": Decimal("20.00"),
        })
        assert message.subject == "Efficiency Bonus Earned!"
        assert "+$20.00" in message.body
        assert "Oil Change" in message.html_body

    def test_membership_request_carries_both_links(self):
        message = render(NotificationKind.MEMBERSHIP_REQUEST_TO_MANAGER, "Morgan", {
            "technician_name": "Alex",
            "technician_email": "alex@example.com",
            "shop_name": "Downtown Auto",
            "certifications": ["Engine", "Brakes"],
            "approve_url": "http://api.test/approve/abc",
            "reject_url": "http://api.test/reject/def",
        })
        assert "Engine, Brakes" in message.body
        assert 'href="http://api.test/approve/abc"' in message.html_body
        assert 'href="http://api.test/reject/def"' in message.html_body

    def test_rejection_without_reason(self):
        message = render(NotificationKind.JOB_DECISION_TO_TECH, "Alex", {
            "approved": False,
            "job_title": "Oil Change",
            "service_order_number": "SO-001001",
            "reason": None,
        })
        assert message.subject == "Job request declined"
        assert "No reason provided" in message.body

    def test_user_text_is_escaped_in_html(self):
        message = render(NotificationKind.MEMBERSHIP_REQUEST_ACK, "<b>Alex</b>", {"shop_name": "Tom & Jerry's"})
        assert "<b>Alex</b>" not in message.html_body
        assert "Tom &amp; Jerry" in message.html_body

    def test_public_url_joins_base(self):
        assert public_url("/api/v2/shop/email-approve/x").endswith("/api/v2/shop/email-approve/x")
        assert "//api" not in public_url("/api/v2/shop/email-approve/x")


class TestNotifier:
    @pytest.mark.asyncio
    async def test_delivers_to_recipient(self):
        email = MockEmailService()
        sent = await Notifier(email).notify(RECIPIENT, NotificationKind.MEMBERSHIP_REQUEST_ACK, {"shop_name": "Downtown"})

        assert sent is True
        assert email._sent_emails[0]["to"] == "alex@example.com"
        assert email._sent_emails[0]["subject"] == "Request received"

    @pytest.mark.asyncio
    async def test_unconfigured_email_is_skipped(self):
        sent = await Notifier(UnconfiguredEmailService()).notify(
            RECIPIENT, NotificationKind.MEMBERSHIP_REQUEST_ACK, {"shop_name": "Downtown"}
        )
        assert sent is False

    @pytest.mark.asyncio
    async def test_provider_error_returns_false(self):
        sent = await Notifier(FailingEmailService()).notify(
            RECIPIENT, NotificationKind.MEMBERSHIP_REQUEST_ACK, {"shop_name": "Downtown"}
        )
        assert sent is False

    @pytest.mark.asyncio
    async def test_never_raises(self):
        notifier = Notifier(RaisingEmailService())
        assert await notifier.notify(RECIPIENT, NotificationKind.MEMBERSHIP_REQUEST_ACK, {"shop_name": "X"}) is False
        # Missing template data is swallowed the same way
        assert await notifier.notify(RECIPIENT, NotificationKind.BONUS_EARNED, {}) is False
