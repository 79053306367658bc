"""Notification delivery.

A single side channel: notify(recipient, kind, data). Delivery is best effort.
Callers notify only after their transaction has committed, and notify() never
raises, so a mail outage can neither roll back nor fail a state transition.
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from html import escape
from typing import Any, Dict, Optional
import logging

from servicebay.config import settings
from servicebay.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    BONUS_EARNED = "bonus-earned"
    JOB_REQUEST_TO_MANAGER = "job-request-to-manager"
    JOB_DECISION_TO_TECH = "job-decision-to-tech"
    MEMBERSHIP_REQUEST_TO_MANAGER = "membership-request-to-manager"
    MEMBERSHIP_DECISION_TO_TECH = "membership-decision-to-tech"
    MEMBERSHIP_REQUEST_ACK = "membership-request-ack"


@dataclass
class RenderedMessage:
    subject: str
    body: str
    html_body: str


def public_url(path: str) -> str:
    """Absolute URL for an emailed link."""
    return f"{settings.PUBLIC_API_URL.rstrip('/')}{path}"


def _html(title: str, paragraphs: list[str], links: Optional[list[tuple[str, str]]] = None) -> str:
    parts = [f"<h2>{escape(title)}</h2>"]
    parts.extend(f"<p>{escape(p)}</p>" for p in paragraphs)
    for label, url in links or []:
        parts.append(f'<p><a href="{escape(url, quote=True)}">{escape(label)}</a></p>')
    return "<html><body>" + "".join(parts) + "</body></html>"


def _render_bonus_earned(name: str, data: Dict[str, Any]) -> RenderedMessage:
    amount = f"${float(data['incentive_earned']):.2f}"
    lines = [
        f"Great work, {name}! You beat the clock on {data['job_title']}.",
        f"Minutes saved: {data['time_saved']}. Bonus earned: +{amount}.",
        "It has been added to your weekly earnings.",
    ]
    return RenderedMessage(
        subject="Efficiency Bonus Earned!",
        body="\n".join(lines),
        html_body=_html("You Beat the Clock!", lines),
    )


def _render_job_request(name: str, data: Dict[str, Any]) -> RenderedMessage:
    lines = [
        f"Hi {name},",
        f"{data['technician_name']} asked to work {data['service_order_number']}: {data['job_title']}.",
    ]
    links = [("Approve request", data["approve_url"])]
    return RenderedMessage(
        subject=f"Job request: {data['service_order_number']}",
        body="\n".join(lines + [f"Approve: {data['approve_url']}"]),
        html_body=_html("New Job Request", lines, links),
    )


def _render_job_decision(name: str, data: Dict[str, Any]) -> RenderedMessage:
    if data["approved"]:
        lines = [
            f"Hi {name},",
            f"Your request for {data['service_order_number']}: {data['job_title']} was approved.",
            "You can start the job now.",
        ]
        subject = "Job request approved"
    else:
        lines = [
            f"Hi {name},",
            f"Your request for {data['service_order_number']}: {data['job_title']} was not approved.",
            f"Reason: {data.get('reason') or 'No reason provided'}",
        ]
        subject = "Job request declined"
    return RenderedMessage(subject=subject, body="\n".join(lines), html_body=_html(subject, lines))


def _render_membership_request(name: str, data: Dict[str, Any]) -> RenderedMessage:
    certs = ", ".join(data.get("certifications") or []) or "none listed"
    lines = [
        f"Hi {name},",
        f"{data['technician_name']} ({data['technician_email']}) wants to join {data['shop_name']}.",
        f"Certifications: {certs}",
    ]
    links = [("Approve", data["approve_url"]), ("Reject", data["reject_url"])]
    return RenderedMessage(
        subject=f"New technician request for {data['shop_name']}",
        body="\n".join(lines + [f"Approve: {data['approve_url']}", f"Reject: {data['reject_url']}"]),
        html_body=_html("New Technician Request", lines, links),
    )


def _render_membership_decision(name: str, data: Dict[str, Any]) -> RenderedMessage:
    if data["approved"]:
        lines = [
            f"Welcome aboard, {name}!",
            f"Your request to join {data['shop_name']} was approved. You can log in now.",
        ]
        subject = f"You're approved at {data['shop_name']}"
    else:
        lines = [
            f"Hi {name},",
            f"Your request to join {data['shop_name']} was not approved.",
            f"Reason: {data.get('reason') or 'No reason provided'}",
        ]
        subject = f"Your request to join {data['shop_name']}"
    return RenderedMessage(subject=subject, body="\n".join(lines), html_body=_html(subject, lines))


def _render_membership_ack(name: str, data: Dict[str, Any]) -> RenderedMessage:
    lines = [
        f"Hi {name},",
        f"We received your request to join {data['shop_name']}.",
        "You'll get an email once the shop manager reviews it.",
    ]
    return RenderedMessage(
        subject="Request received",
        body="\n".join(lines),
        html_body=_html("Request Received", lines),
    )


_RENDERERS = {
    NotificationKind.BONUS_EARNED: _render_bonus_earned,
    NotificationKind.JOB_REQUEST_TO_MANAGER: _render_job_request,
    NotificationKind.JOB_DECISION_TO_TECH: _render_job_decision,
    NotificationKind.MEMBERSHIP_REQUEST_TO_MANAGER: _render_membership_request,
    NotificationKind.MEMBERSHIP_DECISION_TO_TECH: _render_membership_decision,
    NotificationKind.MEMBERSHIP_REQUEST_ACK: _render_membership_ack,
}


def render(kind: NotificationKind, recipient_name: str, data: Dict[str, Any]) -> RenderedMessage:
    return _RENDERERS[kind](recipient_name, data)


class Notifier:
    """Best-effort delivery of templated notifications by email."""

    def __init__(self, email_service: Optional[EmailService] = None):
        self.email_service = email_service or EmailService()

    async def notify(self, recipient, kind: NotificationKind, data: Dict[str, Any]) -> bool:
        """Deliver one notification. Returns whether it was sent; never raises."""
        try:
            message = render(kind, recipient.name, data)

            if not self.email_service.is_configured:
                logger.info(
                    "Email not configured, skipping notification",
                    extra={"kind": kind.value, "user_id": recipient.id},
                )
                return False

            result = await self.email_service.send_email(
                to=recipient.email,
                subject=message.subject,
                body=message.body,
                html_body=message.html_body,
            )
            if not result.get("success"):
                logger.warning(
                    "Notification delivery failed",
                    extra={"kind": kind.value, "user_id": recipient.id, "error": result.get("error")},
                )
                return False
            return True
        except Exception:
            logger.exception(
                "Notification raised during delivery",
                extra={"kind": kind.value, "user_id": getattr(recipient, "id", None)},
            )
            return False


@lru_cache()
def get_notifier() -> Notifier:
    """Process-wide notifier (overridden in tests)."""
    return Notifier()
