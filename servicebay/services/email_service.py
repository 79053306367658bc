"""Transactional email over the Brevo HTTP API (plain httpx, no SDK)."""

from servicebay.config import settings
import html
import logging
import uuid
from typing import Optional, Dict, Any
import httpx

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"
SEND_TIMEOUT = 30.0


def _failed(error: str, status_code: Optional[int] = None) -> Dict[str, Any]:
    return {"success": False, "error": error, "status_code": status_code, "message_id": None}


def text_to_html(body: str) -> str:
    """Fallback HTML part: escaped text with line breaks kept."""
    return "<html><body><p>" + html.escape(body).replace("\n", "<br>") + "</p></body></html>"


class EmailService:
    """Sends notification mail through Brevo. Never raises on delivery failure."""

    def __init__(self):
        self.api_key = settings.BREVO_API_KEY
        self.from_address = settings.EMAIL_FROM_ADDRESS
        self.from_name = settings.EMAIL_FROM_NAME

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_address)

    def _payload(self, to: str, subject: str, body: str, html_body: Optional[str]) -> Dict[str, Any]:
        return {
            "sender": {"name": self.from_name, "email": self.from_address},
            "to": [{"email": to}],
            "subject": subject,
            "textContent": body,
            "htmlContent": html_body or text_to_html(body),
        }

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Post one message to Brevo.

        Returns a result dict with ``success``, ``status_code``, ``message_id``
        and, on failure, ``error``.
        """
        if not self.api_key:
            logger.error("Email send skipped: Brevo API key not configured")
            return _failed("Brevo API key not configured")

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    BREVO_API_URL,
                    json=self._payload(to, subject, body, html_body),
                    headers={"accept": "application/json", "api-key": self.api_key},
                    timeout=SEND_TIMEOUT,
                )
        except httpx.TimeoutException:
            logger.error("Brevo request timed out", extra={"subject": subject[:50]})
            return _failed("Brevo API request timed out")
        except httpx.HTTPError as e:
            logger.error("Brevo request failed", extra={"error": str(e)})
            return _failed(str(e))

        if response.is_success:
            message_id = response.json().get("messageId")
            logger.info(
                "Email sent",
                extra={"subject": subject[:50], "status_code": response.status_code, "message_id": message_id},
            )
            return {"success": True, "status_code": response.status_code, "message_id": message_id}

        logger.error("Brevo rejected email", extra={"status_code": response.status_code, "error": response.text})
        return _failed(f"Brevo API error: {response.text}", response.status_code)


class MockEmailService(EmailService):
    """Records messages in ``_sent_emails`` instead of sending them."""

    def __init__(self):
        self.api_key = "mock-key"
        self.from_address = "test@example.com"
        self.from_name = "Test Sender"
        self._sent_emails = []

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None,
    ) -> Dict[str, Any]:
        message_id = f"mock-{uuid.uuid4().hex[:16]}"
        self._sent_emails.append(
            {"to": to, "subject": subject, "body": body, "html_body": html_body, "message_id": message_id}
        )
        logger.info("Mock email recorded", extra={"subject": subject[:50]})
        return {"success": True, "status_code": 201, "message_id": message_id}
