"""
Email module using Resend for sending emails.

Signing requests and completion notices are rendered here as small HTML
bodies and sent through the Resend HTTP API with retry logic.
"""
import asyncio
import base64
import html
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from app.config import get_settings, Settings
from app.utils.logging import fingerprint

logger = logging.getLogger(__name__)


# Retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_SECONDS = [0, 2, 4]  # Exponential backoff: immediate, 2s, 4s


class EmailDeliveryStatus(str, Enum):
    """Email delivery status for tracking."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Email not configured or disabled


@dataclass
class EmailAttempt:
    """Record of a single email send attempt."""
    attempt_number: int
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class EmailResult:
    """Result of email send operation with delivery tracking."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.PENDING
    attempts: List[EmailAttempt] = field(default_factory=list)
    total_attempts: int = 0

    @property
    def is_delivered(self) -> bool:
        """Check if email was successfully delivered."""
        return self.delivery_status == EmailDeliveryStatus.SENT

    @property
    def is_failed(self) -> bool:
        """Check if all delivery attempts failed."""
        return self.delivery_status == EmailDeliveryStatus.FAILED


@dataclass
class EmailAttachment:
    filename: str
    content: bytes

    def to_payload(self) -> Dict[str, str]:
        return {
            "filename": self.filename,
            "content": base64.b64encode(self.content).decode("ascii"),
        }


@dataclass
class RenderedEmail:
    """Rendered email ready to send."""
    subject: str
    html: str
    text: Optional[str] = None


def _layout(heading: str, paragraphs: List[str], button_url: Optional[str] = None, button_label: str = "") -> str:
    body = "\n".join(f"<p>{p}</p>" for p in paragraphs)
    button = ""
    if button_url:
        button = (
            f'<p><a href="{html.escape(button_url, quote=True)}" '
            'style="display:inline-block;background:#1976d2;color:#ffffff;padding:12px 24px;'
            f'text-decoration:none;border-radius:4px;">{html.escape(button_label)}</a></p>'
        )
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family:Arial,sans-serif;line-height:1.6;color:#333;\">"
        "<div style=\"max-width:600px;margin:0 auto;padding:20px;\">"
        f"<h1 style=\"font-size:22px;\">{html.escape(heading)}</h1>"
        f"{body}{button}"
        "<p style=\"font-size:12px;color:#666;\">This is an automated message. Please do not reply to this email.</p>"
        "</div></body></html>"
    )


def render_signing_request(signer_name: Optional[str], document_title: str, signing_url: str,
                           sender_name: Optional[str] = None) -> RenderedEmail:
    greeting = f"Hello {html.escape(signer_name)}," if signer_name else "Hello,"
    if sender_name:
        intro = f"<strong>{html.escape(sender_name)}</strong> has sent you a document for signature."
    else:
        intro = "You have been requested to sign a document."
    return RenderedEmail(
        subject=f'Action Required: please sign "{document_title}"',
        html=_layout(
            "Document Signature Request",
            [greeting, intro, f"Document: <strong>{html.escape(document_title)}</strong>"],
            button_url=signing_url,
            button_label="Review and Sign",
        ),
        text=f"{intro}\n\nSign here: {signing_url}",
    )


def render_completion(recipient_name: Optional[str], document_title: str, is_owner: bool) -> RenderedEmail:
    greeting = f"Hello {html.escape(recipient_name)}," if recipient_name else "Hello,"
    paragraphs = [
        greeting,
        f"<strong>{html.escape(document_title)}</strong> has been signed by all parties and is now complete.",
    ]
    if is_owner:
        paragraphs.append("The signed copy is attached and available in your dashboard.")
    else:
        paragraphs.append("The signed copy is attached to this email for your records.")
    return RenderedEmail(
        subject=f'Completed: "{document_title}" has been signed',
        html=_layout("Document Completed", paragraphs),
    )


class EmailService:
    """Email service using the Resend HTTP API."""

    RESEND_API_URL = "https://api.resend.com/emails"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.settings.resend_api_key)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text: Optional[str] = None,
        attachments: Optional[List[EmailAttachment]] = None,
    ) -> EmailResult:
        """
        Send email via Resend HTTP API with retry logic.

        Implements reliable delivery:
        - 3 attempts with exponential backoff (0s, 2s, 4s)
        - Detailed attempt tracking

        Returns:
            EmailResult with delivery_status and attempt history
        """
        # Fingerprint for logging (no PII)
        email_fp = fingerprint(to_email)

        if not self.is_configured():
            logger.warning(f"Resend API key not configured, skipping email to {email_fp}")
            return EmailResult(
                success=False,
                error="Email service not configured",
                delivery_status=EmailDeliveryStatus.SKIPPED,
            )

        payload: Dict[str, Any] = {
            "from": self.settings.resend_from_email,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        if text:
            payload["text"] = text
        if attachments:
            payload["attachments"] = [a.to_payload() for a in attachments]

        headers = {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }

        attempts: List[EmailAttempt] = []
        last_error: Optional[str] = None

        for attempt_num in range(1, MAX_RETRY_ATTEMPTS + 1):
            # Wait before retry (skip delay for first attempt)
            if attempt_num > 1:
                delay = RETRY_DELAYS_SECONDS[attempt_num - 1] if attempt_num - 1 < len(RETRY_DELAYS_SECONDS) else 4
                logger.info(f"Email retry {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp}, waiting {delay}s")
                await asyncio.sleep(delay)

            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.RESEND_API_URL,
                        json=payload,
                        headers=headers,
                        timeout=30.0,
                    )

                if response.status_code in (200, 201):
                    message_id = response.json().get("id")
                    attempts.append(EmailAttempt(
                        attempt_number=attempt_num,
                        success=True,
                        message_id=message_id,
                    ))
                    logger.info(
                        f"Email sent to {email_fp} on attempt {attempt_num}, "
                        f"message_id: {message_id}"
                    )
                    return EmailResult(
                        success=True,
                        message_id=message_id,
                        delivery_status=EmailDeliveryStatus.SENT,
                        attempts=attempts,
                        total_attempts=attempt_num,
                    )

                last_error = f"API error {response.status_code}: {response.text[:200]}"

            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"

            except httpx.HTTPError as e:
                last_error = str(e)

            attempts.append(EmailAttempt(
                attempt_number=attempt_num,
                success=False,
                error=last_error,
            ))
            logger.warning(
                f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                f"failed: {last_error}"
            )

        # All attempts failed
        logger.error(
            f"Email to {email_fp} failed after {MAX_RETRY_ATTEMPTS} attempts. "
            f"Last error: {last_error}"
        )
        return EmailResult(
            success=False,
            error=last_error,
            delivery_status=EmailDeliveryStatus.FAILED,
            attempts=attempts,
            total_attempts=MAX_RETRY_ATTEMPTS,
        )

    async def _send_rendered(
        self,
        to_email: str,
        rendered: RenderedEmail,
        attachments: Optional[List[EmailAttachment]] = None,
    ) -> EmailResult:
        return await self.send_email(
            to_email=to_email,
            subject=rendered.subject,
            html_body=rendered.html,
            text=rendered.text,
            attachments=attachments,
        )

    async def send_signing_request(
        self,
        to_email: str,
        signer_name: Optional[str],
        document_title: str,
        signing_url: str,
        sender_name: Optional[str] = None,
    ) -> EmailResult:
        """Signing invitation with the signer's personal link."""
        rendered = render_signing_request(signer_name, document_title, signing_url, sender_name)
        return await self._send_rendered(to_email, rendered)

    async def send_completion(
        self,
        to_email: str,
        recipient_name: Optional[str],
        document_title: str,
        signed_pdf: bytes,
        filename: str = "signed.pdf",
    ) -> EmailResult:
        """Completion notice to a signer, with the signed PDF attached."""
        rendered = render_completion(recipient_name, document_title, is_owner=False)
        return await self._send_rendered(to_email, rendered, [EmailAttachment(filename, signed_pdf)])

    async def send_owner_completion(
        self,
        to_email: str,
        document_title: str,
        signed_pdf: bytes,
        filename: str = "signed.pdf",
    ) -> EmailResult:
        """Completion notice to the document owner."""
        rendered = render_completion(None, document_title, is_owner=True)
        return await self._send_rendered(to_email, rendered, [EmailAttachment(filename, signed_pdf)])


# Singleton instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service


__all__ = [
    "EmailService",
    "EmailResult",
    "EmailDeliveryStatus",
    "EmailAttempt",
    "EmailAttachment",
    "RenderedEmail",
    "get_email_service",
    "MAX_RETRY_ATTEMPTS",
    "RETRY_DELAYS_SECONDS",
]
