"""
Outbound webhooks to the document's callback_url.

Two payload shapes exist: the native one and a third-party compatible one
(WEBHOOK_COMPAT_MODE=boldsign) for integrations built against that API.
Every body is signed with HMAC-SHA256 in the X-Signature-256 header.
Delivery is best-effort and never raises.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.config import get_settings, Settings
from app.models import Document, DocumentStatus, Signer
from app.utils.security import sign_webhook_payload

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature-256"

EVENT_DOCUMENT_COMPLETED = "document.completed"
COMPAT_EVENT_COMPLETED = "Completed"
COMPAT_EVENT_SIGNED = "Signed"


@dataclass
class WebhookResult:
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def build_completed_payload(
    document: Document,
    signed_pdf_key: str,
    signed_pdf_url: Optional[str],
    sha256: str,
    compat: bool,
) -> Dict[str, Any]:
    if compat:
        return {
            "event": COMPAT_EVENT_COMPLETED,
            "documentId": document.id,
            "status": DocumentStatus.COMPLETED.value,
            "signed_pdf_url": signed_pdf_url,
            "signed_pdf_sha256": sha256,
            "template_id": document.template_id,
            "data": document.data_json,
        }
    return {
        "event": EVENT_DOCUMENT_COMPLETED,
        "document_id": document.id,
        "status": DocumentStatus.COMPLETED.value,
        "signed_pdf_key": signed_pdf_key,
        "signed_pdf_url": signed_pdf_url,
        "signed_pdf_sha256": sha256,
    }


def build_signer_payload(document: Document, signer: Signer) -> Dict[str, Any]:
    return {
        "event": COMPAT_EVENT_SIGNED,
        "documentId": document.id,
        "signerEmail": signer.email,
        "signerName": signer.name,
        "signerRole": signer.role,
    }


class WebhookDispatcher:
    """Signs and posts webhook payloads."""

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._http_client = http_client

    @property
    def compat_mode(self) -> bool:
        return self.settings.compat_webhooks

    def encode(self, payload: Dict[str, Any]) -> bytes:
        return json.dumps(payload, separators=(",", ":"), default=str).encode()

    def headers_for(self, body: bytes) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": "FairSign-Webhook/1.0"}
        if self.settings.webhook_secret:
            headers[SIGNATURE_HEADER] = sign_webhook_payload(body, self.settings.webhook_secret)
        else:
            logger.warning("WEBHOOK_SECRET not configured, sending unsigned webhook")
        return headers

    async def post(self, url: str, payload: Dict[str, Any]) -> WebhookResult:
        """POST one payload. Any failure is returned, not raised."""
        body = self.encode(payload)
        headers = self.headers_for(body)
        timeout = self.settings.webhook_timeout_seconds
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, content=body, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, content=body, headers=headers, timeout=timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook {payload.get('event')} to {url} failed: {e}")
            return WebhookResult(success=False, error=str(e))

        if response.status_code >= 400:
            logger.warning(f"Webhook {payload.get('event')} to {url} returned {response.status_code}")
            return WebhookResult(
                success=False,
                status_code=response.status_code,
                error=response.text[:200],
            )

        logger.info(f"Webhook {payload.get('event')} delivered, status={response.status_code}")
        return WebhookResult(success=True, status_code=response.status_code)

    async def send_completed(
        self,
        document: Document,
        signed_pdf_key: str,
        signed_pdf_url: Optional[str],
        sha256: str,
    ) -> Optional[WebhookResult]:
        """Completion webhook. None when the document has no callback URL."""
        if not document.callback_url:
            return None
        payload = build_completed_payload(document, signed_pdf_key, signed_pdf_url, sha256, self.compat_mode)
        return await self.post(document.callback_url, payload)

    async def send_signer_completed(self, document: Document, signer: Signer) -> Optional[WebhookResult]:
        """Per-signer webhook, only sent in compat mode."""
        if not document.callback_url or not self.compat_mode:
            return None
        return await self.post(document.callback_url, build_signer_payload(document, signer))


# Singleton instance
_webhook_dispatcher: Optional[WebhookDispatcher] = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Get the webhook dispatcher singleton."""
    global _webhook_dispatcher
    if _webhook_dispatcher is None:
        _webhook_dispatcher = WebhookDispatcher()
    return _webhook_dispatcher
