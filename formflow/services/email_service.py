"""Email delivery for invitation links.

Senders never raise for provider problems: they report them in the returned
DeliveryResult so the invitation can be marked failed.
"""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from formflow.core.config import settings

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None
    message_id: str | None = None


class EmailSender(Protocol):
    key: str

    def send(
        self,
        to_email: str,
        subject: str,
        body: str,
        idempotency_key: str | None = None,
    ) -> DeliveryResult:
        """Deliver a plain-text message."""


def _text_to_html(body: str) -> str:
    paragraphs = [p for p in body.split("\n\n") if p.strip()]
    return "".join(
        f"<p>{html.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs
    )


class ResendEmailSender:
    """Sends through the Resend REST API."""

    key = "resend"

    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_email = from_email or settings.EMAIL_FROM
        self.timeout = timeout or settings.EMAIL_TIMEOUT_SECONDS
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    def send(
        self,
        to_email: str,
        subject: str,
        body: str,
        idempotency_key: str | None = None,
    ) -> DeliveryResult:
        if not self.api_key:
            return DeliveryResult(success=False, error="Email sender not configured (missing RESEND_API_KEY)")

        payload: dict[str, object] = {
            "from": self.from_email,
            "to": [to_email],
            "subject": subject,
            "text": body,
            "html": _text_to_html(body),
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(RESEND_SEND_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Resend request failed: {type(e).__name__}")
            return DeliveryResult(success=False, error=f"Email provider unreachable: {type(e).__name__}")

        if 200 <= response.status_code < 300:
            data = response.json()
            message_id = data.get("id") if isinstance(data, dict) else None
            if isinstance(message_id, str) and message_id:
                return DeliveryResult(success=True, message_id=message_id)
            return DeliveryResult(success=False, error="Resend API returned success without message id")

        # Resend uses 409 for idempotency conflicts: the message already went out
        if response.status_code == 409:
            return DeliveryResult(success=True)

        # Best-effort parse of error response
        detail = None
        try:
            data = response.json()
            if isinstance(data, dict):
                detail = data.get("message") or data.get("error")
        except ValueError:
            detail = None

        if detail:
            return DeliveryResult(success=False, error=f"Resend API error: {response.status_code} ({detail})")
        return DeliveryResult(success=False, error=f"Resend API error: {response.status_code}")


class ConsoleEmailSender:
    """Logs instead of sending. Used in development."""

    key = "console"

    def send(
        self,
        to_email: str,
        subject: str,
        body: str,
        idempotency_key: str | None = None,
    ) -> DeliveryResult:
        # Recipient and body stay out of the log; they contain candidate data
        logger.info(f"[console email] subject={subject!r} idempotency_key={idempotency_key}")
        return DeliveryResult(success=True, message_id=f"console-{idempotency_key or 'message'}")


def get_email_sender() -> EmailSender:
    """FastAPI dependency returning the configured sender."""
    backend = settings.EMAIL_BACKEND.lower()
    if backend == "resend":
        return ResendEmailSender()
    if backend != "console":
        logger.warning(f"Unknown EMAIL_BACKEND '{settings.EMAIL_BACKEND}', using console")
    return ConsoleEmailSender()
