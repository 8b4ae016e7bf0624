"""Donor notifications for pledge charges.

Messages are delivered through a pluggable provider selected with the
``EMAIL_PROVIDER`` environment variable.  The ``mock`` provider only logs
the message, which keeps development and test runs free of network calls.
"""

import os
import logging
from datetime import datetime
from html import escape
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "mock").lower()
EMAIL_API_KEY = os.getenv("EMAIL_API_KEY")
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@pledges.example.com")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Community Giving")

RESEND_API_URL = "https://api.resend.com/emails"


class NotificationError(Exception):
    """Raised when a provider fails to accept a message."""


class Notifier:
    """Interface for delivering a message to a single recipient."""

    async def send(
        self, to: str, subject: str, text_body: str, html_body: str
    ) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Provider that writes messages to the log instead of sending them."""

    async def send(
        self, to: str, subject: str, text_body: str, html_body: str
    ) -> None:
        logger.info("[MOCK EMAIL] to=%s subject=%s body=%s", to, subject, text_body[:100])


class ResendNotifier(Notifier):
    """Deliver email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_email: str = EMAIL_FROM,
        from_name: str = EMAIL_FROM_NAME,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.client = client

    async def send(
        self, to: str, subject: str, text_body: str, html_body: str
    ) -> None:
        payload = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": to,
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            if self.client is not None:
                response = await self.client.post(
                    RESEND_API_URL, json=payload, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=10) as client:
                    response = await client.post(
                        RESEND_API_URL, json=payload, headers=headers
                    )
        except httpx.HTTPError as exc:
            raise NotificationError(f"Resend request failed: {exc}") from exc
        if response.is_error:
            raise NotificationError(f"Resend API error: {response.status_code}")
        logger.info("Email sent to %s via Resend", to)


def get_notifier() -> Notifier:
    """Build the configured notifier; also used as a FastAPI dependency."""
    if EMAIL_PROVIDER == "resend":
        if not EMAIL_API_KEY:
            raise ValueError("EMAIL_API_KEY is required for the resend provider")
        return ResendNotifier(EMAIL_API_KEY)
    return LoggingNotifier()


def _format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:.2f} {currency}"


def build_receipt_email(
    *,
    amount_cents: int,
    currency: str,
    fund_name: str,
    transaction_id: str,
    charged_at: datetime,
    next_charge_at: Optional[datetime],
) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for a successful charge receipt."""

    amount = _format_amount(amount_cents, currency)
    if next_charge_at is None:
        schedule = "This was the final scheduled charge of your pledge."
    else:
        schedule = (
            "Your next scheduled charge will be on "
            f"{next_charge_at:%Y-%m-%d}."
        )
    subject = f"Receipt for your recurring donation - {fund_name}"
    text = "\n".join(
        [
            "Thank you for your recurring donation!",
            "",
            f"Amount: {amount}",
            f"Fund: {fund_name}",
            f"Transaction ID: {transaction_id}",
            f"Date: {charged_at:%Y-%m-%d}",
            "",
            schedule,
            "",
            "Thank you for your continued support!",
        ]
    )
    html = "\n".join(
        [
            "<h2>Thank you for your recurring donation!</h2>",
            f"<p><strong>Amount:</strong> {escape(amount)}</p>",
            f"<p><strong>Fund:</strong> {escape(fund_name)}</p>",
            f"<p><strong>Transaction ID:</strong> {escape(transaction_id)}</p>",
            f"<p><strong>Date:</strong> {charged_at:%Y-%m-%d}</p>",
            f"<p>{escape(schedule)}</p>",
            "<p>Thank you for your continued support!</p>",
        ]
    )
    return subject, text, html


def build_failure_email(
    *,
    amount_cents: int,
    currency: str,
    fund_name: str,
    reason: str,
    paused: bool,
) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for a failed charge notice."""

    amount = _format_amount(amount_cents, currency)
    if paused:
        subject = "Action required: Your recurring donation has been paused"
        status_line = (
            "Your recurring donation has been paused after multiple failed "
            "attempts. Please update your payment method to resume."
        )
        status_html = (
            "<p><strong>Your recurring donation has been paused</strong> after "
            "multiple failed attempts. Please update your payment method to "
            "resume.</p>"
        )
    else:
        subject = "Payment issue with your recurring donation"
        status_line = (
            "Your recurring donation is still active and we will automatically "
            "retry your payment. If the issue persists, please update your "
            "payment method."
        )
        status_html = f"<p>{escape(status_line)}</p>"
    text = "\n".join(
        [
            "We were unable to process your recurring donation.",
            "",
            f"Amount: {amount}",
            f"Fund: {fund_name}",
            f"Reason: {reason}",
            "",
            status_line,
            "",
            "Please log in to your account to update your payment information.",
        ]
    )
    html = "\n".join(
        [
            "<h2>Payment Issue</h2>",
            "<p>We were unable to process your recurring donation.</p>",
            f"<p><strong>Amount:</strong> {escape(amount)}</p>",
            f"<p><strong>Fund:</strong> {escape(fund_name)}</p>",
            f"<p><strong>Reason:</strong> {escape(reason)}</p>",
            status_html,
            "<p>Please log in to your account to update your payment information.</p>",
        ]
    )
    return subject, text, html
