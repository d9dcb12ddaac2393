"""Mail delivery collaborators used by the email job handlers."""

import asyncio
import html
import json
import logging
from typing import Any, Optional, Protocol

import boto3

from email_jobs.config import EmailJobsConfig
from email_jobs.models import DeadLetterEntry, redact_secrets

logger = logging.getLogger(__name__)


class Mailer(Protocol):
    """Anything that can deliver the two email kinds this library produces."""

    async def send_password_reset_email(self, email: str, reset_token: str) -> None:
        ...

    async def send_dead_letter_alert(self, entry: DeadLetterEntry) -> None:
        ...


class SesMailer:
    """
    Mailer backed by Amazon SES.

    boto3 is synchronous, so each send runs in a worker thread.

    Example:
        ```python
        mailer = SesMailer(
            sender="FleetFlow <no-reply@example.com>",
            admin_email="ops@example.com",
            frontend_url="https://fleet.example.com",
        )
        await mailer.send_password_reset_email("alice@example.com", token)
        ```
    """

    def __init__(
        self,
        sender: str,
        admin_email: Optional[str] = None,
        frontend_url: str = "http://localhost:5173",
        ses_client: Any = None,
        region_name: Optional[str] = None,
    ):
        self.sender = sender
        self.admin_email = admin_email
        self.frontend_url = frontend_url.rstrip("/")
        if ses_client is None:
            ses_client = boto3.client("ses", region_name=region_name)
        self.ses_client = ses_client

    @classmethod
    def from_config(cls, config: EmailJobsConfig, ses_client: Any = None) -> "SesMailer":
        return cls(
            sender=config.sender,
            admin_email=config.admin_email,
            frontend_url=config.frontend_url,
            ses_client=ses_client,
            region_name=config.ses_region,
        )

    async def send_password_reset_email(self, email: str, reset_token: str) -> None:
        reset_url = f"{self.frontend_url}/reset-password?token={reset_token}"
        text = (
            "Password Reset Request - FleetFlow\n\n"
            "We received a request to reset your password. "
            "Open the link below to choose a new one:\n\n"
            f"{reset_url}\n\n"
            "This link will expire in 1 hour. "
            "If you didn't request this reset, please ignore this email."
        )
        body = (
            "<h2>Password Reset Request</h2>"
            "<p>We received a request to reset your password for your FleetFlow account.</p>"
            f'<p><a href="{html.escape(reset_url)}">Reset Password</a></p>'
            "<p>This link will expire in 1 hour. "
            "If you didn't request this reset, please ignore this email.</p>"
        )
        await self._send(email, "Password Reset Request - FleetFlow", text, body)
        logger.info(f"Password reset email sent to {email}")

    async def send_dead_letter_alert(self, entry: DeadLetterEntry) -> None:
        if not self.admin_email:
            raise ValueError("No admin email configured for dead-letter alerts")

        original = json.dumps(redact_secrets(entry.original_job), indent=2, sort_keys=True)
        text = (
            f"Job {entry.job_id} failed after {entry.attempts_made} attempts.\n\n"
            f"Time: {entry.timestamp.isoformat()}\n"
            f"Error: {entry.error}\n\n"
            f"Original job:\n{original}\n"
        )
        if entry.stack:
            text += f"\nStack:\n{entry.stack}\n"
        body = f"<pre>{html.escape(text)}</pre>"
        subject = f"[FleetFlow] Email job dead-lettered: {entry.original_job.get('tag')}"
        await self._send(self.admin_email, subject, text, body)
        logger.info(f"Dead-letter alert sent for job {entry.job_id}")

    async def _send(self, to: str, subject: str, text: str, body: str) -> None:
        await asyncio.to_thread(
            self.ses_client.send_email,
            Source=self.sender,
            Destination={"ToAddresses": [to]},
            Message={
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": {
                    "Text": {"Data": text, "Charset": "UTF-8"},
                    "Html": {"Data": body, "Charset": "UTF-8"},
                },
            },
        )
