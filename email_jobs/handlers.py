"""Email job handlers bound to a mailer."""

from email_jobs.mailer import Mailer
from email_jobs.models import (
    DEAD_LETTER_TAG,
    FORGOT_PASSWORD_TAG,
    DeadLetterEntry,
    ForgotPasswordPayload,
)
from email_jobs.registry import JobRegistry


def build_email_registry(mailer: Mailer) -> JobRegistry:
    """Handlers for the primary email queue."""
    registry = JobRegistry()

    @registry.handler(FORGOT_PASSWORD_TAG)
    async def send_password_reset(ctx, payload):
        """
        Send a password-reset email.

        Args:
            ctx: Context dict with job and logger
            payload: Job payload dict
        """
        message = ForgotPasswordPayload.model_validate(payload)
        ctx["logger"].info(
            f"Sending password reset email for job {ctx['job'].id} to {message.email}"
        )
        await mailer.send_password_reset_email(message.email, message.reset_token)

    return registry


def build_dead_letter_registry(mailer: Mailer) -> JobRegistry:
    """Handlers for the dead-letter queue."""
    registry = JobRegistry()

    @registry.handler(DEAD_LETTER_TAG)
    async def send_dead_letter_alert(ctx, payload):
        entry = DeadLetterEntry.model_validate(payload)
        ctx["logger"].warning(
            f"Alerting admin about dead-lettered job {entry.job_id} "
            f"({entry.attempts_made} attempts): {entry.error[:100]}"
        )
        await mailer.send_dead_letter_alert(entry)

    return registry
