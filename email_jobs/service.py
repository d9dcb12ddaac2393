"""High-level service layer for email job operations."""

import logging
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

from email_jobs.config import EmailJobsConfig
from email_jobs.models import DeadLetterEntry, ForgotPasswordPayload, Job, JobState, NewJob
from email_jobs.store import BaseJobStore, utcnow

EXPEDITE_PRIORITY = 1


class EmailJobService:
    """High-level API for email job operations."""

    def __init__(
        self,
        config: EmailJobsConfig,
        store: BaseJobStore,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: Optional[int] = None,
        backoff_policy: Optional[dict[str, Any]] = None,
    ) -> UUID:
        """
        Enqueue a new job.

        Args:
            queue_name: Logical queue name
            payload: Job payload, discriminated by its "tag" field
            priority: Lower values are claimed first
            max_attempts: Maximum delivery attempts (defaults to config)
            backoff_policy: Retry backoff policy (defaults to config)

        Returns:
            UUID: The created job ID
        """
        if max_attempts is None:
            max_attempts = self.config.max_attempts
        if backoff_policy is None:
            backoff_policy = self.config.default_backoff_policy()

        job = await self.store.enqueue(
            NewJob(
                queue_name=queue_name,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts,
                backoff_policy=backoff_policy,
            )
        )

        self.logger.info(
            f"Enqueued job {job.id} on {queue_name} "
            f"(tag={payload.get('tag')}, priority={priority})"
        )
        return job.id

    async def enqueue_password_reset_email(self, email: str, reset_token: str) -> UUID:
        """
        Queue a password-reset email and return without waiting for delivery.

        Failed jobs stay in the store until they are escalated to the
        dead-letter queue.
        """
        payload = ForgotPasswordPayload(email=email, reset_token=reset_token)
        job_id = await self.enqueue(
            self.config.queue_name,
            payload.model_dump(),
            priority=EXPEDITE_PRIORITY,
        )
        self.logger.info(f"Password reset email queued for {email}")
        return job_id

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        return await self.store.get_job(job_id)

    async def list_jobs(
        self,
        *,
        queue_name: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        return await self.store.list_jobs(queue_name=queue_name, state=state, limit=limit)

    async def counts(self, queue_name: str) -> dict[str, int]:
        """Job counts per state for one queue."""
        return await self.store.counts(queue_name)

    async def queue_stats(self) -> dict[str, dict[str, int]]:
        """Job counts for the email queue and its dead-letter queue."""
        return {
            self.config.queue_name: await self.store.counts(self.config.queue_name),
            self.config.dlq_name: await self.store.counts(self.config.dlq_name),
        }

    async def claim_next(self, queue_name: str) -> Optional[Job]:
        """Claim the next runnable job on a queue."""
        lease = timedelta(seconds=self.config.lease_seconds)
        return await self.store.dequeue_next(queue_name, lease)

    async def mark_job_completed(
        self, job_id: UUID, claim_token: Optional[UUID] = None
    ) -> bool:
        """Mark a job as completed."""
        updated = await self.store.mark_completed(job_id, claim_token)
        if updated:
            self.logger.info(f"Job {job_id} completed")
        else:
            self.logger.warning(f"Job {job_id} is no longer active under this claim, completion not recorded")
        return updated

    async def reschedule_job(
        self,
        job_id: UUID,
        error: dict[str, Any],
        backoff_seconds: float,
        claim_token: Optional[UUID] = None,
    ) -> bool:
        """Put a job back to waiting after a failed attempt."""
        updated = await self.store.reschedule_with_backoff(
            job_id, error, backoff_seconds, claim_token
        )
        if updated:
            self.logger.info(f"Job {job_id} scheduled for retry in {backoff_seconds}s")
        else:
            self.logger.warning(f"Job {job_id} could not be rescheduled")
        return updated

    async def mark_job_failed(
        self, job_id: UUID, error: dict[str, Any], claim_token: Optional[UUID] = None
    ) -> bool:
        """Mark a job as permanently failed without escalation."""
        failed = await self.store.mark_failed(job_id, error, claim_token=claim_token)
        if failed is not None:
            self.logger.error(f"Job {job_id} failed after {failed.attempts_made} attempts")
        return failed is not None

    async def escalate_job(
        self, job: Job, error: dict[str, Any], dead_letter_queue: Optional[str] = None
    ) -> bool:
        """
        Mark a job as failed and hand it to the dead-letter queue.

        The failure and the dead-letter insert are one store transition, so a
        job produces at most one dead-letter entry.
        """
        if dead_letter_queue is None:
            dead_letter_queue = self.config.dlq_name
        entry = DeadLetterEntry.from_failed_job(
            job, error, attempts_made=job.attempts_made + 1, timestamp=utcnow()
        )
        dead_letter = NewJob(
            queue_name=dead_letter_queue,
            payload=entry.model_dump(mode="json"),
            priority=EXPEDITE_PRIORITY,
            max_attempts=1,
        )
        failed = await self.store.mark_failed(
            job.id, error, escalate_to=dead_letter, claim_token=job.claim_token
        )
        if failed is None:
            self.logger.warning(f"Job {job.id} was no longer active, not dead-lettered")
            return False

        self.logger.error(
            f"Job {job.id} failed after {failed.attempts_made} attempts, "
            f"added to {dead_letter_queue}: {entry.error[:100]}"
        )
        return True

    async def requeue_expired_leases(self) -> int:
        """
        Requeue jobs whose lease expired.

        This should be called periodically to recover from worker crashes.
        Returns the number of jobs requeued.
        """
        count = await self.store.requeue_expired_leases(utcnow())
        if count > 0:
            self.logger.info(f"Requeued {count} jobs with expired leases")
        return count

    async def prune_finished_jobs(self) -> int:
        """
        Apply the retention limits of both queues.

        Failed jobs on the email queue are kept until they are purged by hand.
        Returns the number of jobs deleted.
        """
        pruned = 0
        for queue_name in (self.config.queue_name, self.config.dlq_name):
            keep_completed, keep_failed = self.config.get_retention_for_queue(queue_name)
            if keep_completed is not None:
                pruned += await self.store.prune_finished(
                    queue_name, JobState.COMPLETED, keep_completed
                )
            if keep_failed is not None:
                pruned += await self.store.prune_finished(
                    queue_name, JobState.FAILED, keep_failed
                )
        if pruned > 0:
            self.logger.info(f"Pruned {pruned} finished jobs")
        return pruned
