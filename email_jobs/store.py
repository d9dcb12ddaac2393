"""Store layer for email jobs."""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import asyncpg

from email_jobs.errors import JobNotFoundError
from email_jobs.models import Job, JobState, NewJob


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseJobStore(ABC):
    """
    Shared storage backing every queue.

    All state transitions are atomic with respect to concurrent callers:
    a job is only moved out of ``active`` by the first transition that
    observes it there, and ``dequeue_next`` never hands the same job to
    two claimers.
    """

    @abstractmethod
    async def enqueue(self, new_job: NewJob) -> Job:
        """Insert a new waiting job."""

    @abstractmethod
    async def dequeue_next(
        self, queue_name: str, lease_duration: timedelta
    ) -> Optional[Job]:
        """Claim the next runnable job (lowest priority value, then oldest)."""

    @abstractmethod
    async def mark_completed(
        self, job_id: UUID, claim_token: Optional[UUID] = None
    ) -> bool:
        """
        Count the successful attempt and move an active job to completed.

        When ``claim_token`` is given the transition only applies to that claim,
        so a worker whose lease expired cannot overwrite a newer claim.
        """

    @abstractmethod
    async def reschedule_with_backoff(
        self,
        job_id: UUID,
        error: dict[str, Any],
        delay_seconds: float,
        claim_token: Optional[UUID] = None,
    ) -> bool:
        """Charge a failed attempt and put an active job back to waiting."""

    @abstractmethod
    async def mark_failed(
        self,
        job_id: UUID,
        error: dict[str, Any],
        escalate_to: Optional[NewJob] = None,
        claim_token: Optional[UUID] = None,
    ) -> Optional[Job]:
        """
        Charge the final attempt and move an active job to failed.

        When ``escalate_to`` is given it is inserted in the same transaction.
        Returns the failed job, or None if the job was not active.
        """

    @abstractmethod
    async def counts(self, queue_name: str) -> dict[str, int]:
        """Count jobs per state for a queue."""

    @abstractmethod
    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""

    @abstractmethod
    async def list_jobs(
        self,
        queue_name: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs, newest first."""

    @abstractmethod
    async def requeue_expired_leases(self, now: datetime) -> int:
        """Return active jobs whose lease expired to waiting."""

    @abstractmethod
    async def prune_finished(self, queue_name: str, state: JobState, keep: int) -> int:
        """Delete all but the newest ``keep`` jobs in a finished state. Returns the count."""

    async def close(self) -> None:
        """Release underlying connections."""


class JobStore(BaseJobStore):
    """PostgreSQL job store."""

    def __init__(self, db_pool: asyncpg.Pool, owns_pool: bool = False):
        self.db_pool = db_pool
        self.owns_pool = owns_pool

    async def enqueue(self, new_job: NewJob) -> Job:
        """Insert a new job into the database."""
        async with self.db_pool.acquire() as conn:
            row = await self._insert(conn, new_job)
        return self._row_to_job(row)

    async def _insert(self, conn, new_job: NewJob) -> asyncpg.Record:
        return await conn.fetchrow(
            """
            INSERT INTO email_jobs (
                id, queue_name, state, payload, priority,
                attempts_made, max_attempts, backoff_policy, run_at
            ) VALUES ($1, $2, $3, $4, $5, 0, $6, $7, $8)
            RETURNING *
            """,
            uuid4(),
            new_job.queue_name,
            JobState.WAITING.value,
            json.dumps(new_job.payload),
            new_job.priority,
            new_job.max_attempts,
            json.dumps(new_job.backoff_policy),
            utcnow(),
        )

    async def dequeue_next(
        self, queue_name: str, lease_duration: timedelta
    ) -> Optional[Job]:
        """
        Atomically claim one waiting job.

        Uses FOR UPDATE SKIP LOCKED so concurrent workers never claim the same row.
        """
        now = utcnow()
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE email_jobs
                SET state = $1,
                    lease_expires_at = $2,
                    claim_token = $6,
                    updated_at = now()
                WHERE id = (
                    SELECT id FROM email_jobs
                    WHERE queue_name = $3
                      AND state = $4
                      AND run_at <= $5
                    ORDER BY priority ASC, seq ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                JobState.ACTIVE.value,
                now + lease_duration,
                queue_name,
                JobState.WAITING.value,
                now,
                uuid4(),
            )

        return self._row_to_job(row) if row else None

    async def mark_completed(
        self, job_id: UUID, claim_token: Optional[UUID] = None
    ) -> bool:
        """Mark an active job as completed, counting the successful attempt."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE email_jobs
                SET state = $1,
                    attempts_made = LEAST(attempts_made + 1, max_attempts),
                    completed_at = now(),
                    lease_expires_at = NULL,
                    claim_token = NULL,
                    updated_at = now()
                WHERE id = $2 AND state = $3
                  AND ($4::uuid IS NULL OR claim_token = $4)
                """,
                JobState.COMPLETED.value,
                job_id,
                JobState.ACTIVE.value,
                claim_token,
            )
        return _affected(result) == 1

    async def reschedule_with_backoff(
        self,
        job_id: UUID,
        error: dict[str, Any],
        delay_seconds: float,
        claim_token: Optional[UUID] = None,
    ) -> bool:
        """Update job for retry with incremented attempts."""
        next_run_at = utcnow() + timedelta(seconds=delay_seconds)
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE email_jobs
                SET state = $1,
                    attempts_made = attempts_made + 1,
                    last_error = $2,
                    run_at = $3,
                    lease_expires_at = NULL,
                    claim_token = NULL,
                    updated_at = now()
                WHERE id = $4
                  AND state = $5
                  AND attempts_made + 1 < max_attempts
                  AND ($6::uuid IS NULL OR claim_token = $6)
                """,
                JobState.WAITING.value,
                json.dumps(error),
                next_run_at,
                job_id,
                JobState.ACTIVE.value,
                claim_token,
            )
        return _affected(result) == 1

    async def mark_failed(
        self,
        job_id: UUID,
        error: dict[str, Any],
        escalate_to: Optional[NewJob] = None,
        claim_token: Optional[UUID] = None,
    ) -> Optional[Job]:
        """Mark a job as failed (permanent failure), escalating in the same transaction."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE email_jobs
                    SET state = $1,
                        attempts_made = LEAST(attempts_made + 1, max_attempts),
                        last_error = $2,
                        failed_at = now(),
                        lease_expires_at = NULL,
                        claim_token = NULL,
                        updated_at = now()
                    WHERE id = $3 AND state = $4
                      AND ($5::uuid IS NULL OR claim_token = $5)
                    RETURNING *
                    """,
                    JobState.FAILED.value,
                    json.dumps(error),
                    job_id,
                    JobState.ACTIVE.value,
                    claim_token,
                )
                if row is None:
                    return None
                if escalate_to is not None:
                    await self._insert(conn, escalate_to)

        return self._row_to_job(row)

    async def counts(self, queue_name: str) -> dict[str, int]:
        """Count jobs per state for a queue."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT state, COUNT(*) AS count FROM email_jobs
                WHERE queue_name = $1
                GROUP BY state
                """,
                queue_name,
            )

        counts = {state.value: 0 for state in JobState}
        for row in rows:
            counts[row["state"]] = row["count"]
        return counts

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM email_jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def list_jobs(
        self,
        queue_name: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        query = "SELECT * FROM email_jobs WHERE 1=1"
        params = []
        param_idx = 1

        if queue_name:
            query += f" AND queue_name = ${param_idx}"
            params.append(queue_name)
            param_idx += 1

        if state:
            query += f" AND state = ${param_idx}"
            params.append(state)
            param_idx += 1

        query += f" ORDER BY seq DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def requeue_expired_leases(self, now: datetime) -> int:
        """
        Revert active jobs with expired leases back to waiting.

        The interrupted run is not charged as an attempt.
        Returns the number of jobs reverted.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE email_jobs
                SET state = $1,
                    lease_expires_at = NULL,
                    claim_token = NULL,
                    last_error = jsonb_build_object(
                        'error', 'Lease expired - worker may have crashed',
                        'timestamp', $3::text
                    ),
                    updated_at = now()
                WHERE state = $2
                  AND lease_expires_at < $4
                """,
                JobState.WAITING.value,
                JobState.ACTIVE.value,
                now.isoformat(),
                now,
            )
        return _affected(result)

    async def prune_finished(self, queue_name: str, state: JobState, keep: int) -> int:
        """Delete all but the newest ``keep`` jobs in a finished state."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM email_jobs
                WHERE id IN (
                    SELECT id FROM email_jobs
                    WHERE queue_name = $1 AND state = $2
                    ORDER BY seq DESC
                    OFFSET $3
                )
                """,
                queue_name,
                JobState(state).value,
                keep,
            )
        return _affected(result)

    async def close(self) -> None:
        if self.owns_pool:
            await self.db_pool.close()

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            queue_name=row["queue_name"],
            payload=_json_value(row["payload"]),
            state=JobState(row["state"]),
            priority=row["priority"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            backoff_policy=_json_value(row["backoff_policy"]),
            run_at=row["run_at"],
            seq=row["seq"],
            lease_expires_at=row["lease_expires_at"],
            claim_token=row["claim_token"],
            last_error=_json_value(row["last_error"]),
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
            updated_at=row["updated_at"],
        )


def _json_value(value):
    if value and isinstance(value, str):
        return json.loads(value)
    return value


def _affected(result: Optional[str]) -> int:
    # Command tags look like "UPDATE 5"
    return int(result.split()[-1]) if result else 0
