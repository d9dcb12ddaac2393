"""In-process job store for tests and single-process development."""

import asyncio
import copy
import itertools
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

from email_jobs.errors import JobNotFoundError
from email_jobs.models import Job, JobState, NewJob
from email_jobs.store import BaseJobStore, utcnow


class InMemoryJobStore(BaseJobStore):
    """
    Job store kept in a dict and guarded by a single asyncio lock.

    Returned jobs are copies, so callers never mutate stored state directly.
    """

    def __init__(self):
        self._jobs: dict[UUID, Job] = {}
        self._seq = itertools.count(1)
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def enqueue(self, new_job: NewJob) -> Job:
        async with self._get_lock():
            job = self._insert(new_job)
        return copy.deepcopy(job)

    def _insert(self, new_job: NewJob) -> Job:
        now = utcnow()
        job = Job(
            id=uuid4(),
            queue_name=new_job.queue_name,
            payload=copy.deepcopy(new_job.payload),
            state=JobState.WAITING,
            priority=new_job.priority,
            attempts_made=0,
            max_attempts=new_job.max_attempts,
            backoff_policy=dict(new_job.backoff_policy),
            run_at=now,
            seq=next(self._seq),
            created_at=now,
            updated_at=now,
        )
        self._jobs[job.id] = job
        return job

    async def dequeue_next(
        self, queue_name: str, lease_duration: timedelta
    ) -> Optional[Job]:
        async with self._get_lock():
            now = utcnow()
            ready = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.state == JobState.WAITING
                and job.run_at <= now
            ]
            if not ready:
                return None

            job = min(ready, key=lambda j: (j.priority, j.seq))
            job.state = JobState.ACTIVE
            job.lease_expires_at = now + lease_duration
            job.claim_token = uuid4()
            job.updated_at = now
            return copy.deepcopy(job)

    async def mark_completed(
        self, job_id: UUID, claim_token: Optional[UUID] = None
    ) -> bool:
        async with self._get_lock():
            job = self._active(job_id, claim_token)
            if job is None:
                return False
            now = utcnow()
            job.state = JobState.COMPLETED
            job.attempts_made = min(job.attempts_made + 1, job.max_attempts)
            job.completed_at = now
            job.lease_expires_at = None
            job.claim_token = None
            job.updated_at = now
            return True

    async def reschedule_with_backoff(
        self,
        job_id: UUID,
        error: dict[str, Any],
        delay_seconds: float,
        claim_token: Optional[UUID] = None,
    ) -> bool:
        async with self._get_lock():
            job = self._active(job_id, claim_token)
            if job is None or job.attempts_made + 1 >= job.max_attempts:
                return False
            now = utcnow()
            job.state = JobState.WAITING
            job.attempts_made += 1
            job.last_error = error
            job.run_at = now + timedelta(seconds=delay_seconds)
            job.lease_expires_at = None
            job.claim_token = None
            job.updated_at = now
            return True

    async def mark_failed(
        self,
        job_id: UUID,
        error: dict[str, Any],
        escalate_to: Optional[NewJob] = None,
        claim_token: Optional[UUID] = None,
    ) -> Optional[Job]:
        async with self._get_lock():
            job = self._active(job_id, claim_token)
            if job is None:
                return None
            now = utcnow()
            job.state = JobState.FAILED
            job.attempts_made = min(job.attempts_made + 1, job.max_attempts)
            job.last_error = error
            job.failed_at = now
            job.lease_expires_at = None
            job.claim_token = None
            job.updated_at = now
            if escalate_to is not None:
                self._insert(escalate_to)
            return copy.deepcopy(job)

    async def counts(self, queue_name: str) -> dict[str, int]:
        async with self._get_lock():
            counts = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                if job.queue_name == queue_name:
                    counts[job.state.value] += 1
            return counts

    async def get_job(self, job_id: UUID) -> Job:
        async with self._get_lock():
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return copy.deepcopy(job)

    async def list_jobs(
        self,
        queue_name: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        async with self._get_lock():
            jobs = [
                job
                for job in self._jobs.values()
                if (queue_name is None or job.queue_name == queue_name)
                and (state is None or job.state.value == state)
            ]
            jobs.sort(key=lambda j: j.seq, reverse=True)
            return [copy.deepcopy(job) for job in jobs[:limit]]

    async def requeue_expired_leases(self, now: datetime) -> int:
        async with self._get_lock():
            reverted = 0
            for job in self._jobs.values():
                if (
                    job.state == JobState.ACTIVE
                    and job.lease_expires_at is not None
                    and job.lease_expires_at < now
                ):
                    job.state = JobState.WAITING
                    job.lease_expires_at = None
                    job.claim_token = None
                    job.last_error = {
                        "error": "Lease expired - worker may have crashed",
                        "timestamp": now.isoformat(),
                    }
                    job.updated_at = now
                    reverted += 1
            return reverted

    async def prune_finished(self, queue_name: str, state: JobState, keep: int) -> int:
        async with self._get_lock():
            finished = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.queue_name == queue_name and job.state == JobState(state)
                ),
                key=lambda j: j.seq,
                reverse=True,
            )
            stale = finished[keep:]
            for job in stale:
                del self._jobs[job.id]
            return len(stale)

    def _active(self, job_id: UUID, claim_token: Optional[UUID] = None) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.ACTIVE:
            return None
        if claim_token is not None and job.claim_token != claim_token:
            return None
        return job
