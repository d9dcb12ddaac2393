"""Integration tests for the PostgreSQL job store.

These use a real Postgres via testcontainers and only run when
EMAIL_JOBS_DOCKER_TESTS=1.
"""

import asyncio
import os
from datetime import timedelta

import asyncpg
import pytest

from email_jobs.ddl import EMAIL_JOBS_TABLE_DDL
from email_jobs.models import JobState, NewJob
from email_jobs.store import JobStore, utcnow

pytestmark = pytest.mark.skipif(
    os.getenv("EMAIL_JOBS_DOCKER_TESTS") != "1",
    reason="set EMAIL_JOBS_DOCKER_TESTS=1 to run Postgres integration tests",
)

QUEUE = "fleetflow-email"
DLQ = "fleetflow-email-dlq"
LEASE = timedelta(minutes=5)


@pytest.fixture(scope="module")
def postgres_dsn():
    """Start a PostgreSQL container for the module."""
    postgres_module = pytest.importorskip("testcontainers.postgres")
    postgres = postgres_module.PostgresContainer("postgres:15")
    postgres.start()
    url = postgres.get_connection_url()
    # asyncpg wants a plain postgresql:// URL
    yield url.replace("postgresql+psycopg2://", "postgresql://")
    postgres.stop()


async def _store(dsn: str) -> JobStore:
    pool = await asyncpg.create_pool(dsn, min_size=1, max_size=10)
    async with pool.acquire() as conn:
        await conn.execute(EMAIL_JOBS_TABLE_DDL)
        await conn.execute("TRUNCATE email_jobs")
    return JobStore(pool, owns_pool=True)


def _new_job(n: int, priority: int = 0, max_attempts: int = 3) -> NewJob:
    return NewJob(QUEUE, {"tag": "forgot_password", "n": n}, priority=priority, max_attempts=max_attempts)


@pytest.mark.asyncio
async def test_claim_order_and_exclusivity(postgres_dsn):
    store = await _store(postgres_dsn)
    try:
        await store.enqueue(_new_job(1, priority=5))
        for n in range(2, 12):
            await store.enqueue(_new_job(n, priority=1))

        claimed = await asyncio.gather(
            *(store.dequeue_next(QUEUE, LEASE) for _ in range(20))
        )
        jobs = [job for job in claimed if job is not None]

        assert len(jobs) == 11
        assert len({job.id for job in jobs}) == 11
        assert all(job.state is JobState.ACTIVE for job in jobs)
        assert (await store.counts(QUEUE))["active"] == 11
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_retry_then_escalate_once(postgres_dsn):
    store = await _store(postgres_dsn)
    try:
        job = await store.enqueue(_new_job(1, max_attempts=2))
        await store.dequeue_next(QUEUE, LEASE)
        assert await store.reschedule_with_backoff(job.id, {"error": "boom"}, 0) is True

        job = await store.dequeue_next(QUEUE, LEASE)
        assert job.attempts_made == 1
        # the final attempt may not be rescheduled
        assert await store.reschedule_with_backoff(job.id, {"error": "boom"}, 0) is False

        dead_letter = NewJob(DLQ, {"tag": "dead_letter"}, priority=1, max_attempts=1)
        results = await asyncio.gather(
            store.mark_failed(job.id, {"error": "boom"}, escalate_to=dead_letter),
            store.mark_failed(job.id, {"error": "boom"}, escalate_to=dead_letter),
        )

        failed = [r for r in results if r is not None]
        assert len(failed) == 1
        assert failed[0].state is JobState.FAILED
        assert failed[0].attempts_made == 2
        assert (await store.counts(DLQ))["waiting"] == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_expired_lease_is_requeued(postgres_dsn):
    store = await _store(postgres_dsn)
    try:
        job = await store.enqueue(_new_job(1))
        await store.dequeue_next(QUEUE, timedelta(seconds=1))

        assert await store.requeue_expired_leases(utcnow() + timedelta(seconds=5)) == 1

        job = await store.get_job(job.id)
        assert job.state is JobState.WAITING
        assert job.attempts_made == 0
        assert "Lease expired" in job.last_error["error"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_stale_claim_is_fenced_after_requeue(postgres_dsn):
    store = await _store(postgres_dsn)
    try:
        job = await store.enqueue(_new_job(1))
        stale = await store.dequeue_next(QUEUE, timedelta(seconds=1))
        await store.requeue_expired_leases(utcnow() + timedelta(seconds=5))
        current = await store.dequeue_next(QUEUE, LEASE)

        assert stale.claim_token != current.claim_token
        assert await store.mark_completed(job.id, stale.claim_token) is False
        assert await store.mark_completed(job.id, current.claim_token) is True

        job = await store.get_job(job.id)
        assert job.state is JobState.COMPLETED
        assert job.attempts_made == 1
        assert job.claim_token is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_prune_finished_keeps_newest(postgres_dsn):
    store = await _store(postgres_dsn)
    try:
        for n in range(4):
            job = await store.enqueue(_new_job(n))
            await store.dequeue_next(QUEUE, LEASE)
            await store.mark_completed(job.id)

        assert await store.prune_finished(QUEUE, JobState.COMPLETED, 1) == 3

        remaining = await store.list_jobs(queue_name=QUEUE)
        assert [job.payload["n"] for job in remaining] == [3]
    finally:
        await store.close()
