"""Unit tests for the PostgreSQL job store using a mocked connection pool."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest

from email_jobs.errors import JobNotFoundError
from email_jobs.models import JobState, NewJob
from email_jobs.store import JobStore, _affected, _json_value, utcnow


def _row(**overrides):
    now = utcnow()
    row = {
        "id": uuid4(),
        "queue_name": "fleetflow-email",
        "payload": json.dumps({"tag": "forgot_password", "email": "alice@example.com"}),
        "state": "waiting",
        "priority": 1,
        "attempts_made": 0,
        "max_attempts": 3,
        "backoff_policy": json.dumps({"type": "exponential", "base_seconds": 2.0}),
        "run_at": now,
        "seq": 1,
        "lease_expires_at": None,
        "claim_token": None,
        "last_error": None,
        "created_at": now,
        "completed_at": None,
        "failed_at": None,
        "updated_at": now,
    }
    row.update(overrides)
    return row


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.fetchrow = AsyncMock()
    conn.fetch = AsyncMock()
    conn.execute = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction.return_value = transaction
    return conn


@pytest.fixture
def store(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    pool.acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    pool.close = AsyncMock()
    return JobStore(pool)


def test_affected_parses_command_tag():
    assert _affected("UPDATE 1") == 1
    assert _affected("UPDATE 0") == 0
    assert _affected(None) == 0


def test_json_value_decodes_strings_only():
    assert _json_value('{"a": 1}') == {"a": 1}
    assert _json_value({"a": 1}) == {"a": 1}
    assert _json_value(None) is None


def test_row_to_job(store):
    row = _row(state="active", last_error=json.dumps({"error": "boom"}))

    job = store._row_to_job(row)

    assert job.id == row["id"]
    assert job.state is JobState.ACTIVE
    assert job.payload["email"] == "alice@example.com"
    assert job.backoff_policy["type"] == "exponential"
    assert job.last_error == {"error": "boom"}


@pytest.mark.asyncio
async def test_enqueue_inserts_waiting_job(store, conn):
    conn.fetchrow.return_value = _row()

    job = await store.enqueue(NewJob("fleetflow-email", {"tag": "forgot_password"}, priority=1))

    args = conn.fetchrow.await_args.args
    assert "INSERT INTO email_jobs" in args[0]
    assert args[2] == "fleetflow-email"
    assert args[3] == "waiting"
    assert json.loads(args[4]) == {"tag": "forgot_password"}
    assert args[5] == 1
    assert job.state is JobState.WAITING


@pytest.mark.asyncio
async def test_dequeue_next_uses_skip_locked(store, conn):
    conn.fetchrow.return_value = _row(state="active")

    job = await store.dequeue_next("fleetflow-email", timedelta(minutes=5))

    args = conn.fetchrow.await_args.args
    query = args[0]
    assert "FOR UPDATE SKIP LOCKED" in query
    assert "ORDER BY priority ASC, seq ASC" in query
    assert "claim_token = $6" in query
    assert isinstance(args[6], UUID)
    assert job.state is JobState.ACTIVE


@pytest.mark.asyncio
async def test_dequeue_next_empty_queue(store, conn):
    conn.fetchrow.return_value = None

    assert await store.dequeue_next("fleetflow-email", timedelta(minutes=5)) is None


@pytest.mark.asyncio
async def test_mark_completed_reports_whether_a_row_changed(store, conn):
    conn.execute.return_value = "UPDATE 1"
    assert await store.mark_completed(uuid4()) is True

    conn.execute.return_value = "UPDATE 0"
    assert await store.mark_completed(uuid4()) is False


@pytest.mark.asyncio
async def test_mark_completed_counts_the_attempt_and_checks_the_claim(store, conn):
    conn.execute.return_value = "UPDATE 1"
    job_id, claim_token = uuid4(), uuid4()

    await store.mark_completed(job_id, claim_token)

    query, *params = conn.execute.await_args.args
    assert "attempts_made = LEAST(attempts_made + 1, max_attempts)" in query
    assert "claim_token = $4" in query
    assert params == ["completed", job_id, "active", claim_token]


@pytest.mark.asyncio
async def test_reschedule_guards_attempt_budget(store, conn):
    conn.execute.return_value = "UPDATE 1"

    assert await store.reschedule_with_backoff(uuid4(), {"error": "boom"}, 4.0) is True

    query = conn.execute.await_args.args[0]
    assert "attempts_made + 1 < max_attempts" in query


@pytest.mark.asyncio
async def test_reschedule_checks_the_claim(store, conn):
    conn.execute.return_value = "UPDATE 0"
    claim_token = uuid4()

    assert await store.reschedule_with_backoff(uuid4(), {"error": "boom"}, 4.0, claim_token) is False

    query, *params = conn.execute.await_args.args
    assert "claim_token = $6" in query
    assert params[-1] == claim_token


@pytest.mark.asyncio
async def test_mark_failed_inserts_dead_letter_in_transaction(store, conn):
    failed_row = _row(state="failed", attempts_made=3)
    conn.fetchrow.side_effect = [failed_row, _row(queue_name="fleetflow-email-dlq")]
    dead_letter = NewJob("fleetflow-email-dlq", {"tag": "dead_letter"}, priority=1, max_attempts=1)

    job = await store.mark_failed(failed_row["id"], {"error": "boom"}, escalate_to=dead_letter)

    assert job.state is JobState.FAILED
    conn.transaction.assert_called_once()
    insert_args = conn.fetchrow.await_args_list[1].args
    assert "INSERT INTO email_jobs" in insert_args[0]
    assert insert_args[2] == "fleetflow-email-dlq"


@pytest.mark.asyncio
async def test_mark_failed_skips_dead_letter_when_not_active(store, conn):
    conn.fetchrow.return_value = None
    dead_letter = NewJob("fleetflow-email-dlq", {"tag": "dead_letter"}, max_attempts=1)

    assert await store.mark_failed(uuid4(), {"error": "boom"}, escalate_to=dead_letter) is None
    assert conn.fetchrow.await_count == 1


@pytest.mark.asyncio
async def test_mark_failed_checks_the_claim(store, conn):
    conn.fetchrow.return_value = None
    claim_token = uuid4()

    assert await store.mark_failed(uuid4(), {"error": "boom"}, claim_token=claim_token) is None

    query, *params = conn.fetchrow.await_args.args
    assert "claim_token = $5" in query
    assert params[-1] == claim_token


@pytest.mark.asyncio
async def test_counts_fills_missing_states(store, conn):
    conn.fetch.return_value = [{"state": "waiting", "count": 2}, {"state": "failed", "count": 1}]

    assert await store.counts("fleetflow-email") == {
        "waiting": 2,
        "active": 0,
        "completed": 0,
        "failed": 1,
    }


@pytest.mark.asyncio
async def test_get_job_not_found(store, conn):
    conn.fetchrow.return_value = None

    with pytest.raises(JobNotFoundError):
        await store.get_job(uuid4())


@pytest.mark.asyncio
async def test_list_jobs_builds_filtered_query(store, conn):
    conn.fetch.return_value = [_row()]

    jobs = await store.list_jobs(queue_name="fleetflow-email", state="waiting", limit=10)

    query, *params = conn.fetch.await_args.args
    assert "queue_name = $1" in query
    assert "state = $2" in query
    assert "LIMIT $3" in query
    assert params == ["fleetflow-email", "waiting", 10]
    assert len(jobs) == 1


@pytest.mark.asyncio
async def test_requeue_expired_leases_returns_count(store, conn):
    conn.execute.return_value = "UPDATE 2"

    assert await store.requeue_expired_leases(utcnow()) == 2


@pytest.mark.asyncio
async def test_prune_finished_deletes_beyond_the_newest(store, conn):
    conn.execute.return_value = "DELETE 3"

    assert await store.prune_finished("fleetflow-email-dlq", JobState.FAILED, 50) == 3

    query, *params = conn.execute.await_args.args
    assert "DELETE FROM email_jobs" in query
    assert "ORDER BY seq DESC" in query
    assert "OFFSET $3" in query
    assert params == ["fleetflow-email-dlq", "failed", 50]


@pytest.mark.asyncio
async def test_close_only_closes_owned_pool(conn):
    pool = MagicMock()
    pool.close = AsyncMock()

    await JobStore(pool).close()
    pool.close.assert_not_awaited()

    await JobStore(pool, owns_pool=True).close()
    pool.close.assert_awaited_once()
