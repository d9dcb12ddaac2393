"""Unit tests for DDL module."""

from email_jobs.ddl import EMAIL_JOBS_TABLE_DDL


def test_ddl_contains_table():
    """Test that DDL contains table creation."""
    assert "CREATE TABLE IF NOT EXISTS email_jobs" in EMAIL_JOBS_TABLE_DDL


def test_ddl_contains_claim_columns():
    for column in ("seq", "priority", "run_at", "lease_expires_at", "attempts_made"):
        assert column in EMAIL_JOBS_TABLE_DDL


def test_ddl_constrains_states_and_attempts():
    assert "'waiting', 'active', 'completed', 'failed'" in EMAIL_JOBS_TABLE_DDL
    assert "CHECK (attempts_made <= max_attempts)" in EMAIL_JOBS_TABLE_DDL


def test_ddl_contains_indexes():
    """Test that DDL contains necessary indexes."""
    assert "idx_email_jobs_waiting" in EMAIL_JOBS_TABLE_DDL
    assert "idx_email_jobs_queue_state" in EMAIL_JOBS_TABLE_DDL
    assert "idx_email_jobs_expired_leases" in EMAIL_JOBS_TABLE_DDL
