"""Database schema DDL for email jobs."""

EMAIL_JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS email_jobs (
  id               UUID PRIMARY KEY,
  seq              BIGSERIAL NOT NULL,
  queue_name       TEXT NOT NULL,

  state            TEXT NOT NULL CHECK (state IN ('waiting', 'active', 'completed', 'failed')),
  payload          JSONB NOT NULL,

  priority         INT NOT NULL DEFAULT 0,

  attempts_made    INT NOT NULL DEFAULT 0,
  max_attempts     INT NOT NULL CHECK (max_attempts >= 1),
  backoff_policy   JSONB NOT NULL,

  run_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
  lease_expires_at TIMESTAMPTZ,
  claim_token      UUID,
  last_error       JSONB,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  completed_at     TIMESTAMPTZ,
  failed_at        TIMESTAMPTZ,
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),

  CHECK (attempts_made <= max_attempts)
);

-- Claim order: priority first, then enqueue order
CREATE INDEX IF NOT EXISTS idx_email_jobs_waiting
ON email_jobs (queue_name, priority, seq)
WHERE state = 'waiting';

CREATE INDEX IF NOT EXISTS idx_email_jobs_queue_state
ON email_jobs (queue_name, state);

-- Retention pruning keeps the newest finished jobs per queue
CREATE INDEX IF NOT EXISTS idx_email_jobs_finished
ON email_jobs (queue_name, state, seq)
WHERE state IN ('completed', 'failed');

-- Index for lease reaper to find expired leases efficiently
CREATE INDEX IF NOT EXISTS idx_email_jobs_expired_leases
ON email_jobs (lease_expires_at)
WHERE state = 'active' AND lease_expires_at IS NOT NULL;
"""
