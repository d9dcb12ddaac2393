"""Data models for email jobs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

FORGOT_PASSWORD_TAG = "forgot_password"
DEAD_LETTER_TAG = "dead_letter"
SECRET_PAYLOAD_KEYS = frozenset({"reset_token"})


class JobState(str, Enum):
    """Job lifecycle states."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        queue_name: str,
        payload: Dict[str, Any],
        state: JobState,
        priority: int,
        attempts_made: int,
        max_attempts: int,
        backoff_policy: Dict[str, Any],
        run_at: Optional[datetime] = None,
        seq: int = 0,
        lease_expires_at: Optional[datetime] = None,
        claim_token: Optional[UUID] = None,
        last_error: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        failed_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.queue_name = queue_name
        self.payload = payload
        self.state = JobState(state) if isinstance(state, str) else state
        self.priority = priority
        self.attempts_made = attempts_made
        self.max_attempts = max_attempts
        self.backoff_policy = backoff_policy
        self.run_at = run_at
        self.seq = seq
        self.lease_expires_at = lease_expires_at
        self.claim_token = claim_token
        self.last_error = last_error
        self.created_at = created_at
        self.completed_at = completed_at
        self.failed_at = failed_at
        self.updated_at = updated_at

    @property
    def tag(self) -> Optional[str]:
        """Payload discriminator used to pick a handler."""
        return self.payload.get("tag")

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "queue_name": self.queue_name,
            "payload": self.payload,
            "state": self.state.value,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "backoff_policy": self.backoff_policy,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "lease_expires_at": (
                self.lease_expires_at.isoformat() if self.lease_expires_at else None
            ),
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class NewJob:
    """A job waiting to be written to the store."""

    def __init__(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        priority: int = 0,
        max_attempts: int = 3,
        backoff_policy: Optional[Dict[str, Any]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.queue_name = queue_name
        self.payload = payload
        self.priority = priority
        self.max_attempts = max_attempts
        self.backoff_policy = backoff_policy or {"type": "exponential", "base_seconds": 2.0}


class ForgotPasswordPayload(BaseModel):
    """Payload of a password-reset email job."""

    tag: Literal["forgot_password"] = FORGOT_PASSWORD_TAG
    type: Literal["password_reset"] = "password_reset"
    email: str = Field(min_length=3)
    reset_token: str = Field(min_length=1)


class DeadLetterEntry(BaseModel):
    """Failure record written to the dead-letter queue when a job runs out of attempts."""

    tag: Literal["dead_letter"] = DEAD_LETTER_TAG
    original_job: Dict[str, Any]
    error: str
    stack: Optional[str] = None
    timestamp: datetime
    attempts_made: int
    job_id: Optional[str] = None

    @classmethod
    def from_failed_job(
        cls, job: Job, error: Dict[str, Any], attempts_made: int, timestamp: datetime
    ) -> "DeadLetterEntry":
        return cls(
            original_job=job.payload,
            error=error.get("error", ""),
            stack=error.get("stack"),
            timestamp=timestamp,
            attempts_made=attempts_made,
            job_id=str(job.id),
        )


def redact_secrets(value: Any) -> Any:
    """Copy of a payload with secret fields masked, including nested entries."""
    if isinstance(value, dict):
        return {
            key: "***" if key in SECRET_PAYLOAD_KEYS else redact_secrets(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    return value
