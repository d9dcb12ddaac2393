"""Asynchronous email delivery with retries and a dead-letter queue."""

from email_jobs.config import EmailJobsConfig
from email_jobs.ddl import EMAIL_JOBS_TABLE_DDL
from email_jobs.errors import (
    EmailJobsError,
    HandlerTimeoutError,
    JobNotFoundError,
    UnknownJobTagError,
)
from email_jobs.handlers import build_dead_letter_registry, build_email_registry
from email_jobs.lifecycle import EmailQueueManager
from email_jobs.mailer import Mailer, SesMailer
from email_jobs.memory_store import InMemoryJobStore
from email_jobs.models import DeadLetterEntry, ForgotPasswordPayload, Job, JobState, NewJob
from email_jobs.outcomes import Completed, Discard, Escalate, ProcessOutcome, Retry
from email_jobs.rate_limit import RateLimiter
from email_jobs.registry import JobRegistry
from email_jobs.service import EmailJobService
from email_jobs.store import BaseJobStore, JobStore
from email_jobs.worker import WorkerPool

__version__ = "0.1.0"

__all__ = [
    "EmailJobsConfig",
    "EMAIL_JOBS_TABLE_DDL",
    "EmailJobsError",
    "HandlerTimeoutError",
    "JobNotFoundError",
    "UnknownJobTagError",
    "build_dead_letter_registry",
    "build_email_registry",
    "EmailQueueManager",
    "Mailer",
    "SesMailer",
    "InMemoryJobStore",
    "DeadLetterEntry",
    "ForgotPasswordPayload",
    "Job",
    "JobState",
    "NewJob",
    "Completed",
    "Discard",
    "Escalate",
    "ProcessOutcome",
    "Retry",
    "RateLimiter",
    "JobRegistry",
    "EmailJobService",
    "BaseJobStore",
    "JobStore",
    "WorkerPool",
]
