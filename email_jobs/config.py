"""Configuration for the email jobs subsystem."""

import os
from typing import Any, Dict, Optional, Tuple

DEFAULT_QUEUE_NAME = "fleetflow-email"
DEFAULT_DLQ_NAME = "fleetflow-email-dlq"


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {value!r}") from e


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"Invalid number in {name}: {value!r}") from e


class EmailJobsConfig:
    """Configuration object for email jobs."""

    def __init__(
        self,
        db_dsn: str,
        queue_name: str = DEFAULT_QUEUE_NAME,
        dlq_name: str = DEFAULT_DLQ_NAME,
        concurrency: int = 5,
        dlq_concurrency: int = 2,
        rate_limit_max: int = 10,
        rate_limit_duration_seconds: float = 1.0,
        dlq_rate_limit_max: int = 5,
        dlq_rate_limit_duration_seconds: float = 60.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 300.0,
        lease_seconds: float = 300.0,
        reaper_interval_seconds: float = 60.0,
        poll_interval_seconds: float = 1.0,
        handler_timeout_seconds: float = 30.0,
        shutdown_timeout_seconds: float = 30.0,
        completed_retention: int = 100,
        dlq_completed_retention: int = 100,
        dlq_failed_retention: int = 50,
        stats_interval_seconds: float = 120.0,
        sender: str = "FleetFlow <no-reply@fleetflow.local>",
        admin_email: Optional[str] = None,
        frontend_url: str = "http://localhost:5173",
        ses_region: Optional[str] = None,
        enqueue_auth_token: Optional[str] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if concurrency < 1 or dlq_concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if handler_timeout_seconds is None or handler_timeout_seconds <= 0:
            raise ValueError("handler_timeout_seconds must be a positive number")
        if handler_timeout_seconds >= lease_seconds:
            # A handler must finish before its lease can expire
            raise ValueError(
                f"handler_timeout_seconds ({handler_timeout_seconds}) must be shorter "
                f"than lease_seconds ({lease_seconds})"
            )

        self.db_dsn = db_dsn
        self.queue_name = queue_name
        self.dlq_name = dlq_name
        self.concurrency = concurrency
        self.dlq_concurrency = dlq_concurrency
        self.rate_limit_max = rate_limit_max
        self.rate_limit_duration_seconds = rate_limit_duration_seconds
        self.dlq_rate_limit_max = dlq_rate_limit_max
        self.dlq_rate_limit_duration_seconds = dlq_rate_limit_duration_seconds
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.lease_seconds = lease_seconds
        self.reaper_interval_seconds = reaper_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.handler_timeout_seconds = handler_timeout_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.completed_retention = completed_retention
        self.dlq_completed_retention = dlq_completed_retention
        self.dlq_failed_retention = dlq_failed_retention
        self.stats_interval_seconds = stats_interval_seconds
        self.sender = sender
        self.admin_email = admin_email
        self.frontend_url = frontend_url.rstrip("/")
        self.ses_region = ses_region
        self.enqueue_auth_token = enqueue_auth_token

        # Map queue name to worker pool limits
        self.per_queue_config: Dict[str, Dict[str, Any]] = {
            self.queue_name: {
                "concurrency": concurrency,
                "rate_limit_max": rate_limit_max,
                "rate_limit_duration_seconds": rate_limit_duration_seconds,
                "keep_completed": completed_retention,
                "keep_failed": None,
            },
            self.dlq_name: {
                "concurrency": dlq_concurrency,
                "rate_limit_max": dlq_rate_limit_max,
                "rate_limit_duration_seconds": dlq_rate_limit_duration_seconds,
                "keep_completed": dlq_completed_retention,
                "keep_failed": dlq_failed_retention,
            },
        }

    @classmethod
    def from_env(cls) -> "EmailJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("EMAIL_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("EMAIL_JOBS_DB_DSN environment variable is required")

        return cls(
            db_dsn=db_dsn,
            queue_name=os.getenv("EMAIL_JOBS_QUEUE_NAME", DEFAULT_QUEUE_NAME),
            dlq_name=os.getenv("EMAIL_JOBS_DLQ_NAME", DEFAULT_DLQ_NAME),
            concurrency=_env_int("EMAIL_JOBS_CONCURRENCY", "5"),
            dlq_concurrency=_env_int("EMAIL_JOBS_DLQ_CONCURRENCY", "2"),
            rate_limit_max=_env_int("EMAIL_JOBS_RATE_LIMIT_MAX", "10"),
            rate_limit_duration_seconds=_env_float(
                "EMAIL_JOBS_RATE_LIMIT_DURATION_SECONDS", "1"
            ),
            dlq_rate_limit_max=_env_int("EMAIL_JOBS_DLQ_RATE_LIMIT_MAX", "5"),
            dlq_rate_limit_duration_seconds=_env_float(
                "EMAIL_JOBS_DLQ_RATE_LIMIT_DURATION_SECONDS", "60"
            ),
            max_attempts=_env_int("EMAIL_JOBS_MAX_ATTEMPTS", "3"),
            backoff_base_seconds=_env_float("EMAIL_JOBS_BACKOFF_BASE_SECONDS", "2"),
            backoff_max_seconds=_env_float("EMAIL_JOBS_BACKOFF_MAX_SECONDS", "300"),
            lease_seconds=_env_float("EMAIL_JOBS_LEASE_SECONDS", "300"),
            reaper_interval_seconds=_env_float(
                "EMAIL_JOBS_REAPER_INTERVAL_SECONDS", "60"
            ),
            poll_interval_seconds=_env_float("EMAIL_JOBS_POLL_INTERVAL_SECONDS", "1"),
            handler_timeout_seconds=_env_float("EMAIL_JOBS_HANDLER_TIMEOUT_SECONDS", "30"),
            shutdown_timeout_seconds=_env_float(
                "EMAIL_JOBS_SHUTDOWN_TIMEOUT_SECONDS", "30"
            ),
            completed_retention=_env_int("EMAIL_JOBS_COMPLETED_RETENTION", "100"),
            dlq_completed_retention=_env_int("EMAIL_JOBS_DLQ_COMPLETED_RETENTION", "100"),
            dlq_failed_retention=_env_int("EMAIL_JOBS_DLQ_FAILED_RETENTION", "50"),
            stats_interval_seconds=_env_float("EMAIL_JOBS_STATS_INTERVAL_SECONDS", "120"),
            sender=os.getenv("EMAIL_JOBS_SENDER", "FleetFlow <no-reply@fleetflow.local>"),
            admin_email=os.getenv("EMAIL_JOBS_ADMIN_EMAIL"),
            frontend_url=os.getenv("EMAIL_JOBS_FRONTEND_URL", "http://localhost:5173"),
            ses_region=os.getenv("EMAIL_JOBS_SES_REGION"),
            enqueue_auth_token=os.getenv("EMAIL_JOBS_ENQUEUE_AUTH_TOKEN"),
        )

    def default_backoff_policy(self) -> Dict[str, Any]:
        """Backoff policy applied to primary-queue jobs."""
        return {
            "type": "exponential",
            "base_seconds": self.backoff_base_seconds,
            "max_seconds": self.backoff_max_seconds,
        }

    def get_queue_config(self, queue_name: str) -> Optional[Dict[str, Any]]:
        """Get worker pool limits for a queue."""
        return self.per_queue_config.get(queue_name)

    def get_concurrency_for_queue(self, queue_name: str) -> int:
        """Get max concurrent jobs for a queue."""
        config = self.per_queue_config.get(queue_name, {})
        return config.get("concurrency", 1)

    def get_rate_limit_for_queue(self, queue_name: str) -> Tuple[int, float]:
        """Get (max jobs, window seconds) for a queue."""
        config = self.per_queue_config.get(queue_name, {})
        return (
            config.get("rate_limit_max", 0),
            config.get("rate_limit_duration_seconds", 1.0),
        )

    def get_retention_for_queue(self, queue_name: str) -> Tuple[Optional[int], Optional[int]]:
        """
        Get how many (completed, failed) jobs to keep for a queue.

        None keeps every job in that state; a negative count does the same.
        """
        config = self.per_queue_config.get(queue_name, {})
        return (
            _retention(config.get("keep_completed")),
            _retention(config.get("keep_failed")),
        )


def _retention(value: Optional[int]) -> Optional[int]:
    if value is None or value < 0:
        return None
    return value
