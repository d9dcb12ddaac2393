"""FastAPI router for the email jobs HTTP API."""

import logging
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, ValidationError

from email_jobs.errors import JobNotFoundError
from email_jobs.models import Job, JobState, redact_secrets
from email_jobs.service import EmailJobService


logger = logging.getLogger(__name__)


class PasswordResetEmailRequest(BaseModel):
    """Request model for queueing a password-reset email."""

    email: str
    reset_token: str


class EnqueueJobResponse(BaseModel):
    """Response model for enqueueing a job."""

    job_id: str


class QueueCountsResponse(BaseModel):
    """Job counts per state for one queue."""

    queue_name: str
    waiting: int
    active: int
    completed: int
    failed: int


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    queue_name: str
    payload: Dict[str, Any]
    state: str
    priority: int
    attempts_made: int
    max_attempts: int
    backoff_policy: Dict[str, Any]
    run_at: Optional[str] = None
    lease_expires_at: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        data = job.to_dict()
        data["payload"] = redact_secrets(data["payload"])
        return cls(**data)


def create_email_jobs_router(
    job_service_factory: Callable[[], EmailJobService],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the email jobs API.

    Args:
        job_service_factory: Callable that returns an EmailJobService instance
        auth_token: Optional auth token required by every endpoint

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_job_service() -> EmailJobService:
        """Dependency to get EmailJobService instance."""
        return job_service_factory()

    async def verify_auth_token(
        x_email_jobs_token: Optional[str] = Header(None, alias="X-Email-Jobs-Token")
    ) -> None:
        """Verify auth token if configured."""
        if auth_token:
            if not x_email_jobs_token or x_email_jobs_token != auth_token:
                raise HTTPException(
                    status_code=401, detail="Invalid or missing auth token"
                )

    @router.post(
        "/email/password-reset", response_model=EnqueueJobResponse, status_code=202
    )
    async def enqueue_password_reset_email(
        request: PasswordResetEmailRequest,
        job_service: EmailJobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Queue a password-reset email; delivery happens in the background."""
        try:
            job_id = await job_service.enqueue_password_reset_email(
                request.email, request.reset_token
            )
            return EnqueueJobResponse(job_id=str(job_id))
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error enqueueing password reset email")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        job_service: EmailJobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Get job details by ID."""
        try:
            job_uuid = UUID(job_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail="Invalid job ID format") from e

        try:
            job = await job_service.get_job(job_uuid)
            return JobResponse.from_job(job)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error getting job")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/queues/{queue_name}/counts", response_model=QueueCountsResponse)
    async def get_queue_counts(
        queue_name: str,
        job_service: EmailJobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Job counts per state for a queue."""
        try:
            counts = await job_service.counts(queue_name)
            return QueueCountsResponse(queue_name=queue_name, **counts)
        except Exception as e:
            logger.exception("Error counting jobs")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/queues/{queue_name}/jobs", response_model=List[JobResponse])
    async def list_queue_jobs(
        queue_name: str,
        state: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        job_service: EmailJobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """List jobs on a queue, newest first."""
        if state is not None and state not in {s.value for s in JobState}:
            raise HTTPException(status_code=400, detail=f"Invalid state: {state}")
        try:
            jobs = await job_service.list_jobs(
                queue_name=queue_name, state=state, limit=limit
            )
            return [JobResponse.from_job(job) for job in jobs]
        except Exception as e:
            logger.exception("Error listing jobs")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    return router
