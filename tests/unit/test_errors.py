"""Unit tests for errors module."""

from uuid import uuid4

from email_jobs.errors import (
    EmailJobsError,
    HandlerTimeoutError,
    JobNotFoundError,
    UnknownJobTagError,
)


def test_email_jobs_error_base_class():
    """Test base exception class."""
    error = EmailJobsError("Test error")
    assert str(error) == "Test error"
    assert isinstance(error, Exception)


def test_job_not_found_error():
    job_id = uuid4()
    error = JobNotFoundError(job_id)
    assert isinstance(error, EmailJobsError)
    assert error.job_id == job_id
    assert str(error) == f"Job {job_id} not found"


def test_unknown_job_tag_error():
    error = UnknownJobTagError("welcome", "fleetflow-email")
    assert error.tag == "welcome"
    assert str(error) == "Unknown email job tag: welcome (queue fleetflow-email)"


def test_handler_timeout_error():
    error = HandlerTimeoutError("abc", 30)
    assert error.timeout_seconds == 30
    assert "timed out after 30s" in str(error)


def test_error_inheritance():
    """Test that all custom errors inherit from EmailJobsError."""
    assert issubclass(JobNotFoundError, EmailJobsError)
    assert issubclass(UnknownJobTagError, EmailJobsError)
    assert issubclass(HandlerTimeoutError, EmailJobsError)
