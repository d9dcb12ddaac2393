"""Exception types for the email jobs library."""


class EmailJobsError(Exception):
    """Base exception for all email jobs errors."""

    pass


class JobNotFoundError(EmailJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class UnknownJobTagError(EmailJobsError):
    """Raised when no handler is registered for a payload tag."""

    def __init__(self, tag, queue_name: str = None):
        self.tag = tag
        self.queue_name = queue_name
        message = f"Unknown email job tag: {tag}"
        if queue_name:
            message = f"{message} (queue {queue_name})"
        super().__init__(message)


class HandlerTimeoutError(EmailJobsError):
    """Raised when a job handler does not finish within its timeout."""

    def __init__(self, job_id, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job {job_id} handler timed out after {timeout_seconds}s")
