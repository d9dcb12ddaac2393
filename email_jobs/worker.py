"""Worker pool that claims and processes jobs from one queue."""

import asyncio
import logging
import random
import traceback
from typing import Any, Optional

from email_jobs.errors import HandlerTimeoutError, UnknownJobTagError
from email_jobs.models import Job
from email_jobs.outcomes import Completed, Discard, Escalate, ProcessOutcome, Retry
from email_jobs.rate_limit import RateLimiter
from email_jobs.registry import JobRegistry
from email_jobs.service import EmailJobService
from email_jobs.store import utcnow

MAX_STORE_BACKOFF_SECONDS = 30.0


class WorkerPool:
    """
    Claims jobs from a queue and runs their handlers concurrently.

    At most ``concurrency`` jobs are in flight at once and the rate limiter
    bounds how many are started per window. A job that fails its final
    attempt is handed to ``dead_letter_queue``; a pool without one logs the
    failure and drops it.

    Example:
        ```python
        pool = WorkerPool(
            service,
            build_email_registry(mailer),
            "fleetflow-email",
            concurrency=5,
            rate_limiter=RateLimiter(10, 1.0),
            dead_letter_queue="fleetflow-email-dlq",
        )
        await pool.start()
        ...
        await pool.stop(timeout=30)
        ```
    """

    def __init__(
        self,
        service: EmailJobService,
        registry: JobRegistry,
        queue_name: str,
        *,
        concurrency: int = 5,
        rate_limiter: Optional[RateLimiter] = None,
        dead_letter_queue: Optional[str] = None,
        poll_interval: float = 1.0,
        handler_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.service = service
        self.registry = registry
        self.queue_name = queue_name
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter or RateLimiter(0, 1.0)
        self.dead_letter_queue = dead_letter_queue
        self.poll_interval = poll_interval
        self.handler_timeout = handler_timeout
        self.logger = logger or logging.getLogger(__name__)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None

    @property
    def in_flight(self) -> int:
        """Number of jobs currently being processed."""
        return len(self._tasks)

    async def start(self) -> None:
        """Start the claim loop. Calling it on a running pool does nothing."""
        if self._loop_task is not None:
            self.logger.warning(f"Worker pool for {self.queue_name} is already running")
            return
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._claim_loop())
        self.logger.info(
            f"Worker pool started for {self.queue_name} "
            f"(concurrency={self.concurrency}, "
            f"rate_limit={self.rate_limiter.max_jobs}/{self.rate_limiter.duration_seconds}s)"
        )

    async def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop claiming jobs and wait for in-flight jobs to finish.

        Args:
            timeout: Seconds to wait before cancelling whatever is still running.

        Returns:
            True if every in-flight job finished, False if some were cancelled.
        """
        if self._loop_task is None:
            return True

        self.logger.info(f"Stopping worker pool for {self.queue_name}...")
        self._stop_event.set()
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        def remaining() -> Optional[float]:
            return None if deadline is None else max(0.0, deadline - loop.time())

        await asyncio.wait({self._loop_task}, timeout=remaining())
        pending = set(self._tasks)
        if pending:
            self.logger.info(
                f"Waiting for {len(pending)} in-flight jobs on {self.queue_name}"
            )
            _, pending = await asyncio.wait(pending, timeout=remaining())

        leftovers = set(pending)
        if not self._loop_task.done():
            leftovers.add(self._loop_task)
        clean = not leftovers
        if leftovers:
            self.logger.warning(
                f"Cancelling {len(leftovers)} tasks still running on {self.queue_name} "
                f"after shutdown timeout"
            )
            for task in leftovers:
                task.cancel()
            await asyncio.gather(*leftovers, return_exceptions=True)

        self._loop_task = None
        self.logger.info(f"Worker pool for {self.queue_name} stopped")
        return clean

    async def _sleep(self, delay: float) -> bool:
        """Sleep unless stopped first. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _claim_loop(self) -> None:
        store_backoff = 1.0
        while not self._stop_event.is_set():
            await self._semaphore.acquire()
            try:
                job = await self._claim()
            except Exception as e:
                self._semaphore.release()
                self.logger.error(
                    f"Error claiming from {self.queue_name}, retrying in {store_backoff}s: {e}",
                    exc_info=True,
                )
                await self._sleep(store_backoff)
                store_backoff = min(store_backoff * 2, MAX_STORE_BACKOFF_SECONDS)
                continue

            store_backoff = 1.0
            if job is None:
                self._semaphore.release()
                if not self._stop_event.is_set():
                    await self._sleep(self.poll_interval)
                continue

            task = asyncio.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._job_done)

        self.logger.info(f"Claim loop for {self.queue_name} exited")

    async def _claim(self) -> Optional[Job]:
        delay = self.rate_limiter.delay()
        while delay > 0:
            if await self._sleep(delay):
                return None
            delay = self.rate_limiter.delay()
        if self._stop_event.is_set():
            return None

        job = await self.service.claim_next(self.queue_name)
        if job is not None:
            self.rate_limiter.record()
        return job

    def _job_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._semaphore.release()

    async def _run_job(self, job: Job) -> None:
        self.logger.info(
            f"Processing job {job.id} on {self.queue_name} "
            f"(tag={job.tag}, attempt={job.attempts_made + 1}/{job.max_attempts})"
        )
        outcome = await self.process_job(job)
        try:
            await self.apply_outcome(job, outcome)
        except Exception as e:
            # The job stays active until its lease expires and is requeued
            self.logger.error(
                f"Failed to record outcome of job {job.id}: {e}", exc_info=True
            )

    async def process_job(self, job: Job) -> ProcessOutcome:
        """Run the handler for a claimed job and decide what happens next."""
        try:
            handler = self.registry.get_handler(job.tag)
            if handler is None:
                raise UnknownJobTagError(job.tag, self.queue_name)

            ctx = {"job": job, "logger": self.logger}
            if self.handler_timeout:
                try:
                    await asyncio.wait_for(
                        handler(ctx, job.payload), timeout=self.handler_timeout
                    )
                except asyncio.TimeoutError:
                    raise HandlerTimeoutError(job.id, self.handler_timeout) from None
            else:
                await handler(ctx, job.payload)

        except Exception as e:
            self.logger.error(
                f"Job {job.id} failed (attempt {job.attempts_made + 1}/{job.max_attempts}): {e}",
                exc_info=True,
            )
            return self._failure_outcome(job, e)

        return Completed()

    def _failure_outcome(self, job: Job, exc: Exception) -> ProcessOutcome:
        error = {
            "error": str(exc) or type(exc).__name__,
            "type": type(exc).__name__,
            "stack": "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
            "timestamp": utcnow().isoformat(),
        }

        attempt = job.attempts_made + 1
        if attempt < job.max_attempts:
            delay = _calculate_backoff_with_jitter(job.backoff_policy, attempt)
            return Retry(error=error, delay_seconds=delay)
        if self.dead_letter_queue:
            return Escalate(error=error)
        return Discard(error=error)

    async def apply_outcome(self, job: Job, outcome: ProcessOutcome) -> None:
        """Record the outcome of a processed job in the store."""
        if isinstance(outcome, Completed):
            await self.service.mark_job_completed(job.id, job.claim_token)
            self.logger.info(f"Job {job.id} completed successfully")
        elif isinstance(outcome, Retry):
            await self.service.reschedule_job(
                job.id, outcome.error, outcome.delay_seconds, job.claim_token
            )
            self.logger.info(
                f"Job {job.id} will retry (attempt {job.attempts_made + 1}/"
                f"{job.max_attempts}) after {outcome.delay_seconds}s"
            )
        elif isinstance(outcome, Escalate):
            await self.service.escalate_job(job, outcome.error, self.dead_letter_queue)
        elif isinstance(outcome, Discard):
            await self.service.mark_job_failed(job.id, outcome.error, job.claim_token)
            self.logger.error(
                f"Job {job.id} on {self.queue_name} failed and will not be retried: "
                f"{outcome.error.get('error')}"
            )
        else:
            raise TypeError(f"Unknown outcome {outcome!r}")


def _calculate_backoff_with_jitter(backoff_policy: dict[str, Any], attempt: int) -> float:
    """
    Calculate backoff delay with jitter based on policy and attempt number.

    Args:
        backoff_policy: Backoff policy configuration, "jitter" is a fraction (0.2 = ±20%)
        attempt: Attempt that just failed (1-indexed)

    Returns:
        Backoff delay in seconds
    """
    base_delay = _calculate_backoff(backoff_policy, attempt)
    jitter = backoff_policy.get("jitter", 0.0)
    if not jitter:
        return base_delay

    jitter_factor = 1.0 + random.uniform(-jitter, jitter)
    return max(0.0, base_delay * jitter_factor)


def _calculate_backoff(backoff_policy: dict[str, Any], attempt: int) -> float:
    """
    Calculate backoff delay based on policy and attempt number.

    Args:
        backoff_policy: Backoff policy configuration
        attempt: Attempt that just failed (1-indexed)

    Returns:
        Backoff delay in seconds
    """
    policy_type = backoff_policy.get("type", "exponential")
    base_seconds = backoff_policy.get("base_seconds", 2.0)
    max_seconds = backoff_policy.get("max_seconds", 3600)

    if policy_type == "linear":
        delay = base_seconds * attempt
    elif policy_type == "constant":
        delay = base_seconds
    else:
        # Exponential backoff: base * 2^(attempt-1), also the fallback
        delay = base_seconds * (2 ** (attempt - 1))
    return min(delay, max_seconds)
