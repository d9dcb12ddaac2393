"""Starts and stops the email worker pools as a unit."""

import asyncio
import logging
import signal
from typing import Optional
from uuid import UUID

import asyncpg

from email_jobs.config import EmailJobsConfig
from email_jobs.handlers import build_dead_letter_registry, build_email_registry
from email_jobs.mailer import Mailer, SesMailer
from email_jobs.rate_limit import RateLimiter
from email_jobs.registry import JobRegistry
from email_jobs.reaper import run_lease_reaper_loop, run_queue_stats_loop
from email_jobs.service import EmailJobService
from email_jobs.store import BaseJobStore, JobStore
from email_jobs.worker import WorkerPool


async def create_db_pool(config: EmailJobsConfig) -> asyncpg.Pool:
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


class EmailQueueManager:
    """
    Owns the email worker pool, the dead-letter worker pool, the lease reaper
    and the periodic queue stats log.

    Example:
        ```python
        config = EmailJobsConfig.from_env()
        manager = await EmailQueueManager.from_config(config)
        await manager.start()
        manager.install_signal_handlers()
        await manager.wait_stopped()
        ```
    """

    def __init__(
        self,
        config: EmailJobsConfig,
        store: BaseJobStore,
        mailer: Mailer,
        logger: Optional[logging.Logger] = None,
        email_registry: Optional[JobRegistry] = None,
        dead_letter_registry: Optional[JobRegistry] = None,
    ):
        self.config = config
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.service = EmailJobService(config, store, self.logger)
        self.email_registry = email_registry or build_email_registry(mailer)
        self.dead_letter_registry = dead_letter_registry or build_dead_letter_registry(mailer)
        self.email_pool: Optional[WorkerPool] = None
        self.dead_letter_pool: Optional[WorkerPool] = None
        self._background_tasks: list[asyncio.Task] = []
        self._background_shutdown: Optional[asyncio.Event] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @classmethod
    async def from_config(
        cls,
        config: EmailJobsConfig,
        mailer: Optional[Mailer] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "EmailQueueManager":
        """Build a manager backed by PostgreSQL and, unless given, SES."""
        db_pool = await create_db_pool(config)
        store = JobStore(db_pool, owns_pool=True)
        if mailer is None:
            mailer = SesMailer.from_config(config)
        return cls(config, store, mailer, logger=logger)

    @property
    def started(self) -> bool:
        return self.email_pool is not None

    def _build_pool(
        self,
        registry: JobRegistry,
        queue_name: str,
        dead_letter_queue: Optional[str],
    ) -> WorkerPool:
        max_jobs, duration = self.config.get_rate_limit_for_queue(queue_name)
        return WorkerPool(
            self.service,
            registry,
            queue_name,
            concurrency=self.config.get_concurrency_for_queue(queue_name),
            rate_limiter=RateLimiter(max_jobs, duration),
            dead_letter_queue=dead_letter_queue,
            poll_interval=self.config.poll_interval_seconds,
            handler_timeout=self.config.handler_timeout_seconds,
            logger=self.logger,
        )

    async def start(self) -> None:
        """Start both worker pools and the background loops. Idempotent."""
        if self._stop_task is not None:
            raise RuntimeError("EmailQueueManager cannot be restarted after stop()")
        if self.started:
            self.logger.debug("Email queue workers already started")
            return

        self.logger.info("Starting email queue workers...")
        self.email_pool = self._build_pool(
            self.email_registry, self.config.queue_name, self.config.dlq_name
        )
        self.dead_letter_pool = self._build_pool(
            self.dead_letter_registry, self.config.dlq_name, None
        )
        await self.email_pool.start()
        await self.dead_letter_pool.start()

        self._background_shutdown = asyncio.Event()
        self._background_tasks = [
            asyncio.create_task(
                run_lease_reaper_loop(
                    self.service,
                    self.logger,
                    interval_seconds=self.config.reaper_interval_seconds,
                    shutdown_event=self._background_shutdown,
                )
            )
        ]
        if self.config.stats_interval_seconds > 0:
            self._background_tasks.append(
                asyncio.create_task(
                    run_queue_stats_loop(
                        self.service,
                        self.logger,
                        interval_seconds=self.config.stats_interval_seconds,
                        shutdown_event=self._background_shutdown,
                    )
                )
            )
        self._stopped.clear()
        self.logger.info("Email queue workers ready")

    async def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Stop claiming, wait for in-flight jobs in both pools, then release the store.

        Concurrent callers share one shutdown.

        Returns:
            True if no in-flight job had to be cancelled.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown(timeout))
        return await asyncio.shield(self._stop_task)

    async def _shutdown(self, timeout: Optional[float]) -> bool:
        if timeout is None:
            timeout = self.config.shutdown_timeout_seconds

        self.logger.info("Shutting down email queue workers gracefully...")
        clean = True
        try:
            pools = [p for p in (self.email_pool, self.dead_letter_pool) if p is not None]
            if pools:
                results = await asyncio.gather(*(p.stop(timeout=timeout) for p in pools))
                clean = all(results)

            if self._background_tasks:
                self._background_shutdown.set()
                await asyncio.gather(*self._background_tasks)
                self._background_tasks = []
        finally:
            self.email_pool = None
            self.dead_letter_pool = None
            self.logger.info("Closing job store...")
            await self.store.close()
            self._stopped.set()

        self.logger.info("All email queue workers stopped")
        return clean

    async def wait_stopped(self) -> None:
        """Block until a shutdown has completed."""
        await self._stopped.wait()

    def install_signal_handlers(self) -> None:
        """Trigger a graceful stop on SIGINT and SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, signum) -> None:
        self.logger.info(f"Received signal {signum}, shutting down...")
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(
                self._shutdown(self.config.shutdown_timeout_seconds)
            )

    async def enqueue_password_reset_email(self, email: str, reset_token: str) -> UUID:
        """Producer entry point used by the password-reset flow."""
        return await self.service.enqueue_password_reset_email(email, reset_token)
