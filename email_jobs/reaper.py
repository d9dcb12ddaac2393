"""Background maintenance loops: lease reaper, retention pruning and queue stats."""

import asyncio
import logging
from typing import Optional

from email_jobs.service import EmailJobService


async def _wait_interval(
    interval_seconds: float, shutdown_event: Optional[asyncio.Event]
) -> None:
    if shutdown_event is None:
        await asyncio.sleep(interval_seconds)
        return
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
    except asyncio.TimeoutError:
        pass


async def run_lease_reaper_loop(
    job_service: EmailJobService,
    logger: logging.Logger,
    interval_seconds: float = 60.0,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Periodically requeue active jobs whose lease has expired and prune
    finished jobs beyond the retention limits.

    Args:
        job_service: Email job service
        logger: Logger instance
        interval_seconds: Time to sleep between runs
        shutdown_event: Optional event to signal shutdown
    """
    logger.info("Starting lease reaper loop")

    while True:
        # Check for shutdown signal
        if shutdown_event and shutdown_event.is_set():
            logger.info("Shutdown signal received, exiting lease reaper loop")
            break

        try:
            reverted_count = await job_service.requeue_expired_leases()
            if reverted_count > 0:
                logger.info(f"Lease reaper requeued {reverted_count} expired jobs")
        except Exception as e:
            logger.error(f"Error in lease reaper: {str(e)}", exc_info=True)

        try:
            await job_service.prune_finished_jobs()
        except Exception as e:
            logger.error(f"Error pruning finished jobs: {str(e)}", exc_info=True)

        await _wait_interval(interval_seconds, shutdown_event)


async def run_queue_stats_loop(
    job_service: EmailJobService,
    logger: logging.Logger,
    interval_seconds: float = 120.0,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Log job counts of the email queue and its dead-letter queue periodically."""
    while True:
        if shutdown_event and shutdown_event.is_set():
            break

        try:
            stats = await job_service.queue_stats()
            for queue_name, counts in stats.items():
                logger.info(
                    f"Queue stats {queue_name}: waiting={counts['waiting']} "
                    f"active={counts['active']} completed={counts['completed']} "
                    f"failed={counts['failed']}"
                )
        except Exception as e:
            logger.error(f"Error fetching queue stats: {str(e)}", exc_info=True)

        await _wait_interval(interval_seconds, shutdown_event)
