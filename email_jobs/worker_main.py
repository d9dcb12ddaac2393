"""CLI entrypoint and programmatic interface for the email workers."""

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from email_jobs.config import EmailJobsConfig
from email_jobs.ddl import EMAIL_JOBS_TABLE_DDL
from email_jobs.lifecycle import EmailQueueManager, create_db_pool
from email_jobs.mailer import Mailer


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def init_db(config: EmailJobsConfig, logger: logging.Logger) -> None:
    """Create the email_jobs table and indexes if they do not exist."""
    db_pool = await create_db_pool(config)
    try:
        async with db_pool.acquire() as conn:
            await conn.execute(EMAIL_JOBS_TABLE_DDL)
        logger.info("email_jobs schema is ready")
    finally:
        await db_pool.close()


async def run_workers(
    config: Optional[EmailJobsConfig] = None,
    mailer: Optional[Mailer] = None,
    logger: Optional[logging.Logger] = None,
    install_signal_handlers: bool = True,
) -> None:
    """
    Run the email and dead-letter workers until a shutdown signal arrives.

    Args:
        config: EmailJobsConfig instance. If None, will load from environment.
        mailer: Mail collaborator. If None, an SES mailer is built from config.
        logger: Logger instance. If None, will create default logger.
        install_signal_handlers: Stop gracefully on SIGINT/SIGTERM.

    Example:
        ```python
        from email_jobs.worker_main import run_workers
        import asyncio

        asyncio.run(run_workers())
        ```
    """
    if config is None:
        config = EmailJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    manager = await EmailQueueManager.from_config(config, mailer=mailer, logger=logger)
    await manager.start()
    if install_signal_handlers:
        manager.install_signal_handlers()
    try:
        await manager.wait_stopped()
    finally:
        await manager.stop()


def main():
    """Main entrypoint for the email workers."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Email Jobs Worker")
    parser.add_argument(
        "--print-ddl",
        action="store_true",
        help="Print the email_jobs table DDL and exit",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the email_jobs table before starting the workers",
    )

    args = parser.parse_args()

    if args.print_ddl:
        print(EMAIL_JOBS_TABLE_DDL)
        return

    try:
        config = EmailJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    async def run():
        """Async main function."""
        try:
            if args.init_db:
                await init_db(config, logger)
            logger.info(
                f"Starting workers for {config.queue_name} and {config.dlq_name}..."
            )
            await run_workers(config=config, logger=logger)
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
