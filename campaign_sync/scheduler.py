"""
Sync Scheduler - Cron and On-Demand Execution

Manages scheduled and manual campaign sync runs using APScheduler.

Features:
- Cron-based scheduling (configurable via SYNC_SCHEDULE_CRON)
- RUN_ONCE mode for immediate execution, with an exit status for schedulers/CI
- Redis event publishing after each completed run (PUBLISH_EVENTS)
- Graceful shutdown: stop dispatching, let in-flight records finish, release
  the database pool

Exit status in RUN_ONCE mode:
    0  every campaign synced
    1  run completed, some campaigns failed or were skipped
    2  run aborted (auth failure, pagination failure, bad configuration)

Usage:
    # Scheduled mode (default)
    python -m campaign_sync

    # Run once and exit
    RUN_ONCE=true python -m campaign_sync
"""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from pydantic import ValidationError

from campaign_sync.errors import CampaignSyncError
from campaign_sync.orchestrator import SyncOrchestrator
from campaign_sync.publisher import publish_sync_events
from campaign_sync.utils.config import Settings, get_settings
from campaign_sync.utils.db import Database
from campaign_sync.utils.logging import setup_logging
from campaign_sync.utils.schemas import SyncSummary

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_FATAL = 2


def exit_code_for(summary: Optional[SyncSummary]) -> int:
    """Map a run result to the process exit status."""
    if summary is None:
        return EXIT_FATAL
    return EXIT_OK if summary.healthy else EXIT_DEGRADED


class SyncScheduler:
    """
    Scheduler for periodic or on-demand sync runs.

    Handles:
    - The shared database pool (acquired once at start, released once at exit)
    - APScheduler setup and management
    - RUN_ONCE immediate execution
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        settings: Settings,
        run_once: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            settings: Application settings
            run_once: If True, run one sync and exit
            client: HTTP client shared by every run; each run creates its own if omitted
        """
        self.settings = settings
        self.client = client
        self.run_once = run_once
        self.scheduler: AsyncIOScheduler | None = None
        self.shutdown_event = asyncio.Event()
        self.database = Database(settings)
        self.exit_code = EXIT_OK
        self.last_summary: SyncSummary | None = None
        self._active: SyncOrchestrator | None = None
        self._active_task: asyncio.Task | None = None

        logger.info(
            "SyncScheduler initialized",
            extra={
                "run_once": run_once,
                "cron_schedule": settings.SYNC_SCHEDULE_CRON,
            },
        )

    async def execute_sync(self) -> SyncSummary | None:
        """
        Execute one sync run and publish its events.

        Fatal sync errors are logged and reflected in exit_code rather than raised.
        """
        logger.info("Starting sync execution")
        self._active_task = asyncio.current_task()
        orchestrator = SyncOrchestrator(self.settings, client=self.client, database=self.database)
        self._active = orchestrator

        try:
            summary = await orchestrator.run()
        except CampaignSyncError as e:
            logger.error(
                "Sync execution failed",
                extra={"error": str(e), "kind": e.kind, "state": orchestrator.state.value},
            )
            self.exit_code = EXIT_FATAL
            return None
        except Exception as e:
            logger.error("Sync execution crashed", extra={"error": str(e)}, exc_info=True)
            self.exit_code = EXIT_FATAL
            raise
        finally:
            self._active = None
            self._active_task = None

        self.last_summary = summary
        self.exit_code = exit_code_for(summary)
        logger.info(
            "Sync execution completed",
            extra={"succeeded": summary.succeeded, "failed": summary.failed, "exit_code": self.exit_code},
        )

        if self.settings.PUBLISH_EVENTS:
            try:
                await publish_sync_events(summary, self.settings)
            except Exception as e:
                # Publishing is best effort; the database already holds the result
                logger.error("Failed to publish sync events", extra={"error": str(e)})

        return summary

    def request_shutdown(self) -> None:
        """Stop scheduling and ask the active run to stop dispatching."""
        self.shutdown_event.set()
        if self._active is not None:
            self._active.request_stop()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                signal.signal(signum, lambda s, _frame: self._on_signal(s))

    def _on_signal(self, signum: int) -> None:
        logger.info(f"Received signal {signum}, initiating graceful shutdown")
        self.request_shutdown()

    async def drain(self) -> None:
        """Wait up to SHUTDOWN_GRACE_PERIOD for the active run, then cancel it."""
        task = self._active_task
        if task is None or task.done():
            return
        if self._active is not None:
            self._active.request_stop()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.settings.SHUTDOWN_GRACE_PERIOD)
        except asyncio.TimeoutError:
            logger.warning(
                "Grace period expired, cancelling active sync",
                extra={"grace_period": self.settings.SHUTDOWN_GRACE_PERIOD},
            )
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.exit_code = EXIT_FATAL
        except Exception as e:
            # execute_sync already logged the failure at error level
            logger.debug("Active sync ended with an error while draining", extra={"error": str(e)})

    async def _start_once(self) -> int:
        logger.info("Running in RUN_ONCE mode")
        run_task = asyncio.create_task(self.execute_sync())
        stop_task = asyncio.create_task(self.shutdown_event.wait())

        done, _ = await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if run_task not in done:
            await self.drain()
        stop_task.cancel()
        await asyncio.gather(stop_task, return_exceptions=True)

        if run_task.done() and not run_task.cancelled() and run_task.exception() is not None:
            raise run_task.exception()
        return self.exit_code

    async def start(self) -> int:
        """
        Start scheduler or execute once.

        In scheduled mode, runs continuously until shutdown signal.
        In RUN_ONCE mode, executes immediately and exits.

        Returns:
            Process exit status
        """
        self.setup_signal_handlers()
        await self.database.connect()

        try:
            if self.run_once:
                return await self._start_once()

            # Scheduled mode
            logger.info("Running in scheduled mode")

            self.scheduler = AsyncIOScheduler()

            trigger = CronTrigger.from_crontab(self.settings.SYNC_SCHEDULE_CRON)
            self.scheduler.add_job(
                self.execute_sync,
                trigger=trigger,
                id="campaign_sync_job",
                name="Periodic Campaign Sync",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )

            # Start scheduler first to get next_run_time
            self.scheduler.start()
            logger.info("Scheduler started")

            job = self.scheduler.get_job("campaign_sync_job")
            next_run = getattr(job, "next_run_time", None)
            logger.info(
                "Scheduled sync job",
                extra={
                    "schedule": self.settings.SYNC_SCHEDULE_CRON,
                    "next_run": str(next_run) if next_run is not None else None,
                },
            )
            logger.info("Waiting for jobs...")

            # Wait for shutdown signal
            await self.shutdown_event.wait()

            # Graceful shutdown
            logger.info("Shutting down scheduler")
            self.scheduler.shutdown(wait=False)
            await self.drain()
            logger.info("Scheduler shutdown complete")
            return EXIT_OK

        finally:
            await self.database.dispose()


async def main() -> int:
    """Main entry point for the sync service."""
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging()
        logger.error("Invalid configuration", extra={"error": str(e)})
        return EXIT_FATAL

    setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)
    scheduler = SyncScheduler(settings, run_once=run_once)

    try:
        return await scheduler.start()
    except Exception as e:
        logger.error("Scheduler failed", extra={"error": str(e)}, exc_info=True)
        return EXIT_FATAL


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
