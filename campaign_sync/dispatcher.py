"""
Concurrency Dispatcher - Bounded Per-Record Work

Runs one operation per campaign on a fixed pool of asyncio workers pulling
from a shared queue, so at most `concurrency_limit` operations are in flight.
A failing record is recorded in the summary and never cancels its siblings.
The one exception is AuthError: the first one stops the dispatch and the
records not yet started are reported as skipped.

The dispatcher does no rate limiting of its own: a small pool keeps us from
provoking avoidable 429s, and the transport's 429 handling does the rest.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from campaign_sync.errors import AuthError, CampaignSyncError
from campaign_sync.utils.schemas import Campaign, SyncOutcome, SyncSummary

Operation = Callable[[Campaign], Awaitable[None]]

# Bugs in the operation itself abort the whole dispatch
PROGRAMMING_ERRORS = (TypeError, AttributeError, NameError, AssertionError, ImportError)

CANCELLED = "cancelled"


class ConcurrencyDispatcher:
    """Bounded worker pool producing a SyncSummary."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._stop_event = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    def request_stop(self) -> None:
        """Stop handing out records; in-flight operations run to completion."""
        if not self._stop_event.is_set():
            self._logger.info("Dispatcher stop requested", extra={"in_flight": self.in_flight})
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def run(
        self,
        records: Sequence[Campaign],
        operation: Operation,
        concurrency_limit: int,
    ) -> SyncSummary:
        """Run `operation` for every record with bounded concurrency.

        Args:
            records: Campaigns to process
            operation: Async callable applied to each campaign
            concurrency_limit: Maximum operations in flight at once

        Returns:
            Summary of successes and failures. Records never started because of
            request_stop() are reported as skipped.

        Raises:
            ValueError: If concurrency_limit < 1
            TypeError, AttributeError, ...: If the operation has a programming error
        """
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")

        queue: asyncio.Queue = asyncio.Queue()
        for index, record in enumerate(records):
            queue.put_nowait((index, record))
        outcomes: list[Optional[SyncOutcome]] = [None] * len(records)

        worker_count = min(concurrency_limit, len(records))
        self._logger.info(
            "Dispatching records",
            extra={"records": len(records), "workers": worker_count},
        )
        workers = [
            asyncio.create_task(self._worker(queue, operation, outcomes), name=f"sync-worker-{n}")
            for n in range(worker_count)
        ]

        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        for index, outcome in enumerate(outcomes):
            if outcome is None:
                outcomes[index] = SyncOutcome.failed(
                    records[index].id, CANCELLED, "Stopped before the record was processed"
                )

        return SyncSummary.from_outcomes(outcomes)

    async def _worker(
        self,
        queue: asyncio.Queue,
        operation: Operation,
        outcomes: list[Optional[SyncOutcome]],
    ) -> None:
        while not self._stop_event.is_set():
            try:
                index, record = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcomes[index] = await self._run_one(record, operation)

    async def _run_one(self, record: Campaign, operation: Operation) -> SyncOutcome:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await operation(record)
        except PROGRAMMING_ERRORS:
            self._logger.error(
                "Operation raised a programming error, aborting dispatch",
                extra={"campaign_id": record.id},
                exc_info=True,
            )
            raise
        except AuthError as e:
            self._logger.error(
                "Credentials rejected during dispatch, stopping",
                extra={"campaign_id": record.id, "error": str(e)},
            )
            self.request_stop()
            return SyncOutcome.failed(record.id, e.kind, str(e))
        except CampaignSyncError as e:
            self._logger.warning(
                "Record sync failed",
                extra={"campaign_id": record.id, "kind": e.kind, "error": str(e)},
            )
            return SyncOutcome.failed(record.id, e.kind, str(e))
        except Exception as e:
            self._logger.error(
                "Record sync failed unexpectedly",
                extra={"campaign_id": record.id, "error": str(e)},
                exc_info=True,
            )
            return SyncOutcome.failed(record.id, "unexpected", f"{e.__class__.__name__}: {e}")
        finally:
            self.in_flight -= 1

        self._logger.debug("Record synced", extra={"campaign_id": record.id})
        return SyncOutcome.ok(record.id)
