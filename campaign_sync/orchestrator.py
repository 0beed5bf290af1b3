"""
Sync Orchestrator - Authenticate, Paginate, Dispatch, Summarize

Composes the token provider, transport, pagination driver, dispatcher and
repository into one run:

    IDLE -> AUTHENTICATING -> PAGINATING -> DISPATCHING -> SUMMARIZING -> DONE
                  |                |
                  +----> FAILED <--+

DISPATCHING never fails the run; per-record failures end up in the summary.

Usage:
    orchestrator = SyncOrchestrator(settings, database=database)
    summary = await orchestrator.run()
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

from campaign_sync.dispatcher import ConcurrencyDispatcher
from campaign_sync.errors import PaginationIncomplete, SyncRejected
from campaign_sync.pagination import PaginationDriver
from campaign_sync.repository import CampaignRepository
from campaign_sync.token_provider import TokenProvider
from campaign_sync.transport import RequestSpec, ResilientTransport, RetryPolicy
from campaign_sync.utils.config import Settings
from campaign_sync.utils.db import Database
from campaign_sync.utils.schemas import Campaign, SyncAck, SyncSummary

SYNC_PATH = "/api/campaigns/{campaign_id}/sync"


class SyncState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    PAGINATING = "paginating"
    DISPATCHING = "dispatching"
    SUMMARIZING = "summarizing"
    DONE = "done"
    FAILED = "failed"


class SyncOrchestrator:
    """
    Runs one full campaign sync.

    Handles:
    - Wiring of the HTTP client, transports, token provider and repository
    - State machine transitions and their logging
    - The partial-pagination policy (ALLOW_PARTIAL_PAGINATION)
    - Releasing what it created (HTTP client, database pool)
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        database: Optional[Database] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            settings: Injected configuration
            client: HTTP client to use; one is created (and closed) per run if omitted
            database: Shared database; one is created (and disposed) per run if omitted
            logger: Event sink, defaults to this module's logger
            sleep: Sleep used for backoff and rate-limit waits
        """
        self.settings = settings
        self._client = client
        self._owns_database = database is None
        self.database = database or Database(settings)
        self._event_logger = logger
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self.dispatcher = ConcurrencyDispatcher(logger=logger)
        self.state = SyncState.IDLE
        self.history: list[SyncState] = [SyncState.IDLE]

    def _transition(self, state: SyncState) -> None:
        self._logger.info(
            "Sync state changed",
            extra={"from_state": self.state.value, "to_state": state.value},
        )
        self.state = state
        self.history.append(state)

    def request_stop(self) -> None:
        """Ask the dispatcher to stop starting new records."""
        self.dispatcher.request_stop()

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            headers={"Accept": "application/json", "User-Agent": self.settings.APP_NAME},
        )

    def _build_transports(self, client: httpx.AsyncClient) -> tuple[TokenProvider, ResilientTransport]:
        policy = RetryPolicy.from_settings(self.settings)
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        auth_transport = ResilientTransport(client, policy, logger=self._event_logger, **kwargs)
        tokens = TokenProvider(auth_transport, self.settings, logger=self._event_logger)
        api_transport = ResilientTransport(
            client, policy, token_provider=tokens, logger=self._event_logger, **kwargs
        )
        return tokens, api_transport

    async def run(self) -> SyncSummary:
        """
        Execute one sync run.

        Returns:
            SyncSummary with per-record failures

        Raises:
            AuthError: If authentication fails
            PaginationIncomplete: If a page fails and partial runs are not allowed
            TransportError: If the token endpoint stays unreachable
        """
        if self.state is not SyncState.IDLE:
            raise RuntimeError("SyncOrchestrator.run() can only be called once")

        client = self._client or self._build_client()
        try:
            await self.database.connect()
            await self.database.init_schema()
            tokens, transport = self._build_transports(client)
            repository = CampaignRepository(self.database, logger=self._event_logger)
            return await self._run(tokens, transport, repository)
        except BaseException:
            if self.state is not SyncState.DONE:
                self._transition(SyncState.FAILED)
            raise
        finally:
            if self._client is None:
                await client.aclose()
            if self._owns_database:
                await self.database.dispose()

    async def _run(
        self,
        tokens: TokenProvider,
        transport: ResilientTransport,
        repository: CampaignRepository,
    ) -> SyncSummary:
        started_at = datetime.now(timezone.utc)

        self._transition(SyncState.AUTHENTICATING)
        await tokens.get_token()

        self._transition(SyncState.PAGINATING)
        partial = False
        driver = PaginationDriver(transport, self.settings, logger=self._event_logger)
        try:
            campaigns = await driver.fetch_all()
        except PaginationIncomplete as e:
            if not self.settings.ALLOW_PARTIAL_PAGINATION:
                raise
            self._logger.warning(
                "Continuing with a partial campaign set",
                extra={"records": len(e.records), "failed_page": e.page, "error": str(e.cause)},
            )
            campaigns = e.records
            partial = True
        self._logger.info("Campaigns fetched", extra={"records": len(campaigns)})

        self._transition(SyncState.DISPATCHING)

        async def sync_campaign(campaign: Campaign) -> None:
            spec = RequestSpec(
                "POST",
                SYNC_PATH.format(campaign_id=quote(campaign.id, safe="")),
                timeout=self.settings.SYNC_TIMEOUT,
            )
            ack = await transport.execute_model(spec, SyncAck)
            if not ack.success:
                raise SyncRejected(ack.message or f"Sync of {campaign.id} reported success=false")
            await repository.upsert(campaign)

        summary = await self.dispatcher.run(
            campaigns, sync_campaign, self.settings.SYNC_CONCURRENCY
        )

        self._transition(SyncState.SUMMARIZING)
        summary.started_at = started_at
        summary.finished_at = datetime.now(timezone.utc)
        summary.partial = partial
        self._log_summary(summary)

        self._transition(SyncState.DONE)
        return summary

    def _log_summary(self, summary: SyncSummary) -> None:
        elapsed = (summary.finished_at - summary.started_at).total_seconds()
        self._logger.info(
            "Sync summary",
            extra={
                "attempted": summary.attempted,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "partial": summary.partial,
                "elapsed_seconds": round(elapsed, 3),
            },
        )
        for failure in summary.failures:
            self._logger.warning(
                "Record failed",
                extra={
                    "campaign_id": failure.campaign_id,
                    "kind": failure.error_kind,
                    "reason": failure.error_message,
                },
            )
