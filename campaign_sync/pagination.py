"""
Pagination Driver - Sequential Campaign Listing

Walks GET /api/campaigns page by page, in ascending order, until the server
reports has_more=false. A hard page ceiling guards against a server that never
stops saying has_more=true. Every fetch_all() call starts again from page 1.
"""

import logging
from typing import Optional

from campaign_sync.errors import (
    AuthError,
    CampaignSyncError,
    PaginationIncomplete,
)
from campaign_sync.transport import RequestSpec, ResilientTransport
from campaign_sync.utils.config import Settings
from campaign_sync.utils.schemas import Campaign, CampaignPage

CAMPAIGNS_PATH = "/api/campaigns"


class PaginationDriver:
    """Fetches the full campaign collection through a ResilientTransport."""

    def __init__(
        self,
        transport: ResilientTransport,
        settings: Settings,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.transport = transport
        self.page_size = settings.PAGE_SIZE
        self.max_pages = settings.MAX_PAGES
        self.timeout = settings.LIST_TIMEOUT
        self._logger = logger or logging.getLogger(__name__)

    async def fetch_page(self, page: int) -> CampaignPage:
        spec = RequestSpec(
            "GET",
            CAMPAIGNS_PATH,
            timeout=self.timeout,
            params={"page": page, "limit": self.page_size},
        )
        return await self.transport.execute_model(spec, CampaignPage)

    async def fetch_all(self) -> list[Campaign]:
        """Fetch every page.

        Returns:
            All campaigns, in page order

        Raises:
            AuthError: If the platform rejects our credentials on any page
            PaginationIncomplete: If a page fails for any other reason after its
                retries; carries the records fetched so far
        """
        records: list[Campaign] = []
        page = 1
        has_more = True

        while has_more and page <= self.max_pages:
            try:
                result = await self.fetch_page(page)
            except AuthError:
                raise
            except CampaignSyncError as e:
                self._logger.error(
                    "Page fetch failed",
                    extra={"page": page, "records_so_far": len(records), "error": str(e)},
                )
                raise PaginationIncomplete(records, page, e) from e

            records.extend(result.data)
            has_more = result.pagination.has_more
            self._logger.info(
                "Page fetched",
                extra={
                    "page": page,
                    "records": len(result.data),
                    "records_so_far": len(records),
                    "total_hint": result.pagination.total,
                    "has_more": has_more,
                },
            )
            page += 1

        if has_more:
            self._logger.warning(
                "Page ceiling reached while server still reports more data",
                extra={"max_pages": self.max_pages, "records": len(records)},
            )

        return records
