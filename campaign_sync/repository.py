"""
Campaign Repository - Idempotent Persistence

Writes campaigns with INSERT ... ON CONFLICT (id) DO UPDATE so the same
campaign can be written any number of times with the same net effect. Every
write borrows one connection from the shared pool owned by Database.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from campaign_sync.errors import PersistenceError
from campaign_sync.utils.db import Database, campaigns_table
from campaign_sync.utils.schemas import Campaign

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CampaignRepository:
    """Upserts campaigns keyed by campaign id."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = _utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.database = database
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    def _insert(self):
        try:
            return _INSERT_BY_DIALECT[self.database.dialect]
        except KeyError:
            raise PersistenceError(
                f"Upsert is not supported for dialect {self.database.dialect!r}"
            ) from None

    async def upsert(self, campaign: Campaign) -> datetime:
        """Insert or update a campaign.

        All columns except id and created_at are overwritten; created_at is only
        filled when the stored row has none. synced_at never moves backwards.

        Returns:
            The synced_at value written

        Raises:
            PersistenceError: If the write fails (pool exhausted, schema mismatch, ...)
        """
        table = campaigns_table
        synced_at = self._clock()
        values = {
            "id": campaign.id,
            "name": campaign.name,
            "status": campaign.status,
            "budget": campaign.budget,
            "impressions": campaign.impressions,
            "clicks": campaign.clicks,
            "conversions": campaign.conversions,
            "created_at": campaign.created_at,
            "synced_at": synced_at,
        }
        stmt = self._insert()(table).values(**values)
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "name": excluded.name,
                "status": excluded.status,
                "budget": excluded.budget,
                "impressions": excluded.impressions,
                "clicks": excluded.clicks,
                "conversions": excluded.conversions,
                "created_at": func.coalesce(table.c.created_at, excluded.created_at),
                "synced_at": excluded.synced_at,
            },
            # Out-of-order clocks must not rewind synced_at
            where=table.c.synced_at <= excluded.synced_at,
        )

        try:
            async with self.database.engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as e:
            self._logger.error(
                "Database error saving campaign",
                extra={"campaign_id": campaign.id, "error": str(e)},
            )
            raise PersistenceError(f"Failed to upsert campaign {campaign.id}: {e}") from e

        self._logger.debug("Saved campaign", extra={"campaign_id": campaign.id})
        return synced_at

    async def get(self, campaign_id: str) -> Optional[dict]:
        """Fetch a stored row as a dict, or None."""
        try:
            async with self.database.engine.connect() as conn:
                result = await conn.execute(
                    select(campaigns_table).where(campaigns_table.c.id == campaign_id)
                )
                row = result.mappings().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read campaign {campaign_id}: {e}") from e

        if row is None:
            return None
        data = dict(row)
        data["created_at"] = _as_utc(data["created_at"])
        data["synced_at"] = _as_utc(data["synced_at"])
        return data

    async def count(self) -> int:
        try:
            async with self.database.engine.connect() as conn:
                result = await conn.execute(select(func.count()).select_from(campaigns_table))
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to count campaigns: {e}") from e
