from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from campaign_sync.errors import PersistenceError
from campaign_sync.repository import CampaignRepository
from campaign_sync.utils.db import Database
from campaign_sync.utils.schemas import Campaign, CampaignStatus
from tests.fakes import make_settings

CREATED = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class SteppingClock:
    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


def make_campaign(**overrides) -> Campaign:
    values = {
        "id": "campaign_1",
        "name": "Campaign 1",
        "status": CampaignStatus.ACTIVE,
        "budget": Decimal("1500.00"),
        "impressions": 100,
        "clicks": 10,
        "conversions": 1,
        "created_at": CREATED,
    }
    values.update(overrides)
    return Campaign(**values)


def without_synced_at(row: dict) -> dict:
    return {k: v for k, v in row.items() if k != "synced_at"}


@pytest.mark.asyncio
async def test_upsert_is_idempotent(database) -> None:
    clock = SteppingClock(datetime(2025, 6, 1, tzinfo=timezone.utc))
    repository = CampaignRepository(database, clock=clock)
    campaign = make_campaign()

    await repository.upsert(campaign)
    once = await repository.get(campaign.id)
    for _ in range(4):
        await repository.upsert(campaign)
    many = await repository.get(campaign.id)

    assert await repository.count() == 1
    assert without_synced_at(many) == without_synced_at(once)
    assert many["synced_at"] > once["synced_at"]
    assert once["budget"] == Decimal("1500.00")
    assert once["status"] == "active"


@pytest.mark.asyncio
async def test_upsert_overwrites_changed_fields(database) -> None:
    repository = CampaignRepository(database)

    await repository.upsert(make_campaign())
    await repository.upsert(make_campaign(name="Renamed", status=CampaignStatus.PAUSED, clicks=42))

    row = await repository.get("campaign_1")
    assert row["name"] == "Renamed"
    assert row["status"] == "paused"
    assert row["clicks"] == 42
    assert await repository.count() == 1


@pytest.mark.asyncio
async def test_created_at_is_kept_when_later_payload_lacks_it(database) -> None:
    repository = CampaignRepository(database)

    await repository.upsert(make_campaign())
    await repository.upsert(make_campaign(created_at=None))

    row = await repository.get("campaign_1")
    assert row["created_at"] == CREATED


@pytest.mark.asyncio
async def test_synced_at_never_moves_backwards(database) -> None:
    later = datetime(2025, 6, 2, tzinfo=timezone.utc)
    earlier = datetime(2025, 6, 1, tzinfo=timezone.utc)

    await CampaignRepository(database, clock=lambda: later).upsert(make_campaign())
    await CampaignRepository(database, clock=lambda: earlier).upsert(make_campaign(name="Stale write"))

    row = await CampaignRepository(database).get("campaign_1")
    assert row["synced_at"] == later
    assert row["name"] == "Campaign 1"


@pytest.mark.asyncio
async def test_distinct_ids_are_separate_rows(database) -> None:
    repository = CampaignRepository(database)

    for n in range(1, 6):
        await repository.upsert(make_campaign(id=f"campaign_{n}"))

    assert await repository.count() == 5
    assert await repository.get("campaign_9") is None


@pytest.mark.asyncio
async def test_write_without_schema_raises_persistence_error(tmp_path) -> None:
    database = Database(make_settings(tmp_path, DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"))
    await database.connect()
    try:
        with pytest.raises(PersistenceError):
            await CampaignRepository(database).upsert(make_campaign())
    finally:
        await database.dispose()


@pytest.mark.asyncio
async def test_database_connect_is_idempotent_and_dispose_is_safe(settings) -> None:
    database = Database(settings)

    engine = await database.connect()
    assert await database.connect() is engine
    assert database.is_connected
    assert database.dialect == "sqlite"
    assert await database.check_connection() is True

    await database.dispose()
    await database.dispose()
    assert database.is_connected is False
    with pytest.raises(RuntimeError):
        database.engine


@pytest.mark.asyncio
async def test_unlisted_status_is_stored_verbatim(database) -> None:
    repository = CampaignRepository(database)

    await repository.upsert(make_campaign(status="completed"))

    row = await repository.get("campaign_1")
    assert row["status"] == "completed"
