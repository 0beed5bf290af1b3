"""Pytest configuration shared across the suite."""

import pytest
import pytest_asyncio

from campaign_sync.utils.db import Database
from tests.fakes import FakeAdPlatform, make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def platform() -> FakeAdPlatform:
    return FakeAdPlatform()


@pytest_asyncio.fixture
async def client(platform):
    async with platform.client() as http_client:
        yield http_client


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.connect()
    await db.init_schema()
    yield db
    await db.dispose()
