import asyncio
import os
import tempfile
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

# Must be set before the application modules read their configuration
_db_dir = tempfile.mkdtemp(prefix="booking-tests-")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(_db_dir, "test.db")
os.environ["BOOKING_TIMEZONE"] = "Asia/Jakarta"
os.environ["BUSINESS_HOURS_START"] = "07:00"
os.environ["BUSINESS_HOURS_END"] = "16:00"

import database  # noqa: E402
from models import Asset, AssetKind, Driver  # noqa: E402

JAKARTA = ZoneInfo("Asia/Jakarta")


def wib(day, hour, minute=0):
    """A Jakarta wall-clock time in November 2026."""
    return datetime(2026, 11, day, hour, minute, tzinfo=JAKARTA)


@pytest.fixture(autouse=True)
def fresh_db():
    asyncio.run(database.drop_db())
    asyncio.run(database.init_db())
    yield


@pytest.fixture
def call():
    """Run a service coroutine ``fn(session, ...)`` in its own session."""

    def _call(fn, *args, **kwargs):
        async def _run():
            async with database.async_session() as session:
                return await fn(session, *args, **kwargs)

        return asyncio.run(_run())

    return _call


@pytest.fixture
def catalog():
    """Two rooms, two vans, two borrowable items and two drivers."""

    async def _seed():
        async with database.async_session() as session:
            session.add_all([
                Asset(code="R1", name="Main Hall", kind=AssetKind.ROOM),
                Asset(code="R2", name="Meeting Room", kind=AssetKind.ROOM),
                Asset(code="V1", name="Minibus", kind=AssetKind.VEHICLE),
                Asset(code="V2", name="Pickup", kind=AssetKind.VEHICLE),
                Asset(code="PRJ", name="Projector", kind=AssetKind.ITEM, capacity=10),
                Asset(code="MIC", name="Microphone", kind=AssetKind.ITEM, capacity=2),
                Asset(code="OLD", name="Broken Speaker", kind=AssetKind.ITEM, capacity=0),
            ])
            budi = Driver(code="D1", name="Budi", phone="0811")
            sari = Driver(code="D2", name="Sari", phone="0812")
            session.add_all([budi, sari])
            await session.commit()
            return {"D1": budi.id, "D2": sari.id}

    return asyncio.run(_seed())


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from main import app

    with TestClient(app) as c:
        yield c
