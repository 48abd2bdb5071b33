import os
import uuid
from decimal import Decimal
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

os.environ.setdefault("MONGODB_DB_NAME", "gymcredit_test")
os.environ.setdefault("ACCESS_CREDIT_COST", "10.00")

GYM_ID = "gym-north"
OTHER_GYM_ID = "gym-south"
STAFF_HEADERS = {"X-Gym-ID": GYM_ID, "X-Actor-ID": "staff-1", "X-Actor-Role": "OWNER"}


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory database per test."""
    from gymcredit.db.init import init_db
    client = AsyncMongoMockClient()
    database = client[f"gymcredit_test_{uuid.uuid4().hex}"]
    await init_db(database)
    yield database


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from gymcredit.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def member():
    from gymcredit.models.member import Member
    m = Member(gym_id=GYM_ID, first_name="Ada", last_name="Lovelace", email="ada@example.com")
    await m.insert()
    return m


@pytest_asyncio.fixture
async def other_member():
    from gymcredit.models.member import Member
    m = Member(gym_id=OTHER_GYM_ID, first_name="Grace", last_name="Hopper", email="grace@example.com")
    await m.insert()
    return m


@pytest_asyncio.fixture
async def product():
    from gymcredit.models.pass_product import PassProduct
    p = PassProduct(
        gym_id=GYM_ID,
        name="10 Class Pack",
        credit_count=10,
        validity_days=30,
        price_amount=Decimal("150.00"),
    )
    await p.insert()
    return p
