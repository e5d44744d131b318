"""
Shared fixtures: in-memory database, fake Redis, recording notifier and
factories for users, licenses and orders.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from sqlalchemy import select, func

from licenseflow.core.config import Settings
from licenseflow.core.database import Database
from licenseflow.models import License, LicenseStatus, OrderDeposit, OrderStatus, User
from licenseflow.models.base import generate_id
from licenseflow.services.notification_service import Notifier, RecordingNotificationSink
from licenseflow.services.settings_provider import StaticSettingsProvider


T0 = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

DEPOSIT_ADDRESS = "0x1111111111111111111111111111111111111111"
TX_HASH = "0x" + "ab" * 32


# Default for make_order: a new random hash per order
FRESH_TX_HASH = object()


def new_tx_hash():
    return "0x" + uuid.uuid4().hex + uuid.uuid4().hex


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        redis_prefix="test:",
        bscscan_api_key="test-key",
        chain_network="testnet",
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.init()
    await db.create_tables()
    yield db
    await db.drop_tables()
    await db.close()


@pytest_asyncio.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def notifier(sink):
    return Notifier(sink)


@pytest.fixture
def settings_provider():
    return StaticSettingsProvider()


@pytest.fixture
def make_user(database):
    async def _make(email=None, telegram_chat_id=None):
        async with database.session() as session:
            user = User(
                email=email or f"user-{generate_id()[:8]}@example.com",
                first_name="Test",
                telegram_chat_id=telegram_chat_id,
            )
            session.add(user)
        return user

    return _make


@pytest.fixture
def make_license(database, make_user):
    async def _make(
        started_at=T0,
        principal="1000",
        daily_rate="0.08",
        max_days=25,
        cap_fraction="2.0",
        days_generated=0,
        total_earned="0",
        pause_potential=False,
        status=LicenseStatus.ACTIVE.value,
        user=None,
    ):
        user = user or await make_user()
        async with database.session() as session:
            license = License(
                user_id=user.id,
                order_id=generate_id(),
                product_id="prod-starter",
                product_name="Starter",
                principal_usdt=Decimal(principal),
                daily_rate=Decimal(daily_rate),
                max_days=max_days,
                cap_fraction=Decimal(cap_fraction),
                days_generated=days_generated,
                total_earned=Decimal(total_earned),
                status=status,
                pause_potential=pause_potential,
                started_at=started_at,
            )
            session.add(license)
        return license

    return _make


@pytest.fixture
def make_order(database, make_user):
    async def _make(
        status=OrderStatus.PAID.value,
        amount="500",
        tx_hash=FRESH_TX_HASH,
        deposit_address=DEPOSIT_ADDRESS,
        expires_at=None,
        raw_chain_payload=None,
        user=None,
    ):
        user = user or await make_user()
        async with database.session() as session:
            order = OrderDeposit(
                user_id=user.id,
                product_id="prod-starter",
                product_name="Starter",
                amount_usdt=Decimal(amount),
                deposit_address=deposit_address,
                status=status,
                tx_hash=new_tx_hash() if tx_hash is FRESH_TX_HASH else tx_hash,
                expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=1),
                raw_chain_payload=raw_chain_payload,
            )
            session.add(order)
        return order

    return _make


async def fetch(database, model, entity_id):
    """Reload a row in a fresh session."""
    async with database.session() as session:
        return await session.get(model, entity_id)


async def fetch_all(database, model, *criteria):
    async with database.session() as session:
        result = await session.execute(select(model).where(*criteria))
        return list(result.scalars().all())


async def count_rows(database, model, *criteria):
    async with database.session() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()
