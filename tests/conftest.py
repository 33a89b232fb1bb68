"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from garage.bootstrap import Services, build_services, create_database
from garage.config import Settings
from garage.main import create_app
from garage.models.user import User, UserRole
from garage.services.appointment_service import VehicleInfo
from garage.services.database import Database
from garage.services.notification_gateway import InMemoryGateway
from httpx import ASGITransport, AsyncClient

PARIS = ZoneInfo("Europe/Paris")

# Everything in the suite happens "before" the appointments it books
START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

CUSTOMER_PHONE = "+33612345678"
OTHER_CUSTOMER_PHONE = "+33698765432"
ADMIN_PHONE = "+33611112222"
MANAGER_PHONE = "+33633334444"

VEHICLE = VehicleInfo(make="Peugeot", model="308", plate="AB-123-CD")


class FrozenClock:
    """Callable clock the services consult when no explicit ``now`` is passed."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def paris(*args) -> datetime:
    return datetime(*args, tzinfo=PARIS)


async def create_user(database: Database, **fields) -> User:
    async def _create(session):
        user = User(**fields)
        session.add(user)
        await session.flush()
        return user

    return await database.run_in_transaction(_create)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'garage.db'}",
        REDIS_URL="",
        TWILIO_ACCOUNT_SID="",
        TWILIO_AUTH_TOKEN="",
        TWILIO_PHONE_NUMBER="",
        INTERNAL_API_TOKEN="cron-secret",
        STORE_RETRY_INITIAL_DELAY=0.01,
        REMINDER_ITEM_TIMEOUT_SECONDS=0.5,
        REMINDER_SWEEP_BUDGET_SECONDS=5.0,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest_asyncio.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """File-backed SQLite store, fresh for every test."""
    db = create_database(settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def services(settings, database, gateway, clock) -> AsyncGenerator[Services, None]:
    built = build_services(settings, database, gateway=gateway, clock=clock)
    yield built
    await built.notifications.drain()


@pytest_asyncio.fixture
async def customer(database) -> User:
    return await create_user(
        database,
        email="marie.dupont@example.com",
        first_name="Marie",
        last_name="Dupont",
        role=UserRole.USER,
        phone_number=CUSTOMER_PHONE,
    )


@pytest_asyncio.fixture
async def other_customer(database) -> User:
    return await create_user(
        database,
        email="jean.martin@example.com",
        first_name="Jean",
        last_name="Martin",
        role=UserRole.USER,
        phone_number=OTHER_CUSTOMER_PHONE,
    )


@pytest_asyncio.fixture
async def admin(database) -> User:
    return await create_user(
        database,
        email="admin@lcf-auto.fr",
        first_name="Admin",
        role=UserRole.ADMIN,
        phone_number=ADMIN_PHONE,
    )


@pytest_asyncio.fixture
async def agenda_manager(database) -> User:
    return await create_user(
        database,
        email="agenda@lcf-auto.fr",
        first_name="Agenda",
        role=UserRole.AGENDA_MANAGER,
        phone_number=MANAGER_PHONE,
        notify_new_appointments=False,
    )


@pytest_asyncio.fixture
async def client(settings, services) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    app = create_app(settings, services=services)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def book(services, customer):
    """Book for ``customer`` (or ``user``) at ``when``, as seen from the suite's start."""

    async def _book(when: datetime, user: User = None, service_type: str = "maintenance", **kwargs):
        owner = user or customer
        return await services.appointments.book(
            user_id=owner.id,
            customer_name=owner.display_name,
            service_type=service_type,
            when=when,
            vehicle=VEHICLE,
            now=START,
            **kwargs,
        )

    return _book
