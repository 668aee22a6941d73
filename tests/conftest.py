from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.api import create_app
from app.bookings import BookingManager
from app.config import Settings
from app.database import InMemoryDocumentStore
from app.models import UserRole
from app.payments import PaymentManager
from app.reconciliation import ReconciliationEngine
from app.relationships import RelationshipManager
from app.users import UserDirectory

FIXED_NOW = datetime(2024, 6, 1, 8, 0, 0, tzinfo=UTC)


def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def db() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def people(db: InMemoryDocumentStore) -> dict[str, str]:
    """Two employers and two nannies; returns their ids by first name."""
    users = UserDirectory(db, now_fn=fixed_now)
    users.register(
        user_id="emma-id",
        email="emma@example.com",
        display_name="Emma Employer",
        role=UserRole.EMPLOYER,
    )
    users.register(
        user_id="eli-id",
        email="eli@example.com",
        display_name="Eli Park",
        role=UserRole.EMPLOYER,
    )
    users.register(
        user_id="nina-id",
        email="nina@example.com",
        display_name="Nina Nanny",
        role=UserRole.NANNY,
        hourly_rate=20.0,
    )
    users.register(
        user_id="nadia-id",
        email="nadia@example.com",
        display_name="Nadia Novak",
        role=UserRole.NANNY,
        hourly_rate=25.0,
    )
    return {"emma": "emma-id", "eli": "eli-id", "nina": "nina-id", "nadia": "nadia-id"}


@pytest.fixture
def relationships(db: InMemoryDocumentStore) -> RelationshipManager:
    return RelationshipManager(db, now_fn=fixed_now)


@pytest.fixture
def bookings(db: InMemoryDocumentStore) -> BookingManager:
    return BookingManager(db, now_fn=fixed_now)


@pytest.fixture
def payments(db: InMemoryDocumentStore) -> PaymentManager:
    return PaymentManager(
        db,
        settings=Settings(environment="test", allow_destructive_resets=True),
        now_fn=fixed_now,
    )


@pytest.fixture
def engine(db: InMemoryDocumentStore) -> ReconciliationEngine:
    return ReconciliationEngine(db)


@pytest_asyncio.fixture
async def client():
    app = create_app(Settings(environment="test", allow_destructive_resets=True))
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client
