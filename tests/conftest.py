import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import fluzio_points.models  # noqa: F401
from fluzio_points.api.dependencies.services import get_notification_service
from fluzio_points.app import create_app
from fluzio_points.db.base import Base
from fluzio_points.db.session import get_session, get_session_factory
from fluzio_points.models.ledger import AccountOwnerKind
from fluzio_points.observability.scheduler import get_job_scheduler_store
from fluzio_points.observability.settlement import get_settlement_store
from fluzio_points.services.ledger import LedgerService
from fluzio_points.services.notifications import InMemoryNotificationBackend, NotificationService


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so that separately opened sessions use separate connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'points.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def notifications() -> NotificationService:
    return NotificationService(InMemoryNotificationBackend())


@pytest.fixture(autouse=True)
def reset_observability_stores():
    get_settlement_store().reset()
    get_job_scheduler_store().reset()
    yield
    get_settlement_store().reset()
    get_job_scheduler_store().reset()


@pytest.fixture
def seed_balance(session_factory):
    """Give an owner a starting balance through the ledger."""

    async def _seed(owner_id: str, amount: int, *, owner_kind: AccountOwnerKind = AccountOwnerKind.BUSINESS) -> None:
        async with session_factory() as session:
            ledger = LedgerService(session)
            await ledger.ensure_account(owner_id, owner_kind=owner_kind)
            await ledger.credit(owner_id, amount, source="seed")
            await session.commit()

    return _seed


@pytest.fixture
def balance_of(session_factory):
    async def _balance(owner_id: str) -> int:
        async with session_factory() as session:
            return await LedgerService(session).get_balance(owner_id)

    return _balance


@pytest_asyncio.fixture
async def app_with_db(session_factory, notifications):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notification_service] = lambda: notifications

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
