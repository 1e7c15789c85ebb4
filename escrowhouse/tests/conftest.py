import uuid
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import JSON, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrowhouse.common import events
from escrowhouse.common.locks import LocalLockManager
from escrowhouse.config import settings
from escrowhouse.core.engine import EscrowEngine
from escrowhouse.core.milestones.schemas import MilestoneCreate
from escrowhouse.db.base import Base
from escrowhouse.db.models import *  # noqa: F401,F403 - ensure all models loaded
from escrowhouse.integrations import EscrowProviderClient, MediatorAssignmentClient

HOMEOWNER = "acct_homeowner_1"
CONTRACTOR = "acct_contractor_1"
PAYER = "pm_card_visa"
MEDIATOR = "mediator-1"


# Make JSONB render as JSON for SQLite
@event.listens_for(Base.metadata, "before_create")
def _remap_jsonb(target, connection, **kw):
    if connection.dialect.name == "sqlite":
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, JSONB):
                    column.type = JSON()


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No backoff sleeps between provider retries in tests."""
    monkeypatch.setattr(settings, "RETRY_BASE_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "ESCROW_PROVIDER_SECRET_KEY", "mock_stripe_key")
    monkeypatch.setattr(settings, "RULES_ENGINE_URL", "mock://rules")
    monkeypatch.setattr(settings, "MEDIATOR_SERVICE_URL", "mock://mediators")


@pytest.fixture
async def session_factory(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}", echo=False)
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()


@pytest.fixture
def provider():
    return EscrowProviderClient()


@pytest.fixture
def escrow(session_factory, provider):
    return EscrowEngine(
        session_factory=session_factory,
        lock_manager=LocalLockManager(),
        provider=provider,
        assigner=MediatorAssignmentClient(pool=[MEDIATOR]),
    )


@pytest.fixture
def emitted():
    """Events published during the test, as ``(name, data)`` pairs."""
    received = []

    async def record(name, data):
        received.append((name, data))

    events.subscribe(record)
    yield received
    events.unsubscribe(record)


@pytest.fixture
def make_milestone(escrow):
    async def _make(amount="3000.00", **overrides):
        data = {
            "project_id": uuid.uuid4(),
            "sequence": 1,
            "title": "Kitchen rough-in",
            "amount": Decimal(amount),
            "homeowner_ref": HOMEOWNER,
            "contractor_ref": CONTRACTOR,
            "payer_ref": PAYER,
        }
        data.update(overrides)
        return await escrow.milestones.create_milestone(MilestoneCreate(**data))

    return _make


@pytest.fixture
def funded_milestone(escrow, make_milestone):
    async def _funded(amount="3000.00", **overrides):
        milestone = await make_milestone(amount, **overrides)
        return await escrow.milestones.fund_milestone(milestone.id)

    return _funded


@pytest.fixture
def submitted_milestone(escrow, funded_milestone):
    async def _submitted(amount="3000.00", **overrides):
        milestone = await funded_milestone(amount, **overrides)
        return await escrow.milestones.mark_complete(milestone.id)

    return _submitted


@pytest.fixture
async def client(escrow):
    from escrowhouse.api.deps import get_escrow_engine
    from escrowhouse.main import app

    app.dependency_overrides[get_escrow_engine] = lambda: escrow

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def actor_headers(ref: str, role: str) -> dict[str, str]:
    return {"X-Actor-Ref": ref, "X-Actor-Role": role}


@pytest.fixture
def homeowner_headers():
    return actor_headers(HOMEOWNER, "homeowner")


@pytest.fixture
def contractor_headers():
    return actor_headers(CONTRACTOR, "contractor")


@pytest.fixture
def system_headers():
    return actor_headers("project-service", "system")


@pytest.fixture
def admin_headers():
    return actor_headers("ops-admin", "admin")


@pytest.fixture
def mediator_headers():
    return actor_headers(MEDIATOR, "mediator")
