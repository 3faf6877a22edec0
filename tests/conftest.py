"""Shared test fixtures for the revenue settlement test suite.

The distribution engine is pure and is tested on plain records. Lifecycle
tests run against an in-memory SQLite database (aiosqlite) so the ORM
mapping, cascades and version counter are exercised without a live
PostgreSQL instance. External services are replaced by injected coroutines
or httpx mock transports.
"""

import uuid
from collections.abc import AsyncIterator
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from revenue_settlement.core.config import settings
from revenue_settlement.core.database import Base
from revenue_settlement.models.park import Park
from revenue_settlement.services.distribution_engine import ProductionRecord
from revenue_settlement.services.invoice_bridge import CreditNoteReceipt, CreditNoteRequest


# ── Factory helpers ───────────────────────────────────────────────────────────


def make_record(
    turbine_id: str | None = "T1",
    production_kwh: str | int | Decimal = "100000",
    recipient_entity_id: str = "ENT-A",
) -> ProductionRecord:
    """Create a ProductionRecord for testing."""
    return ProductionRecord(
        recipient_entity_id=recipient_entity_id,
        turbine_id=turbine_id,
        production_kwh=Decimal(str(production_kwh)),
    )


def scenario_records() -> list[ProductionRecord]:
    """Three turbines producing 100 000 / 150 000 / 250 000 kWh (total 500 000)."""
    return [
        make_record("T1", "100000", "ENT-A"),
        make_record("T2", "150000", "ENT-B"),
        make_record("T3", "250000", "ENT-C"),
    ]


class FakeBridge:
    """In-process stand-in for the invoice bridge.

    Remembers documents by idempotency key, the way the real bridge does, so
    a repeated key returns the original document instead of a new one.
    ``fail_items`` makes requests for the given item ids raise.
    """

    def __init__(self, fail_items: set[uuid.UUID] | None = None):
        self.fail_items = set(fail_items or ())
        self.requests: list[CreditNoteRequest] = []
        self.documents: dict[str, CreditNoteReceipt] = {}

    async def __call__(self, request: CreditNoteRequest) -> CreditNoteReceipt:
        self.requests.append(request)
        if request.item_id in self.fail_items:
            raise RuntimeError(f"bridge rejected item {request.item_id}")
        if request.idempotency_key not in self.documents:
            n = len(self.documents) + 1
            self.documents[request.idempotency_key] = CreditNoteReceipt(
                invoice_ref=f"CN-{n:04d}", invoice_number=f"GS-2026-{n:04d}"
            )
        return self.documents[request.idempotency_key]


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No real sleeping between invoice bridge retries."""
    monkeypatch.setattr(settings, "invoice_bridge_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "invoice_bridge_max_backoff_seconds", 0.0)


@pytest_asyncio.fixture
async def session() -> AsyncIterator[AsyncSession]:
    """A session on a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as s:
        yield s

    await engine.dispose()


@pytest_asyncio.fixture
async def park(session: AsyncSession) -> Park:
    """A park without its own distribution defaults."""
    p = Park(
        name="Windpark Nordfeld",
        short_name="NORDFELD",
        default_distribution_mode=None,
        default_tolerance_percentage=None,
    )
    session.add(p)
    await session.flush()
    return p


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()
