import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["EVENTS_ENABLED"] = "false"
os.environ["REDIS_ENABLED"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional
from types import SimpleNamespace
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pharmstock.main import app
from pharmstock.core.permissions import Permissions
from pharmstock.core.security import create_access_token
from pharmstock.infrastructure.database import Base, build_engine, build_sessionmaker, get_db
from pharmstock.domain.stock.ledger import refresh_derived
from pharmstock.domain.stock.models import Department, Drug, StockCard, Warehouse, WarehouseType
from pharmstock.domain.requisitions import models as _requisition_models  # noqa: F401

HOSPITAL_ID = "hospital-0001"
OTHER_HOSPITAL_ID = "hospital-0002"
REQUESTER_ID = "user-nurse-01"
APPROVER_ID = "user-pharmacist-01"
FULFILLER_ID = "user-technician-01"

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def test_engine():
    """Fresh in-memory database per test."""
    engine = build_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    session_factory = build_sessionmaker(test_engine)
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database dependency override."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(
    permissions: Optional[List[str]] = None,
    user_id: str = REQUESTER_ID,
    hospital_id: str = HOSPITAL_ID,
) -> Dict[str, str]:
    token = create_access_token(
        user_id,
        {
            "hospital_id": hospital_id,
            "role": "pharmacist",
            "permissions": permissions if permissions is not None else [Permissions.SYSTEM_ADMIN],
        },
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def admin_headers() -> Dict[str, str]:
    return auth_headers()


async def create_card(
    session: AsyncSession,
    warehouse: Warehouse,
    drug: Drug,
    current_stock: int = 0,
    reorder_point: int = 0,
    average_cost: str = "0",
    max_stock: Optional[int] = None,
) -> StockCard:
    card = StockCard(
        hospital_id=warehouse.hospital_id,
        warehouse=warehouse,
        drug=drug,
        current_stock=current_stock,
        reserved_stock=0,
        reorder_point=reorder_point,
        max_stock=max_stock,
        average_cost=Decimal(average_cost),
    )
    refresh_derived(card)
    session.add(card)
    await session.commit()
    return card


async def fetch(session: AsyncSession, model, object_id: str):
    """Re-read a row, discarding whatever the session holds for it."""
    result = await session.execute(
        select(model).where(model.id == object_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.fixture(scope="function")
async def seed(db_session: AsyncSession) -> SimpleNamespace:
    """Catalog rows plus stock cards for two drugs in the main pharmacy.

    paracetamol: 100 on hand at 2.50, reorder point 20
    amoxicillin: 50 on hand at 4.00, reorder point 10
    The ward store holds an empty paracetamol card for transfers.
    """
    pharmacy = Warehouse(
        hospital_id=HOSPITAL_ID, code="PH-MAIN", name="Main Pharmacy", type=WarehouseType.PHARMACY
    )
    ward_store = Warehouse(
        hospital_id=HOSPITAL_ID, code="WARD-3A", name="Ward 3A Store", type=WarehouseType.WARD
    )
    department = Department(hospital_id=HOSPITAL_ID, code="MED", name="Internal Medicine")
    paracetamol = Drug(
        hospital_id=HOSPITAL_ID, code="PARA500", name="Paracetamol 500mg",
        unit="tablet", dosage_form="tablet", strength="500mg",
    )
    amoxicillin = Drug(
        hospital_id=HOSPITAL_ID, code="AMOX250", name="Amoxicillin 250mg",
        unit="capsule", dosage_form="capsule", strength="250mg",
    )
    db_session.add_all([pharmacy, ward_store, department, paracetamol, amoxicillin])
    await db_session.commit()

    para_card = await create_card(db_session, pharmacy, paracetamol, 100, reorder_point=20, average_cost="2.50")
    amox_card = await create_card(db_session, pharmacy, amoxicillin, 50, reorder_point=10, average_cost="4.00")
    ward_card = await create_card(db_session, ward_store, paracetamol, 0, reorder_point=5)

    # Plain ids: a rollback in a test expires every loaded object
    return SimpleNamespace(
        hospital_id=HOSPITAL_ID,
        pharmacy_id=pharmacy.id,
        ward_store_id=ward_store.id,
        department_id=department.id,
        paracetamol_id=paracetamol.id,
        amoxicillin_id=amoxicillin.id,
        para_card_id=para_card.id,
        amox_card_id=amox_card.id,
        ward_card_id=ward_card.id,
    )


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "requisitions: mark test as requisition workflow related"
    )
    config.addinivalue_line(
        "markers", "stock: mark test as stock ledger related"
    )
