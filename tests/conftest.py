import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test-gateway-secret")

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Dict, List

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.exceptions import GatewayError
from app.core.gateway import PaymentGateway, compute_signature, get_gateway
from app.core.models import FeeRecord, Student
from app.db.session import Base, get_db
from app.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeGateway(PaymentGateway):
    """In-memory gateway: numbered orders, signatures made with the configured secret."""

    def __init__(self) -> None:
        super().__init__(settings.gateway_key_secret)
        self.orders: List[Dict] = []
        self.fail = False

    async def create_order(self, amount, currency, metadata) -> str:
        if self.fail:
            raise GatewayError()
        order_id = f"order_{len(self.orders) + 1:06d}"
        self.orders.append({"id": order_id, "amount": amount, "currency": currency, "notes": metadata})
        return order_id

    def sign(self, order_id: str, payment_id: str) -> str:
        return compute_signature(settings.gateway_key_secret, order_id, payment_id)


@pytest.fixture()
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test; overrides the FastAPI dependency."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session() as session:

        async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
            yield session

        app.dependency_overrides[get_db] = override_get_db
        yield session

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.fixture()
def gateway() -> FakeGateway:
    fake = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture()
async def client(db_session: AsyncSession, gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def make_student(
    db: AsyncSession,
    *,
    roll_number: str = "CS2023001",
    semester: int = 3,
    components: Dict[str, str] = None,
    total: str = "0",
    paid: str = "0",
) -> Student:
    student = Student(
        roll_number=roll_number,
        first_name="Asha",
        last_name="Verma",
        email=f"{roll_number.lower()}@example.edu",
        semester=semester,
        is_active=True,
    )
    db.add(student)
    await db.flush()
    record = FeeRecord(
        student_id=student.id,
        semester=semester,
        academic_year="2025-2026",
        total=Decimal(total),
        paid=Decimal(paid),
        due_date=date(2026, 12, 31),
    )
    for name, value in (components or {}).items():
        setattr(record, f"{name}_fee", Decimal(value))
    record.recalculate()
    db.add(record)
    await db.commit()
    return student


@pytest.fixture()
async def student(db_session: AsyncSession) -> Student:
    """Semester 3 student owing 10000: tuition 6000, exam 1000, library 500, lab 1500, other 1000."""
    return await make_student(
        db_session,
        components={"tuition": "6000", "exam": "1000", "library": "500", "lab": "1500", "other": "1000"},
    )


@pytest.fixture()
async def lump_student(db_session: AsyncSession) -> Student:
    """Semester 3 student with a lump total of 10000 and no itemized components."""
    return await make_student(db_session, roll_number="CS2023002", total="10000")
