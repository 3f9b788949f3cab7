import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from groupbuy.db.models import (
    Base,
    GeneralOrder,
    GeneralOrderStatus,
    NotificationQueueEntry,
    OrderItem,
    ParticipantOrder,
    Product,
    ShopStatus,
    User,
    UserRole,
)
from groupbuy.schemas.notification_schemas import OutboundMessage
from groupbuy.services.reports import ReportGenerator
from groupbuy.services.transport.base import MessageTransport
from groupbuy.utils.errors import BusinessLogicError


# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed "current time" for lifecycle tests (naive UTC)
NOW = datetime(2025, 3, 10, 12, 0, 0)


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


class FakeTransport(MessageTransport):
    """Records messages; raises queued errors (or per-recipient errors) instead of sending."""

    name = "fake"

    def __init__(self):
        self.sent: List[OutboundMessage] = []
        self.attempts = 0
        self.errors: List[Exception] = []
        self.fail_for = {}

    async def send(self, message: OutboundMessage) -> None:
        self.attempts += 1
        if message.recipient in self.fail_for:
            raise self.fail_for[message.recipient]
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(message)

    def recipients(self) -> List[str]:
        return [message.recipient for message in self.sent]


class FakeReportGenerator(ReportGenerator):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def generate_report(self, general_order_id: str, kind: str) -> bytes:
        self.calls.append((general_order_id, kind))
        if self.fail:
            raise BusinessLogicError("PDF service down", "REPORT_GENERATION_FAILED")
        return f"%PDF-1.4 {kind} {general_order_id}".encode()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


# Test data factories
@pytest.fixture
def make_user(db_session: AsyncSession):
    counter = {"n": 0}

    async def _make(
        email: Optional[str] = None,
        role: UserRole = UserRole.USER,
        is_active: bool = True,
        full_name: Optional[str] = None,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=email if email is not None else f"user{counter['n']}@example.com",
            full_name=full_name or f"User {counter['n']}",
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_order(db_session: AsyncSession):
    async def _make(
        title: str = "Spring group order",
        status: GeneralOrderStatus = GeneralOrderStatus.SCHEDULED,
        opening_time: Optional[datetime] = None,
        deadline: Optional[datetime] = None,
        **fields,
    ) -> GeneralOrder:
        order = GeneralOrder(
            title=title,
            description="Fresh stock from the supplier",
            status=status,
            opening_time=opening_time,
            deadline=deadline or NOW + timedelta(days=2),
            **fields,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _make


@pytest.fixture
def make_product(db_session: AsyncSession):
    async def _make(name: str = "Product", price: str = "10.00", **fields) -> Product:
        product = Product(name=name, price=Decimal(price), **fields)
        db_session.add(product)
        await db_session.commit()
        await db_session.refresh(product)
        return product

    return _make


@pytest.fixture
def add_participant(db_session: AsyncSession):
    """Add a participant order with (product, quantity) line items."""

    async def _add(order: GeneralOrder, user: User, items) -> ParticipantOrder:
        total = Decimal("0")
        participant = ParticipantOrder(
            user_id=user.id, general_order_id=order.id, total_amount=0
        )
        db_session.add(participant)
        await db_session.flush()

        for product, quantity in items:
            line_total = product.price * quantity
            total += line_total
            db_session.add(
                OrderItem(
                    order_id=participant.id,
                    product_id=product.id,
                    quantity=quantity,
                    unit_price=product.price,
                    total_price=line_total,
                )
            )
        participant.total_amount = total
        await db_session.commit()
        await db_session.refresh(participant)
        return participant

    return _add


@pytest.fixture
def queue_entries(db_session: AsyncSession):
    """Fetch queue entries as currently stored, oldest first."""

    async def _fetch(**filters) -> List[NotificationQueueEntry]:
        stmt = select(NotificationQueueEntry).execution_options(
            populate_existing=True
        )
        for column, value in filters.items():
            stmt = stmt.where(getattr(NotificationQueueEntry, column) == value)
        result = await db_session.execute(
            stmt.order_by(NotificationQueueEntry.created_at)
        )
        return list(result.scalars().all())

    return _fetch


@pytest.fixture
def reload(db_session: AsyncSession):
    """Re-read a row from the database, bypassing the identity map."""

    async def _reload(model, pk):
        return await db_session.get(model, pk, populate_existing=True)

    return _reload


@pytest.fixture
def shop_status(reload):
    async def _get() -> Optional[ShopStatus]:
        return await reload(ShopStatus, 1)

    return _get
