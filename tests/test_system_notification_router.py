import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.config.settings import settings
from groupbuy.db.models import (
    GeneralOrderStatus,
    MessageTemplate,
    SystemCommand,
    UserRole,
)
from groupbuy.services.notifications.order_statistics import (
    UNKNOWN_SUPPLIER,
    get_order_statistics,
    get_supplier_breakdown,
)
from groupbuy.services.notifications.system_commands import (
    SUMMARY_AUTO_CLOSED,
    SystemNotification,
)
from groupbuy.services.notifications.router import SystemNotificationRouter
from groupbuy.utils.errors import OrderNotFoundError, ParticipantOrderNotFoundError

from .conftest import FakeReportGenerator


@pytest.fixture
def closed_order_with_participants(make_order, make_user, make_product, add_participant):
    """A closed order with two participants; one of them orders twice."""

    async def _build():
        order = await make_order(title="Cheese", status=GeneralOrderStatus.CLOSED)
        brie = await make_product("Brie", "10.00")
        gouda = await make_product("Gouda", "4.50")
        dana = await make_user(email="dana@example.com", full_name="Dana")
        noam = await make_user(email="noam@example.com", full_name="Noam")
        await add_participant(order, dana, [(brie, 2)])
        await add_participant(order, dana, [(gouda, 1)])
        await add_participant(order, noam, [(brie, 1), (gouda, 2)])
        return order

    return _build


class TestAudiences:
    """Each command resolves to its own audience."""

    def test_every_command_has_a_resolver(self):
        for command in SystemCommand:
            assert SystemNotificationRouter.is_registered(command)

    @pytest.mark.asyncio
    async def test_opened_goes_to_active_users_with_email(
        self, db_session: AsyncSession, make_order, make_user
    ):
        order = await make_order(title="Honey", status=GeneralOrderStatus.OPEN)
        await make_user(email="active@example.com", full_name="Active")
        await make_user(email="inactive@example.com", is_active=False)
        await make_user(email="")
        router = SystemNotificationRouter(db_session)

        messages = await router.resolve_notification(SystemNotification.opened(order.id))

        assert [m.recipient for m in messages] == ["active@example.com"]
        assert "Honey" in messages[0].subject
        assert "Hello Active" in messages[0].body
        assert f"/general-orders/{order.id}" in messages[0].body

    @pytest.mark.asyncio
    async def test_closed_goes_to_every_user_with_email(
        self, db_session: AsyncSession, make_order, make_user
    ):
        order = await make_order(status=GeneralOrderStatus.CLOSED)
        await make_user(email="active@example.com")
        await make_user(email="inactive@example.com", is_active=False)
        router = SystemNotificationRouter(db_session)

        messages = await router.resolve_notification(SystemNotification.closed(order.id))

        assert sorted(m.recipient for m in messages) == [
            "active@example.com",
            "inactive@example.com",
        ]

    @pytest.mark.asyncio
    async def test_reminder_can_skip_participants(
        self,
        db_session: AsyncSession,
        monkeypatch,
        make_order,
        make_user,
        make_product,
        add_participant,
    ):
        order = await make_order(status=GeneralOrderStatus.OPEN)
        ordered = await make_user(email="ordered@example.com")
        await make_user(email="waiting@example.com")
        await add_participant(order, ordered, [(await make_product(), 1)])
        router = SystemNotificationRouter(db_session)
        reminder = SystemNotification.reminder_1h(order.id)

        everyone = await router.resolve_notification(reminder)
        assert len(everyone) == 2

        monkeypatch.setattr(settings, "REMINDER_SKIP_PARTICIPANTS", True)
        remaining = await router.resolve_notification(reminder)
        assert [m.recipient for m in remaining] == ["waiting@example.com"]

    @pytest.mark.asyncio
    async def test_missing_order_raises(self, db_session: AsyncSession):
        router = SystemNotificationRouter(db_session)

        with pytest.raises(OrderNotFoundError) as exc_info:
            await router.resolve_notification(
                SystemNotification.opened(str(uuid.uuid4()))
            )

        assert exc_info.value.permanent is True

    @pytest.mark.asyncio
    async def test_database_template_overrides_default(
        self, db_session: AsyncSession, make_order, make_user
    ):
        order = await make_order(title="Tea", status=GeneralOrderStatus.OPEN)
        await make_user(email="dana@example.com", full_name="Dana")
        db_session.add(
            MessageTemplate(
                code="GENERAL_ORDER_OPENED",
                subject_template="Open now: {title}",
                body_template="Hi {user_name}",
            )
        )
        await db_session.commit()
        router = SystemNotificationRouter(db_session)

        (message,) = await router.resolve_notification(
            SystemNotification.opened(order.id)
        )

        assert message.subject == "Open now: Tea"
        assert message.body == "Hi Dana"


class TestSummary:
    """The summary goes to admins with order statistics and reports."""

    @pytest.mark.asyncio
    async def test_statistics_count_distinct_participants(
        self, db_session: AsyncSession, closed_order_with_participants
    ):
        order = await closed_order_with_participants()

        statistics = await get_order_statistics(db_session, order.id)

        assert statistics.participant_count == 2
        assert statistics.line_item_count == 4
        assert statistics.distinct_product_count == 2
        assert statistics.total_amount == "43.50"
        assert [p["name"] for p in statistics.participants] == ["Dana", "Noam"]
        assert statistics.participants[0]["total_amount"] == "24.50"

    @pytest.mark.asyncio
    async def test_every_admin_gets_same_summary_with_reports(
        self, db_session: AsyncSession, make_user, closed_order_with_participants
    ):
        order = await closed_order_with_participants()
        await make_user(email="boss@example.com", role=UserRole.ADMIN)
        await make_user(email="ops@example.com", role=UserRole.ADMIN)
        await make_user(email="away@example.com", role=UserRole.ADMIN, is_active=False)
        generator = FakeReportGenerator()
        router = SystemNotificationRouter(db_session, report_generator=generator)

        messages = await router.resolve_notification(
            SystemNotification.summary(order.id, SUMMARY_AUTO_CLOSED)
        )

        assert [m.recipient for m in messages] == ["boss@example.com", "ops@example.com"]
        for message in messages:
            assert f"Total amount: {settings.CURRENCY_SYMBOL}43.50" in message.body
            assert "Participants: 2" in message.body
            assert "AUTO_CLOSED" in message.subject
            assert [a.filename for a in message.attachments] == [
                f"admin-report-{order.id}.pdf",
                f"supplier-report-{order.id}.pdf",
            ]
        assert generator.calls == [(order.id, "admin"), (order.id, "supplier")]

    @pytest.mark.asyncio
    async def test_report_failure_sends_summary_without_attachments(
        self, db_session: AsyncSession, make_user, closed_order_with_participants
    ):
        order = await closed_order_with_participants()
        await make_user(email="boss@example.com", role=UserRole.ADMIN)
        router = SystemNotificationRouter(
            db_session, report_generator=FakeReportGenerator(fail=True)
        )

        (message,) = await router.resolve_notification(
            SystemNotification.summary(order.id, SUMMARY_AUTO_CLOSED)
        )

        assert message.attachments == []

    @pytest.mark.asyncio
    async def test_no_admins_means_no_messages(
        self, db_session: AsyncSession, closed_order_with_participants
    ):
        order = await closed_order_with_participants()
        router = SystemNotificationRouter(db_session)

        messages = await router.resolve_notification(
            SystemNotification.summary(order.id, SUMMARY_AUTO_CLOSED)
        )

        assert messages == []

    @pytest.mark.asyncio
    async def test_summary_of_empty_order(
        self, db_session: AsyncSession, make_order, make_user
    ):
        order = await make_order(status=GeneralOrderStatus.CLOSED)
        await make_user(email="boss@example.com", role=UserRole.ADMIN)

        (message,) = await SystemNotificationRouter(db_session).resolve_notification(
            SystemNotification.summary(order.id, SUMMARY_AUTO_CLOSED)
        )

        assert "Participants: 0" in message.body
        assert "No participants." in message.body


@pytest.fixture
def order_with_suppliers(make_order, make_user, make_product, add_participant):
    """Two products from one supplier and one product without a supplier."""

    async def _build():
        order = await make_order(title="Deli", status=GeneralOrderStatus.CLOSED)
        brie = await make_product(
            "Brie", "10.00", supplier_name="Cheese Co", supplier_contact="03-5550000"
        )
        gouda = await make_product("Gouda", "4.50", supplier_name="Cheese Co")
        honey = await make_product("Honey", "7.00")
        dana = await make_user(email="dana@example.com", full_name="Dana")
        noam = await make_user(email="noam@example.com", full_name="Noam")
        await add_participant(order, dana, [(brie, 2)])
        await add_participant(order, noam, [(honey, 1), (gouda, 2)])
        return order

    return _build


class TestSupplierReport:
    """Supplier reports group ordered products by supplier for the admins."""

    @pytest.mark.asyncio
    async def test_items_are_grouped_by_supplier(
        self, db_session: AsyncSession, order_with_suppliers
    ):
        order = await order_with_suppliers()

        groups = await get_supplier_breakdown(db_session, order.id)

        assert [g.supplier_name for g in groups] == ["Cheese Co", UNKNOWN_SUPPLIER]
        cheese, unknown = groups
        assert cheese.supplier_contact == "03-5550000"
        assert cheese.total_quantity == 4
        assert cheese.total_amount == "29.00"
        assert [(line.product_name, line.quantity) for line in cheese.lines] == [
            ("Brie", 2),
            ("Gouda", 2),
        ]
        assert unknown.total_amount == "7.00"

    @pytest.mark.asyncio
    async def test_report_goes_to_active_admins(
        self, db_session: AsyncSession, make_user, order_with_suppliers
    ):
        order = await order_with_suppliers()
        await make_user(email="boss@example.com", role=UserRole.ADMIN)
        await make_user(email="away@example.com", role=UserRole.ADMIN, is_active=False)

        (message,) = await SystemNotificationRouter(db_session).resolve_notification(
            SystemNotification.supplier_report(order.id)
        )

        assert message.recipient == "boss@example.com"
        assert message.subject == "Supplier report - Deli"
        assert "Suppliers: 2" in message.body
        assert f"Total amount: {settings.CURRENCY_SYMBOL}36.00" in message.body
        assert "Cheese Co (03-5550000)" in message.body
        assert "Gouda x2" in message.body

    @pytest.mark.asyncio
    async def test_order_without_items(
        self, db_session: AsyncSession, make_order, make_user
    ):
        order = await make_order(status=GeneralOrderStatus.CLOSED)
        await make_user(email="boss@example.com", role=UserRole.ADMIN)

        (message,) = await SystemNotificationRouter(db_session).resolve_notification(
            SystemNotification.supplier_report(order.id)
        )

        assert "No ordered items." in message.body


class TestOrderConfirmation:
    """Confirmations go to the participant with their own line items."""

    @pytest.mark.asyncio
    async def test_confirmation_lists_participant_items(
        self,
        db_session: AsyncSession,
        make_order,
        make_user,
        make_product,
        add_participant,
    ):
        order = await make_order(title="Cheese", status=GeneralOrderStatus.OPEN)
        brie = await make_product("Brie", "10.00")
        gouda = await make_product("Gouda", "4.50")
        dana = await make_user(email="dana@example.com", full_name="Dana")
        noam = await make_user(email="noam@example.com", full_name="Noam")
        participant = await add_participant(order, dana, [(brie, 2), (gouda, 1)])
        await add_participant(order, noam, [(brie, 5)])

        (message,) = await SystemNotificationRouter(db_session).resolve_notification(
            SystemNotification.order_confirmation(order.id, participant.id)
        )

        assert message.recipient == "dana@example.com"
        assert message.subject == "Order confirmation - Cheese"
        assert "Hello Dana" in message.body
        assert f"Order number: {participant.id[:8]}" in message.body
        assert "Brie x2" in message.body
        assert "Gouda x1" in message.body
        assert "Items: 3" in message.body
        assert f"Total: {settings.CURRENCY_SYMBOL}24.50" in message.body
        assert "x5" not in message.body

    @pytest.mark.asyncio
    async def test_missing_participant_order_raises(
        self, db_session: AsyncSession, make_order
    ):
        order = await make_order(status=GeneralOrderStatus.OPEN)
        missing_id = str(uuid.uuid4())

        with pytest.raises(ParticipantOrderNotFoundError) as exc_info:
            await SystemNotificationRouter(db_session).resolve_notification(
                SystemNotification.order_confirmation(order.id, missing_id)
            )

        assert exc_info.value.permanent is True
        assert exc_info.value.participant_order_id == missing_id

    @pytest.mark.asyncio
    async def test_participant_order_of_another_general_order_raises(
        self,
        db_session: AsyncSession,
        make_order,
        make_user,
        make_product,
        add_participant,
    ):
        order = await make_order(status=GeneralOrderStatus.OPEN)
        other = await make_order(title="Other", status=GeneralOrderStatus.OPEN)
        participant = await add_participant(
            other, await make_user(), [(await make_product(), 1)]
        )

        with pytest.raises(ParticipantOrderNotFoundError):
            await SystemNotificationRouter(db_session).resolve_notification(
                SystemNotification.order_confirmation(order.id, participant.id)
            )
