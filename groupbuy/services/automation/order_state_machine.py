import enum
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import and_, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.config.settings import settings
from groupbuy.db.models import GeneralOrder, GeneralOrderStatus
from groupbuy.schemas.automation_schemas import TaskError, TransitionResult
from groupbuy.schemas.notification_schemas import QueueEntryDraft
from groupbuy.services.automation.budget import RunBudget
from groupbuy.services.notifications.queue_store import NotificationQueueStore
from groupbuy.services.notifications.system_commands import (
    SUMMARY_AUTO_CLOSED,
    SystemNotification,
)
from groupbuy.services.shop_status_service import ShopStatusService
from groupbuy.utils.datetime_utils import naive_utc_now, to_naive_utc
from groupbuy.utils.logging import get_logger

logger = get_logger()

TASK_NAME = "general_order_state_machine"


class NotificationKind(enum.Enum):
    """
    Notification side effects of the order lifecycle, keyed by the flag column
    that records they were queued.
    """

    OPENING = "opening_email_sent"
    REMINDER_1H = "reminder_1h_sent"
    REMINDER_10M = "reminder_10m_sent"
    CLOSURE = "closure_email_sent"

    @property
    def flag(self):
        return getattr(GeneralOrder, self.value)

    @property
    def required_status(self) -> GeneralOrderStatus:
        if self is NotificationKind.CLOSURE:
            return GeneralOrderStatus.CLOSED
        return GeneralOrderStatus.OPEN

    def drafts(self, order: GeneralOrder) -> List[QueueEntryDraft]:
        system_draft = NotificationQueueStore.system_draft
        if self is NotificationKind.OPENING:
            return [
                system_draft(
                    SystemNotification.opened(order.id),
                    f"General order opened: {order.title}",
                    priority=3,
                )
            ]
        if self is NotificationKind.REMINDER_1H:
            return [
                system_draft(
                    SystemNotification.reminder_1h(order.id),
                    f"One hour left: {order.title}",
                    priority=2,
                )
            ]
        if self is NotificationKind.REMINDER_10M:
            return [
                system_draft(
                    SystemNotification.reminder_10m(order.id),
                    f"Ten minutes left: {order.title}",
                    priority=1,
                )
            ]
        return [
            system_draft(
                SystemNotification.closed(order.id),
                f"General order closed: {order.title}",
                priority=4,
            ),
            system_draft(
                SystemNotification.summary(order.id, SUMMARY_AUTO_CLOSED),
                f"General order summary: {order.title}",
                priority=4,
            ),
        ]


def awaiting_opening_notice():
    """Opened by this engine but the opening notice is not queued yet."""
    return and_(
        GeneralOrder.opened_at.is_not(None),
        GeneralOrder.opening_email_sent == False,  # noqa: E712
    )


REMINDER_WINDOWS = (
    (NotificationKind.REMINDER_1H, lambda: settings.REMINDER_1H_MINUTES),
    (NotificationKind.REMINDER_10M, lambda: settings.REMINDER_10M_MINUTES),
)


class OrderStateMachine:
    """
    Moves general orders scheduled -> open -> closed as a function of time and
    queues the notifications each step owes.

    Every status change is a conditioned UPDATE on the expected current status,
    and every notification is queued in the same transaction that flips its
    flag, so repeated or overlapping scans produce each side effect once.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        shop_service: Optional[ShopStatusService] = None,
        budget: Optional[RunBudget] = None,
    ):
        self.db = db_session
        self.store = NotificationQueueStore(db_session)
        self.shop = shop_service or ShopStatusService(db_session)
        self.budget = budget or RunBudget.unlimited()

    async def scan_and_transition(
        self, now: Optional[datetime] = None
    ) -> TransitionResult:
        now = to_naive_utc(now) if now else naive_utc_now()
        result = TransitionResult()

        for order_id in await self.find_due_to_open(now):
            await self._run_for_order(result, order_id, "open", self._open, now)

        # Opening notices owed by earlier scans go out before any close
        await self._recover_openings(result, now, engine_opened_only=True)

        # An order opened in this scan closes on the next one at the earliest
        for order_id in await self.find_due_to_close(now):
            if order_id in result.opened:
                continue
            await self._run_for_order(result, order_id, "close", self._close, now)

        for kind, window in REMINDER_WINDOWS:
            for order_id in await self.find_due_for_reminder(kind, window(), now):
                await self._run_for_order(
                    result, order_id, kind.name.lower(), self._remind(kind), now
                )

        await self._recover_openings(result, now)
        await self._recover_closures(result, now)

        try:
            await self.shop.reconcile()
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Shop reconciliation failed: {e}")

        logger.info(
            f"Order scan finished: opened={len(result.opened)} "
            f"closed={len(result.closed)} reminders={result.reminders} "
            f"recovered={result.recovered} errors={len(result.errors)}"
        )
        return result

    # Candidate queries; failures here propagate and fail the task

    async def find_due_to_open(self, now: datetime) -> List[str]:
        return await self._ids(
            and_(
                GeneralOrder.status == GeneralOrderStatus.SCHEDULED,
                GeneralOrder.opening_time.is_not(None),
                GeneralOrder.opening_time <= now,
            ),
            GeneralOrder.opening_time,
        )

    async def find_due_to_close(self, now: datetime) -> List[str]:
        return await self._ids(
            and_(
                GeneralOrder.status == GeneralOrderStatus.OPEN,
                GeneralOrder.deadline < now,
                not_(awaiting_opening_notice()),
            ),
            GeneralOrder.deadline,
        )

    async def find_due_for_reminder(
        self, kind: NotificationKind, window_minutes: int, now: datetime
    ) -> List[str]:
        return await self._ids(
            and_(
                GeneralOrder.status == GeneralOrderStatus.OPEN,
                GeneralOrder.deadline >= now,
                GeneralOrder.deadline <= now + timedelta(minutes=window_minutes),
                kind.flag == False,  # noqa: E712
            ),
            GeneralOrder.deadline,
        )

    async def _ids(self, condition, order_by) -> List[str]:
        result = await self.db.execute(
            select(GeneralOrder.id).where(condition).order_by(order_by)
        )
        return [str(order_id) for order_id in result.scalars().all()]

    # Per-order steps

    async def open_order(self, order_id: str, now: datetime) -> bool:
        """Open one scheduled order. False when another scan already did."""
        now = to_naive_utc(now)
        transitioned = await self._transition(
            order_id,
            GeneralOrderStatus.SCHEDULED,
            GeneralOrderStatus.OPEN,
            opened_at=now,
        )
        if not transitioned:
            logger.info(f"General order {order_id} was already opened elsewhere")
            return False

        order = await self._load(order_id)
        logger.info(f"Opened general order {order_id} ({order.title})")
        await self.claim_notification(order, NotificationKind.OPENING)

        try:
            await self.shop.claim_for_order(order)
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Shop update after opening {order_id} failed: {e}")
        return True

    async def close_order(self, order_id: str, now: datetime) -> bool:
        """Close one open order. False when another scan already did."""
        now = to_naive_utc(now)
        transitioned = await self._transition(
            order_id,
            GeneralOrderStatus.OPEN,
            GeneralOrderStatus.CLOSED,
            condition=not_(awaiting_opening_notice()),
            closed_at=now,
        )
        if not transitioned:
            logger.info(
                f"General order {order_id} was not closed: already closed elsewhere "
                f"or its opening notice is still pending"
            )
            return False

        order = await self._load(order_id)
        logger.info(f"Closed general order {order_id} ({order.title})")
        await self.claim_notification(order, NotificationKind.CLOSURE)

        try:
            await self.shop.release_for_order(order_id)
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Shop update after closing {order_id} failed: {e}")
        return True

    async def claim_notification(
        self, order: GeneralOrder, kind: NotificationKind, enqueue: bool = True
    ) -> bool:
        """
        Flip ``kind``'s flag and queue its entries in one transaction.

        Returns False when the flag was already set (or the order is no longer
        in the status the notification belongs to); nothing is queued then.
        With ``enqueue=False`` the flag is set and nothing is queued.
        """
        try:
            result = await self.db.execute(
                update(GeneralOrder)
                .where(
                    and_(
                        GeneralOrder.id == order.id,
                        GeneralOrder.status == kind.required_status,
                        kind.flag == False,  # noqa: E712
                    )
                )
                .values({kind.value: True, "updated_at": naive_utc_now()})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.commit()
                return False

            if enqueue:
                for draft in kind.drafts(order):
                    self.store.add(draft)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if enqueue:
            logger.info(f"Queued {kind.name.lower()} notification for order {order.id}")
        else:
            logger.info(f"Skipped {kind.name.lower()} notification for order {order.id}")
        return True

    async def _transition(
        self,
        order_id: str,
        from_status: GeneralOrderStatus,
        to_status: GeneralOrderStatus,
        condition=None,
        **values,
    ) -> bool:
        conditions = [GeneralOrder.id == order_id, GeneralOrder.status == from_status]
        if condition is not None:
            conditions.append(condition)
        result = await self.db.execute(
            update(GeneralOrder)
            .where(and_(*conditions))
            .values(status=to_status, updated_at=naive_utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _load(self, order_id: str) -> GeneralOrder:
        return await self.db.get(GeneralOrder, order_id, populate_existing=True)

    async def _open(self, result: TransitionResult, order_id: str, now: datetime):
        if await self.open_order(order_id, now):
            result.opened.append(order_id)

    async def _close(self, result: TransitionResult, order_id: str, now: datetime):
        if await self.close_order(order_id, now):
            result.closed.append(order_id)

    def _remind(self, kind: NotificationKind):
        async def step(result: TransitionResult, order_id: str, now: datetime):
            order = await self._load(order_id)
            if order is None:
                return
            # Inside the 10 minute window the 1 hour reminder is superseded
            enqueue = not (
                kind is NotificationKind.REMINDER_1H
                and order.deadline
                <= now + timedelta(minutes=settings.REMINDER_10M_MINUTES)
            )
            if await self.claim_notification(order, kind, enqueue=enqueue) and enqueue:
                result.reminders += 1

        return step

    async def _recover_openings(
        self, result: TransitionResult, now: datetime, engine_opened_only: bool = False
    ):
        """
        Queue opening notices whose flag is still unset, e.g. after a crash
        between the status update and the enqueue, or for an order opened
        outside this engine.
        """
        condition = and_(
            GeneralOrder.status == GeneralOrderStatus.OPEN,
            GeneralOrder.opening_email_sent == False,  # noqa: E712
        )
        if engine_opened_only:
            condition = and_(condition, GeneralOrder.opened_at.is_not(None))

        for order_id in await self._ids(condition, GeneralOrder.deadline):
            await self._run_for_order(
                result, order_id, "recover_opening",
                self._recover(NotificationKind.OPENING), now,
            )

    async def _recover_closures(self, result: TransitionResult, now: datetime):
        """Queue closure notices for orders closed recently without them."""
        cutoff = now - timedelta(hours=settings.CLOSURE_RECOVERY_WINDOW_HOURS)

        missing_closure = await self._ids(
            and_(
                GeneralOrder.status == GeneralOrderStatus.CLOSED,
                GeneralOrder.closure_email_sent == False,  # noqa: E712
                or_(
                    GeneralOrder.closed_at >= cutoff,
                    and_(
                        GeneralOrder.closed_at.is_(None),
                        GeneralOrder.deadline >= cutoff,
                    ),
                ),
            ),
            GeneralOrder.deadline,
        )
        for order_id in missing_closure:
            await self._run_for_order(
                result, order_id, "recover_closure",
                self._recover(NotificationKind.CLOSURE), now,
            )

    def _recover(self, kind: NotificationKind):
        async def step(result: TransitionResult, order_id: str, now: datetime):
            order = await self._load(order_id)
            if order is not None and await self.claim_notification(order, kind):
                logger.warning(
                    f"Recovered missing {kind.name.lower()} notification for order {order_id}"
                )
                result.recovered += 1

        return step

    async def _run_for_order(
        self,
        result: TransitionResult,
        order_id: str,
        step_name: str,
        step: Callable[[TransitionResult, str, datetime], Awaitable[None]],
        now: datetime,
    ):
        if self.budget.exhausted():
            if not result.budget_exhausted:
                logger.warning("Run budget exhausted, deferring remaining orders")
            result.budget_exhausted = True
            return

        try:
            await step(result, order_id, now)
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to {step_name} general order {order_id}: {e}")
            result.errors.append(
                TaskError(task=TASK_NAME, order_id=order_id, message=f"{step_name}: {e}")
            )
