from typing import Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.config.settings import settings
from groupbuy.db.models import GeneralOrder, GeneralOrderStatus, ShopStatus
from groupbuy.utils.datetime_utils import naive_utc_now
from groupbuy.utils.logging import get_logger

logger = get_logger()

SHOP_STATUS_ID = 1


class ShopStatusService:
    """
    Keeps the storefront singleton in line with the active general order.

    Every write is one conditioned update of the single row. Callers log
    failures and carry on; an order transition is never undone because the
    shop could not be updated.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def ensure_row(self) -> ShopStatus:
        status = await self.db.get(ShopStatus, SHOP_STATUS_ID, populate_existing=True)
        if status is not None:
            return status

        self.db.add(
            ShopStatus(
                id=SHOP_STATUS_ID,
                is_open=False,
                message=settings.SHOP_CLOSED_MESSAGE,
                updated_at=naive_utc_now(),
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Another tick created it first
            await self.db.rollback()
        return await self.db.get(ShopStatus, SHOP_STATUS_ID, populate_existing=True)

    async def get_status(self) -> ShopStatus:
        return await self.ensure_row()

    async def set_shop_order(
        self,
        order_id: Optional[str],
        is_open: bool,
        message: str,
        only_if=None,
    ) -> bool:
        """
        Point the shop at ``order_id`` (or at nothing) in one update.

        ``only_if`` is an extra SQL condition on the current row; the update is
        skipped (returns False) when it does not hold.
        """
        await self.ensure_row()

        condition = ShopStatus.id == SHOP_STATUS_ID
        if only_if is not None:
            condition = and_(condition, only_if)

        result = await self.db.execute(
            update(ShopStatus)
            .where(condition)
            .values(
                is_open=is_open,
                current_general_order_id=order_id,
                message=message,
                updated_at=naive_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def claim_for_order(self, order: GeneralOrder) -> bool:
        """Show ``order`` unless the shop already shows a different open order."""
        claimed = await self.set_shop_order(
            order.id,
            True,
            settings.SHOP_OPEN_MESSAGE.format(title=order.title),
            only_if=or_(
                ShopStatus.is_open == False,  # noqa: E712
                ShopStatus.current_general_order_id.is_(None),
                ShopStatus.current_general_order_id == order.id,
            ),
        )
        if claimed:
            logger.info(f"Shop opened for general order {order.id}")
        else:
            logger.warning(
                f"Shop already shows another general order, not switching to {order.id}"
            )
        return claimed

    async def release_for_order(self, order_id: str) -> bool:
        """Close the shop if, and only if, it shows ``order_id``."""
        released = await self.set_shop_order(
            None,
            False,
            settings.SHOP_CLOSED_MESSAGE,
            only_if=ShopStatus.current_general_order_id == order_id,
        )
        if released:
            logger.info(f"Shop closed after general order {order_id}")
        return released

    async def reconcile(self) -> ShopStatus:
        """
        Derive the shop row from order statuses.

        The shop keeps its current order while that order is still open;
        otherwise it moves to the earliest-deadline open order, or closes.
        """
        status = await self.ensure_row()

        open_orders = list(
            (
                await self.db.execute(
                    select(GeneralOrder)
                    .where(GeneralOrder.status == GeneralOrderStatus.OPEN)
                    .order_by(GeneralOrder.deadline.asc())
                )
            )
            .scalars()
            .all()
        )
        current_id = status.current_general_order_id

        if any(order.id == current_id for order in open_orders) and status.is_open:
            return status

        if open_orders:
            target = open_orders[0]
            if await self.set_shop_order(
                target.id,
                True,
                settings.SHOP_OPEN_MESSAGE.format(title=target.title),
                only_if=_unchanged(status),
            ):
                logger.info(f"Shop reconciled to open general order {target.id}")
        elif status.is_open or current_id is not None:
            if await self.set_shop_order(
                None,
                False,
                settings.SHOP_CLOSED_MESSAGE,
                only_if=_unchanged(status),
            ):
                logger.info("Shop reconciled to closed, no open general order")

        return await self.db.get(ShopStatus, SHOP_STATUS_ID, populate_existing=True)


def _unchanged(status: ShopStatus):
    """Guard for reconcile writes: the row still holds what was read."""
    if status.current_general_order_id is None:
        current = ShopStatus.current_general_order_id.is_(None)
    else:
        current = ShopStatus.current_general_order_id == status.current_general_order_id
    return and_(ShopStatus.is_open == status.is_open, current)
