from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.services.shop_status_service import ShopStatusService
from groupbuy.utils.logging import get_logger

logger = get_logger()


async def seed_shop_status(db_session: AsyncSession):
    """Create the shop status singleton if it is missing"""
    status = await ShopStatusService(db_session).ensure_row()
    logger.info(f"Shop status row ready (is_open={status.is_open})")
