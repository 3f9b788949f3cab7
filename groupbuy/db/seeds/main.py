"""
Main seeding file that orchestrates all database seeding operations.

Runs seeding functions in dependency order.
"""

from groupbuy.db.session import AsyncSessionLocal
from groupbuy.utils.logging import get_logger

from .message_templates_seed import seed_message_templates
from .shop_status_seed import seed_shop_status
from .users_seed import seed_users

logger = get_logger()


async def seed_all_data(include_dev_users: bool = True):
    """
    Seed reference data: message templates and the shop status row, plus
    development users unless ``include_dev_users`` is False.
    """
    async with AsyncSessionLocal() as db_session:
        try:
            logger.info("Starting database seeding...")

            await seed_message_templates(db_session)
            await seed_shop_status(db_session)
            if include_dev_users:
                await seed_users(db_session)

            logger.info("Database seeding completed successfully!")
            return True

        except Exception as e:
            logger.error(f"Database seeding failed: {str(e)}")
            await db_session.rollback()
            raise e
