from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.db.models import User, UserRole
from groupbuy.utils.logging import get_logger

logger = get_logger()

SEED_USERS = [
    {"email": "admin@example.com", "full_name": "Shop Admin", "role": UserRole.ADMIN},
    {"email": "dana@example.com", "full_name": "Dana Levi", "role": UserRole.USER},
    {"email": "noam@example.com", "full_name": "Noam Cohen", "role": UserRole.USER},
]


async def seed_users(db_session: AsyncSession):
    """Add development users that do not exist yet (matched by email)"""
    created = 0
    for data in SEED_USERS:
        existing = await db_session.execute(
            select(User.id).where(User.email == data["email"])
        )
        if existing.scalar_one_or_none() is not None:
            continue
        db_session.add(User(is_active=True, **data))
        created += 1

    await db_session.commit()
    logger.info(f"Seeded {created} users")
