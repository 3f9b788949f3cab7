from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.db.models import MessageTemplate
from groupbuy.services.notifications.templates import DEFAULT_TEMPLATES
from groupbuy.utils.logging import get_logger

logger = get_logger()


async def seed_message_templates(db_session: AsyncSession):
    """Seed message templates from the built-in defaults - clear existing and add new"""

    await db_session.execute(delete(MessageTemplate))

    templates = [
        MessageTemplate(
            code=code,
            subject_template=template["subject"],
            body_template=template["body"],
            is_active=True,
        )
        for code, template in DEFAULT_TEMPLATES.items()
    ]
    db_session.add_all(templates)
    await db_session.commit()

    logger.info(f"Seeded {len(templates)} message templates")
