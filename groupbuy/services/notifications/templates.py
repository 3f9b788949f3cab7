import string
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.db.models import MessageTemplate
from groupbuy.utils.logging import get_logger

logger = get_logger()

# Built-in templates, used when no active MessageTemplate row exists for a code
DEFAULT_TEMPLATES: Dict[str, Dict[str, str]] = {
    "GENERAL_ORDER_OPENED": {
        "subject": "New group order is open - {title}",
        "body": (
            "Hello {user_name},\n\n"
            "A new group order is now open: {title}\n"
            "{description}\n\n"
            "Orders are accepted until {deadline}.\n"
            "Place your order at {order_url}\n"
        ),
    },
    "GENERAL_ORDER_REMINDER_1H": {
        "subject": "One hour left - {title}",
        "body": (
            "Hello {user_name},\n\n"
            "The group order {title} closes in about an hour ({deadline}).\n"
            "Make sure your order is in: {order_url}\n"
        ),
    },
    "GENERAL_ORDER_REMINDER_10M": {
        "subject": "Last call, 10 minutes left - {title}",
        "body": (
            "Hello {user_name},\n\n"
            "The group order {title} closes in about 10 minutes ({deadline}).\n"
            "This is the last chance to order: {order_url}\n"
        ),
    },
    "GENERAL_ORDER_CLOSED": {
        "subject": "Group order closed - {title}",
        "body": (
            "Hello {user_name},\n\n"
            "The group order {title} closed at {closed_at}.\n"
            "We will let you know when the next group order opens.\n"
        ),
    },
    "GENERAL_ORDER_SUMMARY": {
        "subject": "Group order summary - {title} ({reason})",
        "body": (
            "Hello {user_name},\n\n"
            "Summary for group order {title}\n"
            "Deadline: {deadline}\n"
            "Closed at: {closed_at}\n\n"
            "Participants: {participant_count}\n"
            "Distinct products: {distinct_product_count}\n"
            "Line items: {line_item_count}\n"
            "Total amount: {total_amount}\n\n"
            "{participants_table}\n"
        ),
    },
    "SUPPLIER_REPORT": {
        "subject": "Supplier report - {title}",
        "body": (
            "Hello {user_name},\n\n"
            "Supplier breakdown for group order {title}\n"
            "Deadline: {deadline}\n"
            "Suppliers: {supplier_count}\n"
            "Total amount: {total_amount}\n\n"
            "{suppliers_table}\n"
        ),
    },
    "USER_ORDER_CONFIRMATION": {
        "subject": "Order confirmation - {title}",
        "body": (
            "Hello {user_name},\n\n"
            "Thank you for ordering in the group order {title}.\n"
            "Order number: {order_number}\n\n"
            "{items_table}\n\n"
            "Items: {total_items}\n"
            "Total: {total_amount}\n\n"
            "The order closes at {deadline}. Review it at {order_url}\n"
        ),
    },
}


class FlatFormatter(string.Formatter):
    """
    ``str.format`` restricted to plain ``{name}`` placeholders.

    Templates are editable in the database, so attribute and index lookups
    such as ``{order_url.__class__}`` are rejected instead of evaluated.
    """

    def get_field(self, field_name, args, kwargs):
        if "." in field_name or "[" in field_name:
            raise ValueError(f"Unsupported placeholder {{{field_name}}}")
        return super().get_field(field_name, args, kwargs)


_formatter = FlatFormatter()


class TemplateRenderer:
    """Loads message templates by code and renders them with ``FlatFormatter``."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        # Plain strings, so a session rollback cannot expire cached templates
        self._cache: Dict[str, Optional[Tuple[str, str]]] = {}

    async def _get_template(self, code: str) -> Optional[Tuple[str, str]]:
        if code not in self._cache:
            result = await self.db.execute(
                select(MessageTemplate).where(
                    and_(
                        MessageTemplate.code == code,
                        MessageTemplate.is_active == True,  # noqa: E712
                    )
                )
            )
            template = result.scalar_one_or_none()
            self._cache[code] = (
                (template.subject_template, template.body_template)
                if template is not None
                else None
            )
        return self._cache[code]

    async def render(self, code: str, data: Dict[str, Any]) -> Dict[str, str]:
        """Build subject/body for a template code; unknown codes raise KeyError."""
        template = await self._get_template(code)
        if template is not None:
            subject_template, body_template = template
        else:
            default = DEFAULT_TEMPLATES[code]
            subject_template = default["subject"]
            body_template = default["body"]

        try:
            return {
                "subject": _formatter.format(subject_template, **data),
                "body": _formatter.format(body_template, **data),
            }
        except (KeyError, IndexError, ValueError, AttributeError) as e:
            # A bad placeholder in an edited template must not block delivery
            logger.error(f"Template error for {code}: {e!r}")
            return {"subject": subject_template, "body": body_template}
