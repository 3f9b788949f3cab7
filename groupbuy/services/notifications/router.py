from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.config.settings import settings
from groupbuy.db.models import (
    GeneralOrder,
    NotificationQueueEntry,
    ParticipantOrder,
    SystemCommand,
    User,
    UserRole,
)
from groupbuy.schemas.notification_schemas import Attachment, OutboundMessage
from groupbuy.services.notifications.order_statistics import (
    confirmation_details,
    get_order_statistics,
    get_supplier_breakdown,
    load_participant_order,
    participants_table,
    suppliers_table,
    suppliers_total,
)
from groupbuy.services.notifications.system_commands import SystemNotification
from groupbuy.services.notifications.templates import TemplateRenderer
from groupbuy.services.reports import REPORT_KINDS, ReportGenerator
from groupbuy.utils.datetime_utils import format_local
from groupbuy.utils.errors import (
    OrderNotFoundError,
    ParticipantOrderNotFoundError,
    UnknownSystemCommandError,
)
from groupbuy.utils.logging import get_logger

logger = get_logger()

Resolver = Callable[
    ["SystemNotificationRouter", SystemNotification, GeneralOrder],
    Awaitable[List[OutboundMessage]],
]


class SystemNotificationRouter:
    """
    Expands a system queue entry into concrete per-recipient messages.

    The audience and template of each command are registered in ``_resolvers``;
    the dispatcher sends the returned messages one by one.
    """

    _resolvers: Dict[SystemCommand, Resolver] = {}

    def __init__(
        self,
        db_session: AsyncSession,
        report_generator: Optional[ReportGenerator] = None,
        renderer: Optional[TemplateRenderer] = None,
    ):
        self.db = db_session
        self.report_generator = report_generator
        self.renderer = renderer or TemplateRenderer(db_session)

    @classmethod
    def register_resolver(cls, command: SystemCommand, resolver: Resolver):
        """Register the recipient/message builder for a system command"""
        cls._resolvers[command] = resolver

    @classmethod
    def is_registered(cls, command: SystemCommand) -> bool:
        return command in cls._resolvers

    async def resolve(self, entry: NotificationQueueEntry) -> List[OutboundMessage]:
        """
        Build the messages a system entry stands for.

        Raises:
            UnknownSystemCommandError: sentinel/body not recognised
            OrderNotFoundError: the referenced general order no longer exists
        """
        notification = SystemNotification.from_entry(entry)
        return await self.resolve_notification(notification)

    async def resolve_notification(
        self, notification: SystemNotification
    ) -> List[OutboundMessage]:
        resolver = self._resolvers.get(notification.command)
        if resolver is None:
            raise UnknownSystemCommandError(
                f"No resolver registered for {notification.command.value}"
            )

        order = await self.db.get(GeneralOrder, notification.order_id)
        if order is None:
            raise OrderNotFoundError(notification.order_id)

        messages = await resolver(self, notification, order)
        logger.info(
            f"Resolved {notification.sentinel} for order {order.id} "
            f"into {len(messages)} message(s)"
        )
        return messages

    # Recipient queries

    async def active_users(self, exclude_participants_of: Optional[str] = None) -> List[User]:
        conditions = [
            User.is_active == True,  # noqa: E712
            User.email.is_not(None),
            User.email != "",
        ]
        if exclude_participants_of:
            participants = select(ParticipantOrder.user_id).where(
                ParticipantOrder.general_order_id == exclude_participants_of
            )
            conditions.append(User.id.not_in(participants))

        result = await self.db.execute(
            select(User).where(and_(*conditions)).order_by(User.email)
        )
        return list(result.scalars().all())

    async def users_with_address(self) -> List[User]:
        result = await self.db.execute(
            select(User)
            .where(and_(User.email.is_not(None), User.email != ""))
            .order_by(User.email)
        )
        return list(result.scalars().all())

    async def admin_users(self) -> List[User]:
        result = await self.db.execute(
            select(User)
            .where(
                and_(
                    User.role == UserRole.ADMIN,
                    User.is_active == True,  # noqa: E712
                    User.email.is_not(None),
                    User.email != "",
                )
            )
            .order_by(User.email)
        )
        return list(result.scalars().all())

    # Message building

    def order_template_data(self, order: GeneralOrder) -> Dict[str, Any]:
        zone = settings.DISPLAY_TIMEZONE
        return {
            "order_id": order.id,
            "title": order.title,
            "description": order.description or "",
            "opening_time": format_local(order.opening_time, zone),
            "deadline": format_local(order.deadline, zone),
            "closed_at": format_local(order.closed_at, zone),
            "order_url": f"{settings.SITE_URL.rstrip('/')}/general-orders/{order.id}",
        }

    async def build_messages(
        self,
        template_code: str,
        users: List[User],
        data: Dict[str, Any],
        attachments: Optional[List[Attachment]] = None,
    ) -> List[OutboundMessage]:
        messages = []
        for user in users:
            rendered = await self.renderer.render(
                template_code,
                {**data, "user_name": user.full_name or user.email},
            )
            messages.append(
                OutboundMessage(
                    recipient=user.email,
                    subject=rendered["subject"],
                    body=rendered["body"],
                    attachments=list(attachments or []),
                )
            )
        return messages

    async def summary_attachments(self, order_id: str) -> List[Attachment]:
        """Admin and supplier PDFs; any generator failure means no attachments."""
        if self.report_generator is None:
            return []

        attachments = []
        for kind in REPORT_KINDS:
            try:
                content = await self.report_generator.generate_report(order_id, kind)
            except Exception as e:
                logger.warning(
                    f"Report generation failed for order {order_id} ({kind}), "
                    f"sending summary without attachments: {e}"
                )
                return []
            attachments.append(
                Attachment(filename=f"{kind}-report-{order_id}.pdf", content=content)
            )
        return attachments


async def _resolve_opened(
    router: SystemNotificationRouter,
    notification: SystemNotification,
    order: GeneralOrder,
) -> List[OutboundMessage]:
    users = await router.active_users()
    return await router.build_messages(
        SystemCommand.ORDER_OPENED.value, users, router.order_template_data(order)
    )


async def _resolve_reminder(
    router: SystemNotificationRouter,
    notification: SystemNotification,
    order: GeneralOrder,
) -> List[OutboundMessage]:
    users = await router.active_users(
        exclude_participants_of=order.id if settings.REMINDER_SKIP_PARTICIPANTS else None
    )
    return await router.build_messages(
        notification.command.value, users, router.order_template_data(order)
    )


async def _resolve_closed(
    router: SystemNotificationRouter,
    notification: SystemNotification,
    order: GeneralOrder,
) -> List[OutboundMessage]:
    users = await router.users_with_address()
    return await router.build_messages(
        SystemCommand.ORDER_CLOSED.value, users, router.order_template_data(order)
    )


async def _resolve_summary(
    router: SystemNotificationRouter,
    notification: SystemNotification,
    order: GeneralOrder,
) -> List[OutboundMessage]:
    admins = await router.admin_users()
    if not admins:
        logger.warning(f"No admin recipients for summary of order {order.id}")
        return []

    statistics = await get_order_statistics(router.db, order.id)
    currency = settings.CURRENCY_SYMBOL
    data = {
        **router.order_template_data(order),
        "reason": notification.variant or "",
        "participant_count": statistics.participant_count,
        "distinct_product_count": statistics.distinct_product_count,
        "line_item_count": statistics.line_item_count,
        "total_amount": f"{currency}{statistics.total_amount}",
        "participants_table": participants_table(statistics, currency),
    }
    attachments = await router.summary_attachments(order.id)
    return await router.build_messages(
        SystemCommand.GENERAL_ORDER_SUMMARY.value, admins, data, attachments
    )


async def _resolve_supplier_report(
    router: SystemNotificationRouter,
    notification: SystemNotification,
    order: GeneralOrder,
) -> List[OutboundMessage]:
    admins = await router.admin_users()
    if not admins:
        logger.warning(f"No admin recipients for supplier report of order {order.id}")
        return []

    groups = await get_supplier_breakdown(router.db, order.id)
    currency = settings.CURRENCY_SYMBOL
    data = {
        **router.order_template_data(order),
        "supplier_count": len(groups),
        "total_amount": f"{currency}{suppliers_total(groups)}",
        "suppliers_table": suppliers_table(groups, currency),
    }
    return await router.build_messages(SystemCommand.SUPPLIER_REPORT.value, admins, data)


async def _resolve_order_confirmation(
    router: SystemNotificationRouter,
    notification: SystemNotification,
    order: GeneralOrder,
) -> List[OutboundMessage]:
    participant_order_id = notification.participant_order_id
    participant_order = await load_participant_order(router.db, participant_order_id)
    if participant_order is None or str(participant_order.general_order_id) != str(
        order.id
    ):
        raise ParticipantOrderNotFoundError(participant_order_id)

    user = participant_order.user
    if not user.email:
        logger.warning(
            f"Participant order {participant_order_id} has no address, "
            f"skipping confirmation"
        )
        return []

    data = {
        **router.order_template_data(order),
        **confirmation_details(participant_order, settings.CURRENCY_SYMBOL),
    }
    return await router.build_messages(
        SystemCommand.ORDER_CONFIRMATION.value, [user], data
    )


SystemNotificationRouter.register_resolver(SystemCommand.ORDER_OPENED, _resolve_opened)
SystemNotificationRouter.register_resolver(SystemCommand.REMINDER_1H, _resolve_reminder)
SystemNotificationRouter.register_resolver(SystemCommand.REMINDER_10M, _resolve_reminder)
SystemNotificationRouter.register_resolver(SystemCommand.ORDER_CLOSED, _resolve_closed)
SystemNotificationRouter.register_resolver(
    SystemCommand.GENERAL_ORDER_SUMMARY, _resolve_summary
)
SystemNotificationRouter.register_resolver(
    SystemCommand.SUPPLIER_REPORT, _resolve_supplier_report
)
SystemNotificationRouter.register_resolver(
    SystemCommand.ORDER_CONFIRMATION, _resolve_order_confirmation
)
