import hmac
import uuid
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.config.settings import settings
from groupbuy.db.models import GeneralOrder, ParticipantOrder
from groupbuy.db.session import get_async_session
from groupbuy.services.automation.orchestrator import AutomationOrchestrator
from groupbuy.services.notifications.queue_store import NotificationQueueStore
from groupbuy.services.notifications.system_commands import (
    SUMMARY_MANUAL,
    SystemNotification,
)
from groupbuy.utils.errors import AuthenticationError, NotFoundError
from groupbuy.utils.logging import get_logger
from groupbuy.utils.responses import ResponseBuilder

general_orders_cron_router = APIRouter()
logger = get_logger()


async def verify_cron_key(
    x_cron_key: Annotated[Optional[str], Header()] = None,
    key: Annotated[Optional[str], Query()] = None,
):
    """Require CRON_SECRET_KEY (header ``X-Cron-Key`` or ``?key=``) when one is configured."""
    expected = settings.CRON_SECRET_KEY
    if not expected:
        return

    provided = x_cron_key or key or ""
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError("Invalid or missing cron key")


def get_orchestrator() -> AutomationOrchestrator:
    return AutomationOrchestrator()


@general_orders_cron_router.api_route(
    "", methods=["GET", "POST"], dependencies=[Depends(verify_cron_key)]
)
async def run_general_order_automation(
    request: Request,
    orchestrator: Annotated[AutomationOrchestrator, Depends(get_orchestrator)],
):
    """
    Run one automation tick: open/close due general orders, queue their
    notifications and drain the notification queue.

    Meant for an external scheduler; repeated and overlapping calls are safe.
    """
    summary = await orchestrator.run_once(
        request_id=getattr(request.state, "request_id", None)
    )

    if summary.success and not summary.errors:
        return ResponseBuilder.success(
            request=request,
            data=summary,
            message="General order automation completed",
        )

    return ResponseBuilder.warning(
        request=request,
        data=summary,
        message="General order automation completed with errors",
        warnings=[error.message for error in summary.errors],
    )


async def _get_order_or_404(db: AsyncSession, order_id: uuid.UUID) -> GeneralOrder:
    order = await db.get(GeneralOrder, str(order_id))
    if order is None:
        raise NotFoundError(
            f"General order not found: {order_id}", error_code="ORDER_NOT_FOUND"
        )
    return order


def _queued(request: Request, entry_id: str, order: GeneralOrder, message: str):
    return ResponseBuilder.success(
        request=request,
        data={"entry_id": entry_id, "general_order_id": order.id},
        message=message,
        status_code=202,
    )


@general_orders_cron_router.post(
    "/{order_id}/summary", dependencies=[Depends(verify_cron_key)]
)
async def queue_general_order_summary(
    request: Request,
    order_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_async_session)],
):
    """
    Queue an admin summary for a general order on demand (reason ``MANUAL``).
    The next dispatcher run sends it.
    """
    order = await _get_order_or_404(db, order_id)

    entry_id = await NotificationQueueStore(db).enqueue_system(
        SystemNotification.summary(order.id, SUMMARY_MANUAL),
        f"General order summary: {order.title}",
    )
    logger.info(f"Manual summary queued for general order {order.id}")

    return _queued(request, entry_id, order, "Summary queued")


@general_orders_cron_router.post(
    "/{order_id}/supplier-report", dependencies=[Depends(verify_cron_key)]
)
async def queue_supplier_report(
    request: Request,
    order_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_async_session)],
):
    """Queue the per-supplier breakdown of a general order for the admins."""
    order = await _get_order_or_404(db, order_id)

    entry_id = await NotificationQueueStore(db).enqueue_system(
        SystemNotification.supplier_report(order.id),
        f"Supplier report: {order.title}",
    )
    logger.info(f"Supplier report queued for general order {order.id}")

    return _queued(request, entry_id, order, "Supplier report queued")


@general_orders_cron_router.post(
    "/{order_id}/participants/{participant_order_id}/confirmation",
    dependencies=[Depends(verify_cron_key)],
)
async def queue_order_confirmation(
    request: Request,
    order_id: uuid.UUID,
    participant_order_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_async_session)],
):
    """Queue an order confirmation for one participant of a general order."""
    order = await _get_order_or_404(db, order_id)
    participant_order = await db.get(ParticipantOrder, str(participant_order_id))
    if participant_order is None or participant_order.general_order_id != order.id:
        raise NotFoundError(
            f"Participant order not found: {participant_order_id}",
            error_code="PARTICIPANT_ORDER_NOT_FOUND",
        )

    entry_id = await NotificationQueueStore(db).enqueue_system(
        SystemNotification.order_confirmation(order.id, participant_order.id),
        f"Order confirmation: {order.title}",
        priority=3,
    )
    logger.info(
        f"Order confirmation queued for participant order {participant_order.id}"
    )

    return _queued(request, entry_id, order, "Order confirmation queued")
