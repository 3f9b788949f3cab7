import asyncio
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from groupbuy.celery import celery
from groupbuy.db.session import engine
from groupbuy.services.automation.orchestrator import AutomationOrchestrator
from groupbuy.utils.logging import get_logger


@celery.task(bind=True, ignore_result=False)
def general_order_automation_task(self, request_id: str):
    """
    Periodic tick of the general order automation.

    Opens and closes general orders that are due, queues their notifications
    and drains the notification queue. Runs every AUTOMATION_INTERVAL_MINUTES
    minutes; overlapping runs are safe.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(_async_general_order_automation(request_id))


async def _async_general_order_automation(
    request_id: str, session_factory: Optional[async_sessionmaker] = None
):
    # Beat passes the same label every time; each tick gets its own id
    request_id = f"{request_id}-{uuid.uuid4().hex[:12]}"
    logger = get_logger().bind(request_id=request_id)

    try:
        orchestrator = AutomationOrchestrator(session_factory=session_factory)
        summary = await orchestrator.run_once(request_id=request_id)

        if summary.success:
            logger.info(
                "General order automation completed",
                opened=summary.opened,
                closed=summary.closed,
                processed=summary.processed,
                failed=summary.failed,
            )
        else:
            logger.warning(
                "General order automation completed with task failures",
                errors=[error.message for error in summary.errors],
            )

        return {
            "success": summary.success,
            "summary": summary.model_dump(mode="json"),
            "request_id": request_id,
        }

    except Exception as e:
        logger.error(
            "General order automation task exception",
            request_id=request_id,
            error=str(e),
            exc_info=True,
        )

        return {
            "success": False,
            "error": str(e),
            "request_id": request_id,
        }

    finally:
        if session_factory is None:
            # Pooled connections belong to this event loop, which asyncio.run closes
            await engine.dispose()
