import asyncio
import json
import re
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.config.settings import settings
from groupbuy.db.models import NotificationQueueEntry, QueueStatus
from groupbuy.schemas.notification_schemas import DispatchResult, OutboundMessage
from groupbuy.services.automation.budget import RunBudget
from groupbuy.services.notifications.queue_store import NotificationQueueStore
from groupbuy.services.notifications.router import SystemNotificationRouter
from groupbuy.services.notifications.templates import TemplateRenderer
from groupbuy.services.reports import ReportGenerator
from groupbuy.services.transport.base import MessageTransport
from groupbuy.utils.datetime_utils import naive_utc_now, to_naive_utc
from groupbuy.utils.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from groupbuy.utils.logging import get_logger

logger = get_logger()

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 \-]{5,18}[0-9]$")


def is_deliverable_address(recipient: str) -> bool:
    return bool(EMAIL_PATTERN.match(recipient) or PHONE_PATTERN.match(recipient))


class NotificationDispatcher:
    """
    Drains the notification queue.

    Each entry is claimed with a conditioned pending -> sending update before
    anything is sent, so an entry is delivered by at most one dispatcher run.
    System entries fan out through the router; per-recipient failures are
    logged and counted but never retried at entry level.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        transport: MessageTransport,
        report_generator: Optional[ReportGenerator] = None,
        budget: Optional[RunBudget] = None,
    ):
        self.db = db_session
        self.transport = transport
        self.store = NotificationQueueStore(db_session)
        self.renderer = TemplateRenderer(db_session)
        self.router = SystemNotificationRouter(
            db_session, report_generator=report_generator, renderer=self.renderer
        )
        self.budget = budget or RunBudget.unlimited()

    async def process_batch(
        self, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> DispatchResult:
        now = to_naive_utc(now) if now else naive_utc_now()
        limit = limit or settings.QUEUE_BATCH_SIZE
        result = DispatchResult()

        result.requeued = await self.store.requeue_stale_sending(now)
        entries = await self.store.fetch_pending(limit, now)
        if not entries:
            logger.info("No pending notifications")
            return result

        logger.info(f"Dispatching {len(entries)} pending notification(s)")

        # A rollback below expires loaded entries, so each one is re-read by id
        for entry_id in [entry.id for entry in entries]:
            if self.budget.exhausted():
                logger.warning(
                    "Run budget exhausted, leaving remaining entries for the next tick"
                )
                break

            entry = await self.store.get(entry_id)
            if not await self.store.mark_sending(entry, now):
                logger.info(f"Entry {entry.id} claimed elsewhere, skipping")
                result.skipped += 1
                continue

            try:
                sent, failed = await self._dispatch_entry(entry)
            except DeliveryError as e:
                await self._record_failure(entry, e.message, e.permanent, e.error_code, now)
                result.failed += 1
                continue
            except Exception as e:
                # Unknown failures are retried until attempts run out
                await self.db.rollback()
                await self.db.refresh(entry)
                await self._record_failure(
                    entry, f"{type(e).__name__}: {e}", False, "UNEXPECTED_ERROR", now
                )
                result.failed += 1
                continue

            await self.store.mark_sent(entry.id, now)
            result.processed += 1
            result.messages_sent += sent
            result.messages_failed += failed

        logger.info(
            f"Dispatch finished: processed={result.processed} failed={result.failed} "
            f"skipped={result.skipped} requeued={result.requeued}"
        )
        return result

    async def _dispatch_entry(self, entry: NotificationQueueEntry) -> Tuple[int, int]:
        """Returns (messages sent, messages failed) for an entry."""
        if entry.is_system:
            messages = await self.router.resolve(entry)
            return await self._send_fan_out(entry, messages)

        message = await self._build_direct_message(entry)
        await self._send(message)
        return 1, 0

    async def _send_fan_out(
        self, entry: NotificationQueueEntry, messages: List[OutboundMessage]
    ) -> Tuple[int, int]:
        sent = failed = 0
        for message in messages:
            try:
                await self._send(message)
                sent += 1
            except DeliveryError as e:
                failed += 1
                logger.error(
                    f"Failed to deliver {entry.recipient} message to {message.recipient}: "
                    f"{e.message}",
                    entry_id=entry.id,
                    error_code=e.error_code,
                )
            except Exception as e:
                failed += 1
                logger.error(
                    f"Unexpected error delivering {entry.recipient} message to "
                    f"{message.recipient}: {e}",
                    entry_id=entry.id,
                )
        logger.info(
            f"Entry {entry.id} fan-out complete: sent={sent} failed={failed}",
            entry_id=entry.id,
        )
        return sent, failed

    async def _build_direct_message(
        self, entry: NotificationQueueEntry
    ) -> OutboundMessage:
        if not is_deliverable_address(entry.recipient):
            raise PermanentDeliveryError(
                f"Recipient is neither an email address nor a phone number: "
                f"{entry.recipient!r}",
                error_code="INVALID_RECIPIENT",
            )

        if not entry.template_code:
            return OutboundMessage(
                recipient=entry.recipient, subject=entry.subject, body=entry.body
            )

        try:
            data = json.loads(entry.template_data) if entry.template_data else {}
        except json.JSONDecodeError as e:
            raise PermanentDeliveryError(
                f"Invalid template data: {e}", error_code="INVALID_TEMPLATE_DATA"
            )

        try:
            rendered = await self.renderer.render(entry.template_code, data)
        except KeyError:
            raise PermanentDeliveryError(
                f"Unknown template: {entry.template_code}",
                error_code="UNKNOWN_TEMPLATE",
            )

        return OutboundMessage(
            recipient=entry.recipient,
            subject=rendered["subject"] or entry.subject,
            body=rendered["body"],
        )

    async def _send(self, message: OutboundMessage) -> None:
        try:
            await asyncio.wait_for(
                self.transport.send(message),
                timeout=settings.TRANSPORT_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise TransientDeliveryError(
                f"Transport timed out after {settings.TRANSPORT_TIMEOUT_SECONDS}s",
                error_code="TRANSPORT_TIMEOUT",
            )

    async def _record_failure(
        self,
        entry: NotificationQueueEntry,
        error: str,
        permanent: bool,
        error_code: Optional[str],
        now: datetime,
    ) -> None:
        status = await self.store.mark_failed(
            entry, error, permanent=permanent, error_code=error_code, now=now
        )
        if status == QueueStatus.FAILED:
            logger.error(
                f"Notification {entry.id} failed permanently after "
                f"{entry.attempts}/{entry.max_attempts} attempt(s): {error}",
                entry_id=entry.id,
                error_code=error_code,
            )
        elif status == QueueStatus.PENDING:
            logger.warning(
                f"Notification {entry.id} attempt {entry.attempts}/{entry.max_attempts} "
                f"failed, will retry: {error}",
                entry_id=entry.id,
                error_code=error_code,
            )
        else:
            logger.warning(f"Notification {entry.id} changed state while sending")
