import json
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.config.settings import settings
from groupbuy.db.models import NotificationQueueEntry, QueueStatus
from groupbuy.schemas.notification_schemas import QueueEntryDraft
from groupbuy.services.notifications.system_commands import SystemNotification
from groupbuy.utils.datetime_utils import naive_utc_now, to_naive_utc
from groupbuy.utils.errors import DatabaseError
from groupbuy.utils.logging import get_logger

logger = get_logger()

MAX_ERROR_LENGTH = 2000


class NotificationQueueStore:
    """
    Durable outbound notification queue.

    Every status change is a single conditioned UPDATE keyed on the current
    status, so overlapping dispatcher runs can never both own an entry.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    def add(self, draft: QueueEntryDraft) -> NotificationQueueEntry:
        """Stage an entry in the caller's transaction (no commit)."""
        entry = NotificationQueueEntry(
            recipient=draft.recipient,
            subject=draft.subject,
            body=draft.body,
            system_command=draft.system_command,
            general_order_id=draft.general_order_id,
            command_variant=draft.command_variant,
            template_code=draft.template_code,
            template_data=(
                json.dumps(draft.template_data) if draft.template_data else None
            ),
            status=QueueStatus.PENDING,
            priority=draft.priority,
            attempts=0,
            max_attempts=draft.max_attempts or settings.QUEUE_MAX_ATTEMPTS,
            scheduled_for=(
                to_naive_utc(draft.scheduled_for) if draft.scheduled_for else None
            ),
            created_at=naive_utc_now(),
        )
        self.db.add(entry)
        return entry

    async def enqueue(self, draft: QueueEntryDraft) -> str:
        """Persist one entry and return its id. Never drops silently."""
        try:
            entry = self.add(draft)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to enqueue notification for {draft.recipient}: {e}")
            raise DatabaseError(f"Failed to enqueue notification: {e}")

        logger.info(
            f"Queued notification {entry.id} for {draft.recipient}",
            entry_id=entry.id,
            system_command=draft.system_command.value if draft.system_command else None,
        )
        return entry.id

    @staticmethod
    def system_draft(
        notification: SystemNotification,
        subject: str,
        priority: int = 5,
        max_attempts: Optional[int] = None,
    ) -> QueueEntryDraft:
        return QueueEntryDraft(
            recipient=notification.sentinel,
            subject=subject,
            body=notification.encode_body(),
            system_command=notification.command,
            general_order_id=notification.order_id,
            command_variant=notification.variant,
            priority=priority,
            max_attempts=max_attempts,
        )

    async def enqueue_system(
        self, notification: SystemNotification, subject: str, priority: int = 5
    ) -> str:
        return await self.enqueue(self.system_draft(notification, subject, priority))

    async def get(self, entry_id: str) -> Optional[NotificationQueueEntry]:
        return await self.db.get(NotificationQueueEntry, entry_id, populate_existing=True)

    async def fetch_pending(
        self, limit: int, now: Optional[datetime] = None
    ) -> List[NotificationQueueEntry]:
        """Pending entries that still have attempts left and are due, by priority then age."""
        now = to_naive_utc(now) if now else naive_utc_now()
        try:
            result = await self.db.execute(
                select(NotificationQueueEntry)
                .where(
                    and_(
                        NotificationQueueEntry.status == QueueStatus.PENDING,
                        NotificationQueueEntry.attempts
                        < NotificationQueueEntry.max_attempts,
                        or_(
                            NotificationQueueEntry.scheduled_for.is_(None),
                            NotificationQueueEntry.scheduled_for <= now,
                        ),
                    )
                )
                .order_by(
                    NotificationQueueEntry.priority.asc(),
                    NotificationQueueEntry.created_at.asc(),
                )
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to fetch pending notifications: {e}")

    async def mark_sending(
        self, entry: NotificationQueueEntry, now: Optional[datetime] = None
    ) -> bool:
        """
        Claim a pending entry and count the attempt.

        Returns False when another dispatcher claimed it first or it is out of
        attempts. On success ``entry.attempts`` reflects the stored value.
        """
        now = to_naive_utc(now) if now else naive_utc_now()
        result = await self.db.execute(
            update(NotificationQueueEntry)
            .where(
                and_(
                    NotificationQueueEntry.id == entry.id,
                    NotificationQueueEntry.status == QueueStatus.PENDING,
                    NotificationQueueEntry.attempts == entry.attempts,
                    NotificationQueueEntry.attempts
                    < NotificationQueueEntry.max_attempts,
                )
            )
            .values(
                status=QueueStatus.SENDING,
                attempts=NotificationQueueEntry.attempts + 1,
                last_attempt_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            return False

        await self.db.refresh(entry)
        return True

    async def mark_sent(self, entry_id: str, now: Optional[datetime] = None) -> bool:
        now = to_naive_utc(now) if now else naive_utc_now()
        result = await self.db.execute(
            update(NotificationQueueEntry)
            .where(
                and_(
                    NotificationQueueEntry.id == entry_id,
                    NotificationQueueEntry.status == QueueStatus.SENDING,
                )
            )
            .values(
                status=QueueStatus.SENT,
                sent_at=now,
                last_error=None,
                error_code=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def mark_failed(
        self,
        entry: NotificationQueueEntry,
        error: str,
        permanent: bool = False,
        error_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[QueueStatus]:
        """
        Record a failed attempt on an entry this dispatcher holds in ``sending``.

        Transient failures go back to ``pending`` while attempts remain;
        permanent failures and exhausted entries become ``failed``. Returns the
        new status, or None when the entry was no longer ours to update.
        """
        now = to_naive_utc(now) if now else naive_utc_now()
        exhausted = entry.attempts >= entry.max_attempts
        new_status = (
            QueueStatus.FAILED if permanent or exhausted else QueueStatus.PENDING
        )

        result = await self.db.execute(
            update(NotificationQueueEntry)
            .where(
                and_(
                    NotificationQueueEntry.id == entry.id,
                    NotificationQueueEntry.status == QueueStatus.SENDING,
                    NotificationQueueEntry.attempts == entry.attempts,
                )
            )
            .values(
                status=new_status,
                last_error=error[:MAX_ERROR_LENGTH],
                error_code=error_code,
                failed_at=now if new_status == QueueStatus.FAILED else None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            return None
        await self.db.refresh(entry)
        return new_status

    async def requeue_stale_sending(
        self, now: Optional[datetime] = None, older_than: Optional[timedelta] = None
    ) -> int:
        """
        Release entries left in ``sending`` by a dispatcher that died mid-send.

        Entries with attempts left go back to ``pending``; the rest are failed.
        """
        now = to_naive_utc(now) if now else naive_utc_now()
        older_than = older_than or timedelta(
            minutes=settings.QUEUE_SENDING_TIMEOUT_MINUTES
        )
        cutoff = now - older_than
        stale = and_(
            NotificationQueueEntry.status == QueueStatus.SENDING,
            NotificationQueueEntry.last_attempt_at < cutoff,
        )

        retried = await self.db.execute(
            update(NotificationQueueEntry)
            .where(
                and_(
                    stale,
                    NotificationQueueEntry.attempts
                    < NotificationQueueEntry.max_attempts,
                )
            )
            .values(
                status=QueueStatus.PENDING,
                last_error="Dispatcher did not finish sending in time",
            )
            .execution_options(synchronize_session=False)
        )
        exhausted = await self.db.execute(
            update(NotificationQueueEntry)
            .where(
                and_(
                    stale,
                    NotificationQueueEntry.attempts
                    >= NotificationQueueEntry.max_attempts,
                )
            )
            .values(
                status=QueueStatus.FAILED,
                failed_at=now,
                last_error="Dispatcher did not finish sending in time",
                error_code="SENDING_TIMEOUT",
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        released = (retried.rowcount or 0) + (exhausted.rowcount or 0)
        if released:
            logger.warning(f"Released {released} stale notification(s) stuck in sending")
        return released
