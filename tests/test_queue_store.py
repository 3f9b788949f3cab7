import json
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.db.models import NotificationQueueEntry, QueueStatus, SystemCommand
from groupbuy.schemas.notification_schemas import QueueEntryDraft
from groupbuy.services.notifications.queue_store import NotificationQueueStore
from groupbuy.services.notifications.system_commands import SystemNotification

from .conftest import NOW

ORDER_ID = "5f0c1a8e-2d3b-4c6f-8a9e-0b1c2d3e4f50"


def direct_draft(**overrides) -> QueueEntryDraft:
    fields = {
        "recipient": "dana@example.com",
        "subject": "Hello",
        "body": "Your order is ready",
    }
    fields.update(overrides)
    return QueueEntryDraft(**fields)


class TestEnqueue:
    """Entries are persisted as pending with attempts at zero."""

    @pytest.mark.asyncio
    async def test_enqueue_direct_entry(self, db_session: AsyncSession, reload):
        store = NotificationQueueStore(db_session)

        entry_id = await store.enqueue(
            direct_draft(template_code="WELCOME", template_data={"name": "Dana"})
        )

        entry = await reload(NotificationQueueEntry, entry_id)
        assert entry.status == QueueStatus.PENDING
        assert entry.attempts == 0
        assert entry.max_attempts == 3
        assert entry.priority == 5
        assert json.loads(entry.template_data) == {"name": "Dana"}
        assert entry.is_system is False

    @pytest.mark.asyncio
    async def test_enqueue_system_entry_writes_both_forms(
        self, db_session: AsyncSession, reload
    ):
        store = NotificationQueueStore(db_session)

        entry_id = await store.enqueue_system(
            SystemNotification.summary(ORDER_ID, "AUTO_CLOSED"), "Summary"
        )

        entry = await reload(NotificationQueueEntry, entry_id)
        assert entry.recipient == "SYSTEM_GENERAL_ORDER_SUMMARY"
        assert entry.body == f"GENERAL_ORDER_SUMMARY:{ORDER_ID}:AUTO_CLOSED"
        assert entry.system_command == SystemCommand.GENERAL_ORDER_SUMMARY
        assert entry.general_order_id == ORDER_ID
        assert entry.command_variant == "AUTO_CLOSED"
        assert entry.is_system is True

    def test_draft_rejects_non_positive_max_attempts(self):
        with pytest.raises(ValueError):
            direct_draft(max_attempts=0)


class TestFetchPending:
    """Selection order and eligibility of pending entries."""

    @pytest.mark.asyncio
    async def test_orders_by_priority_then_age(self, db_session: AsyncSession):
        store = NotificationQueueStore(db_session)
        low = await store.enqueue(direct_draft(subject="low", priority=9))
        first_normal = await store.enqueue(direct_draft(subject="normal 1"))
        urgent = await store.enqueue(direct_draft(subject="urgent", priority=1))
        second_normal = await store.enqueue(direct_draft(subject="normal 2"))

        entries = await store.fetch_pending(10, NOW)

        assert [e.id for e in entries] == [urgent, first_normal, second_normal, low]

    @pytest.mark.asyncio
    async def test_respects_limit_and_schedule(self, db_session: AsyncSession):
        store = NotificationQueueStore(db_session)
        await store.enqueue(direct_draft(scheduled_for=NOW + timedelta(hours=1)))
        due = await store.enqueue(direct_draft(scheduled_for=NOW - timedelta(minutes=1)))
        await store.enqueue(direct_draft())

        entries = await store.fetch_pending(1, NOW)
        assert len(entries) == 1

        entries = await store.fetch_pending(10, NOW)
        assert due in [e.id for e in entries]
        assert len(entries) == 2

    @pytest.mark.asyncio
    async def test_skips_non_pending_entries(self, db_session: AsyncSession):
        store = NotificationQueueStore(db_session)
        entry_id = await store.enqueue(direct_draft())
        entry = await store.get(entry_id)
        assert await store.mark_sending(entry, NOW)

        assert await store.fetch_pending(10, NOW) == []


class TestStatusTransitions:
    """Every status change is conditioned on the current status."""

    @pytest.mark.asyncio
    async def test_mark_sending_counts_attempt_once(
        self, db_session: AsyncSession, session_factory, reload
    ):
        store = NotificationQueueStore(db_session)
        entry_id = await store.enqueue(direct_draft())
        entry = await store.get(entry_id)

        async with session_factory() as other_session:
            other_store = NotificationQueueStore(other_session)
            (stale_entry,) = await other_store.fetch_pending(10, NOW)

            assert await store.mark_sending(entry, NOW) is True
            assert entry.status == QueueStatus.SENDING
            assert entry.attempts == 1

            # A second dispatcher that fetched the same row loses the claim
            assert await other_store.mark_sending(stale_entry, NOW) is False

        stored = await reload(NotificationQueueEntry, entry_id)
        assert stored.attempts == 1
        assert stored.last_attempt_at == NOW

    @pytest.mark.asyncio
    async def test_mark_sent_only_from_sending(self, db_session: AsyncSession, reload):
        store = NotificationQueueStore(db_session)
        entry_id = await store.enqueue(direct_draft())

        assert await store.mark_sent(entry_id, NOW) is False

        entry = await store.get(entry_id)
        await store.mark_sending(entry, NOW)
        assert await store.mark_sent(entry_id, NOW) is True
        # Sent is final
        assert await store.mark_sent(entry_id, NOW) is False

        stored = await reload(NotificationQueueEntry, entry_id)
        assert stored.status == QueueStatus.SENT
        assert stored.sent_at == NOW

    @pytest.mark.asyncio
    async def test_transient_failure_returns_to_pending(
        self, db_session: AsyncSession, reload
    ):
        store = NotificationQueueStore(db_session)
        entry_id = await store.enqueue(direct_draft())
        entry = await store.get(entry_id)
        await store.mark_sending(entry, NOW)

        status = await store.mark_failed(entry, "timeout", error_code="TIMEOUT", now=NOW)

        assert status == QueueStatus.PENDING
        stored = await reload(NotificationQueueEntry, entry_id)
        assert stored.status == QueueStatus.PENDING
        assert stored.last_error == "timeout"
        assert stored.error_code == "TIMEOUT"
        assert stored.failed_at is None

    @pytest.mark.asyncio
    async def test_permanent_failure_is_terminal(self, db_session: AsyncSession, reload):
        store = NotificationQueueStore(db_session)
        entry_id = await store.enqueue(direct_draft())
        entry = await store.get(entry_id)
        await store.mark_sending(entry, NOW)

        status = await store.mark_failed(
            entry, "bad address", permanent=True, error_code="INVALID", now=NOW
        )

        assert status == QueueStatus.FAILED
        stored = await reload(NotificationQueueEntry, entry_id)
        assert stored.failed_at == NOW
        assert stored.attempts == 1
        assert await store.fetch_pending(10, NOW) == []

    @pytest.mark.asyncio
    async def test_exhausted_entry_fails_and_is_never_reselected(
        self, db_session: AsyncSession, reload
    ):
        store = NotificationQueueStore(db_session)
        entry_id = await store.enqueue(direct_draft(max_attempts=2))

        for expected in (QueueStatus.PENDING, QueueStatus.FAILED):
            (entry,) = await store.fetch_pending(10, NOW)
            assert await store.mark_sending(entry, NOW)
            assert await store.mark_failed(entry, "503", now=NOW) == expected

        stored = await reload(NotificationQueueEntry, entry_id)
        assert stored.status == QueueStatus.FAILED
        assert stored.attempts == stored.max_attempts == 2
        assert await store.fetch_pending(10, NOW) == []

    @pytest.mark.asyncio
    async def test_mark_failed_ignores_entries_not_held(self, db_session: AsyncSession):
        store = NotificationQueueStore(db_session)
        entry_id = await store.enqueue(direct_draft())
        entry = await store.get(entry_id)

        assert await store.mark_failed(entry, "late", now=NOW) is None


class TestStaleSending:
    """Entries stuck in sending are released after the timeout."""

    @pytest.mark.asyncio
    async def test_requeue_stale_sending(self, db_session: AsyncSession, reload):
        store = NotificationQueueStore(db_session)
        retry_id = await store.enqueue(direct_draft())
        exhausted_id = await store.enqueue(direct_draft(max_attempts=1))
        fresh_id = await store.enqueue(direct_draft())

        started = NOW - timedelta(minutes=30)
        for entry_id in (retry_id, exhausted_id):
            await store.mark_sending(await store.get(entry_id), started)
        await store.mark_sending(await store.get(fresh_id), NOW)

        released = await store.requeue_stale_sending(NOW, timedelta(minutes=15))

        assert released == 2
        assert (await reload(NotificationQueueEntry, retry_id)).status == QueueStatus.PENDING
        exhausted = await reload(NotificationQueueEntry, exhausted_id)
        assert exhausted.status == QueueStatus.FAILED
        assert exhausted.error_code == "SENDING_TIMEOUT"
        assert (await reload(NotificationQueueEntry, fresh_id)).status == QueueStatus.SENDING
