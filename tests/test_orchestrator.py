import json
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from groupbuy.db.models import CronRun, CronRunStatus, QueueStatus
from groupbuy.schemas.notification_schemas import QueueEntryDraft
from groupbuy.services.automation.orchestrator import (
    DISPATCHER_TASK,
    AutomationOrchestrator,
)
from groupbuy.services.automation.order_state_machine import TASK_NAME
from groupbuy.services.notifications.queue_store import NotificationQueueStore

from .conftest import NOW, FakeReportGenerator


class BrokenStateMachineOrchestrator(AutomationOrchestrator):
    async def _run_state_machine(self, db_session, now, budget):
        raise RuntimeError("orders table locked")


async def cron_runs(db_session: AsyncSession):
    result = await db_session.execute(
        select(CronRun)
        .execution_options(populate_existing=True)
        .order_by(CronRun.started_at)
    )
    return list(result.scalars().all())


@pytest.fixture
def orchestrator_factory(session_factory, transport):
    def _build(cls=AutomationOrchestrator, **kwargs):
        kwargs.setdefault("report_generator", FakeReportGenerator())
        return cls(session_factory=session_factory, transport=transport, **kwargs)

    return _build


class TestRunOnce:
    """A tick runs the state machine, then drains the queue."""

    @pytest.mark.asyncio
    async def test_opened_order_is_announced_in_the_same_tick(
        self,
        db_session: AsyncSession,
        orchestrator_factory,
        transport,
        make_order,
        make_user,
        queue_entries,
    ):
        await make_user(email="dana@example.com")
        await make_user(email="noam@example.com")
        await make_order(title="Bread", opening_time=NOW - timedelta(minutes=1))

        summary = await orchestrator_factory().run_once(now=NOW, request_id="tick-1")

        assert summary.success is True
        assert summary.request_id == "tick-1"
        assert summary.opened == 1
        assert summary.processed == 1
        assert summary.errors == []
        assert [task.name for task in summary.tasks] == [TASK_NAME, DISPATCHER_TASK]
        assert sorted(transport.recipients()) == ["dana@example.com", "noam@example.com"]
        (entry,) = await queue_entries()
        assert entry.status == QueueStatus.SENT

    @pytest.mark.asyncio
    async def test_each_task_is_recorded(
        self, db_session: AsyncSession, orchestrator_factory
    ):
        await orchestrator_factory().run_once(now=NOW, request_id="tick-2")

        runs = await cron_runs(db_session)
        assert [run.job_name for run in runs] == [TASK_NAME, DISPATCHER_TASK]
        for run in runs:
            assert run.status == CronRunStatus.SUCCESS
            assert run.request_id == "tick-2"
            assert run.finished_at is not None
            assert run.duration_ms is not None
        counters = json.loads(runs[1].counters)
        assert counters["processed"] == 0

    @pytest.mark.asyncio
    async def test_generated_request_id(self, orchestrator_factory):
        summary = await orchestrator_factory().run_once(now=NOW)

        assert summary.request_id

    @pytest.mark.asyncio
    async def test_second_tick_does_nothing_new(
        self, orchestrator_factory, transport, make_order, make_user
    ):
        await make_user(email="dana@example.com")
        await make_order(opening_time=NOW - timedelta(minutes=1))
        orchestrator = orchestrator_factory()

        await orchestrator.run_once(now=NOW)
        again = await orchestrator.run_once(now=NOW + timedelta(minutes=5))

        assert again.opened == again.processed == 0
        assert len(transport.sent) == 1


class TestTaskIsolation:
    """A failing task is reported without stopping the other."""

    @pytest.mark.asyncio
    async def test_dispatcher_runs_after_state_machine_failure(
        self,
        db_session: AsyncSession,
        orchestrator_factory,
        transport,
    ):
        await NotificationQueueStore(db_session).enqueue(
            QueueEntryDraft(recipient="dana@example.com", subject="Hi", body="Hello")
        )

        summary = await orchestrator_factory(BrokenStateMachineOrchestrator).run_once(
            now=NOW
        )

        assert summary.success is False
        assert summary.errors[0].task == TASK_NAME
        assert "orders table locked" in summary.errors[0].message
        assert summary.processed == 1
        assert transport.recipients() == ["dana@example.com"]

        runs = await cron_runs(db_session)
        assert runs[0].status == CronRunStatus.FAILED
        assert runs[0].last_error == "orders table locked"
        assert runs[1].status == CronRunStatus.SUCCESS
