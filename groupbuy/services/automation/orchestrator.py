import json
import traceback
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy.config.settings import settings
from groupbuy.db.models import CronRun, CronRunStatus
from groupbuy.db.session import AsyncSessionLocal
from groupbuy.schemas.automation_schemas import RunSummary, TaskError, TaskRunResult
from groupbuy.services.automation.budget import RunBudget
from groupbuy.services.automation.order_state_machine import (
    TASK_NAME as STATE_MACHINE_TASK,
    OrderStateMachine,
)
from groupbuy.services.notifications.dispatcher import NotificationDispatcher
from groupbuy.services.reports import ReportGenerator, get_report_generator
from groupbuy.services.transport import MessageTransport, get_transport
from groupbuy.utils.context import request_id_scope
from groupbuy.utils.datetime_utils import naive_utc_now, to_naive_utc
from groupbuy.utils.logging import get_logger

logger = get_logger()

DISPATCHER_TASK = "notification_queue_dispatcher"

TaskOutcome = Tuple[Dict[str, int], List[TaskError]]
TaskFn = Callable[[AsyncSession, datetime, RunBudget], Awaitable[TaskOutcome]]


class AutomationOrchestrator:
    """
    One automation tick: the order state machine, then the queue dispatcher.

    Each task runs in its own session and is recorded as a ``CronRun`` row.
    A failing task is logged and reported; it never stops the next one.
    Nothing is kept between ticks.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        transport: Optional[MessageTransport] = None,
        report_generator: Optional[ReportGenerator] = None,
        batch_size: Optional[int] = None,
        budget_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.transport = transport or get_transport()
        self.report_generator = (
            report_generator if report_generator is not None else get_report_generator()
        )
        self.batch_size = batch_size or settings.QUEUE_BATCH_SIZE
        self.budget_seconds = (
            budget_seconds
            if budget_seconds is not None
            else settings.AUTOMATION_RUN_BUDGET_SECONDS
        )
        self.tasks: List[Tuple[str, TaskFn]] = [
            (STATE_MACHINE_TASK, self._run_state_machine),
            (DISPATCHER_TASK, self._run_dispatcher),
        ]

    async def run_once(
        self, now: Optional[datetime] = None, request_id: Optional[str] = None
    ) -> RunSummary:
        with request_id_scope(request_id) as rid:
            budget = RunBudget(self.budget_seconds)
            summary = RunSummary(request_id=rid)
            logger.info("Automation tick started")

            for name, task in self.tasks:
                task_now = to_naive_utc(now) if now else naive_utc_now()
                task_result = await self._run_task(name, task, task_now, budget, rid)
                summary.tasks.append(task_result)
                if task_result.error:
                    summary.errors.append(TaskError(task=name, message=task_result.error))
                summary.errors.extend(task_result.item_errors)

                counters = task_result.counters
                summary.opened += counters.get("opened", 0)
                summary.closed += counters.get("closed", 0)
                summary.reminders += counters.get("reminders", 0)
                summary.processed += counters.get("processed", 0)
                summary.failed += counters.get("failed", 0)

            summary.duration_ms = budget.elapsed_ms()
            logger.info(
                f"Automation tick finished in {summary.duration_ms}ms: "
                f"opened={summary.opened} closed={summary.closed} "
                f"reminders={summary.reminders} processed={summary.processed} "
                f"failed={summary.failed} errors={len(summary.errors)}"
            )
            return summary

    async def _run_task(
        self,
        name: str,
        task: TaskFn,
        now: datetime,
        budget: RunBudget,
        request_id: str,
    ) -> TaskRunResult:
        timer = RunBudget.unlimited()
        run_id = await self._start_cron_run(name, request_id)

        try:
            async with self.session_factory() as db_session:
                counters, item_errors = await task(db_session, now, budget)
        except Exception as e:
            duration_ms = timer.elapsed_ms()
            logger.error(f"Task {name} failed: {e}\n{traceback.format_exc()}")
            await self._finish_cron_run(
                run_id, CronRunStatus.FAILED, duration_ms, error=str(e)
            )
            return TaskRunResult(
                name=name, success=False, duration_ms=duration_ms, error=str(e)
            )

        duration_ms = timer.elapsed_ms()
        await self._finish_cron_run(
            run_id, CronRunStatus.SUCCESS, duration_ms, counters=counters
        )
        logger.info(f"Task {name} finished in {duration_ms}ms", counters=counters)
        return TaskRunResult(
            name=name,
            success=True,
            duration_ms=duration_ms,
            counters=counters,
            item_errors=item_errors,
        )

    async def _run_state_machine(
        self, db_session: AsyncSession, now: datetime, budget: RunBudget
    ) -> TaskOutcome:
        machine = OrderStateMachine(db_session, budget=budget)
        result = await machine.scan_and_transition(now)
        return {
            "opened": len(result.opened),
            "closed": len(result.closed),
            "reminders": result.reminders,
            "recovered": result.recovered,
            "order_errors": len(result.errors),
        }, result.errors

    async def _run_dispatcher(
        self, db_session: AsyncSession, now: datetime, budget: RunBudget
    ) -> TaskOutcome:
        dispatcher = NotificationDispatcher(
            db_session,
            self.transport,
            report_generator=self.report_generator,
            budget=budget,
        )
        result = await dispatcher.process_batch(self.batch_size, now)
        return result.model_dump(), []

    # CronRun bookkeeping; a failed write is logged, never fatal

    async def _start_cron_run(self, name: str, request_id: str) -> Optional[str]:
        try:
            async with self.session_factory() as db_session:
                run = CronRun(
                    job_name=name,
                    request_id=request_id,
                    status=CronRunStatus.RUNNING,
                    started_at=naive_utc_now(),
                )
                db_session.add(run)
                await db_session.commit()
                return run.id
        except Exception as e:
            logger.warning(f"Could not record start of {name}: {e}")
            return None

    async def _finish_cron_run(
        self,
        run_id: Optional[str],
        status: CronRunStatus,
        duration_ms: int,
        error: Optional[str] = None,
        counters: Optional[Dict[str, int]] = None,
    ):
        if run_id is None:
            return
        try:
            async with self.session_factory() as db_session:
                await db_session.execute(
                    update(CronRun)
                    .where(CronRun.id == run_id)
                    .values(
                        status=status,
                        finished_at=naive_utc_now(),
                        duration_ms=duration_ms,
                        last_error=error,
                        counters=json.dumps(counters) if counters else None,
                    )
                )
                await db_session.commit()
        except Exception as e:
            logger.warning(f"Could not record result of cron run {run_id}: {e}")
