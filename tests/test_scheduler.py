from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from butler.agent_runtime import AgentRuntime
from butler.config import JobDefinition
from butler.db import Database
from butler.errors import JobFailure
from butler.executor import ToolExecutor
from butler.models import LLMResponse, TurnResult
from butler.providers.federation import FederationRegistry
from butler.router import FAST, RouteDecision
from butler.scheduler import KIND_REMINDER, JobScheduler, check_result
from butler.tools.registry import ToolRegistry

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
FAILED = TurnResult(failed=True, error="model timeout")
OK = TurnResult(reply="Here is your report.", sent=True)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "butler.db")
    database.initialize()
    return database


def _scheduler(db: Database, handler: AsyncMock, escalate: AsyncMock | None = None, **kwargs) -> JobScheduler:
    return JobScheduler(
        db=db,
        handler=handler,
        escalate=escalate or AsyncMock(),
        retry_backoff_seconds=60,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_one_off_job_retries_then_succeeds_without_escalation(db):
    handler = AsyncMock(side_effect=[FAILED, FAILED, OK])
    escalate = AsyncMock()
    scheduler = _scheduler(db, handler, escalate)
    scheduler.schedule_once("report", T0, "send the report")

    assert await scheduler.run_pending(now=T0) == 1
    job = db.get_job("report")
    assert job.retry_count == 1
    assert job.next_run_at == T0 + timedelta(seconds=60)

    # Not due again until the backoff has elapsed.
    assert await scheduler.run_pending(now=T0 + timedelta(seconds=30)) == 0

    await scheduler.run_pending(now=T0 + timedelta(seconds=60))
    assert db.get_job("report").retry_count == 2

    await scheduler.run_pending(now=T0 + timedelta(seconds=120))
    assert db.get_job("report") is None
    assert handler.await_count == 3
    escalate.assert_not_awaited()


@pytest.mark.asyncio
async def test_one_off_job_escalates_once_after_three_attempts(db):
    handler = AsyncMock(return_value=FAILED)
    escalate = AsyncMock()
    scheduler = _scheduler(db, handler, escalate)
    scheduler.schedule_once("report", T0, "send the report")

    for minutes in range(3):
        await scheduler.run_pending(now=T0 + timedelta(minutes=minutes))

    assert handler.await_count == 3
    assert db.get_job("report") is None
    escalate.assert_awaited_once()
    notice = escalate.await_args.args[0]
    assert "report" in notice
    assert "3 times" in notice

    assert await scheduler.run_pending(now=T0 + timedelta(hours=1)) == 0
    assert handler.await_count == 3


@pytest.mark.asyncio
async def test_handler_exception_counts_as_failure(db):
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    scheduler = _scheduler(db, handler)
    scheduler.schedule_once("report", T0, "send the report")

    await scheduler.run_pending(now=T0)

    assert db.get_job("report").retry_count == 1


@pytest.mark.asyncio
async def test_failure_phrase_in_reply_counts_as_failure(db):
    handler = AsyncMock(return_value=TurnResult(reply="I am stuck in a loop. Stopping now."))
    scheduler = _scheduler(db, handler)
    scheduler.schedule_once("report", T0, "send the report")

    await scheduler.run_pending(now=T0)

    assert db.get_job("report").retry_count == 1


@pytest.mark.asyncio
async def test_escalation_delivery_failure_is_contained(db):
    handler = AsyncMock(return_value=FAILED)
    escalate = AsyncMock(side_effect=RuntimeError("channel down"))
    scheduler = _scheduler(db, handler, escalate, max_retries=1)
    scheduler.schedule_once("report", T0, "send the report")

    await scheduler.run_pending(now=T0)

    escalate.assert_awaited_once()
    assert db.get_job("report") is None


@pytest.mark.asyncio
async def test_recurring_job_failure_is_not_retried(db):
    handler = AsyncMock(return_value=FAILED)
    escalate = AsyncMock()
    scheduler = _scheduler(db, handler, escalate)
    scheduler.schedule_recurring("daily", "0 9 * * *", "morning briefing", now=T0 - timedelta(hours=1))
    assert db.get_job("daily").next_run_at == T0

    await scheduler.run_pending(now=T0)

    job = db.get_job("daily")
    assert job.retry_count == 0
    assert job.next_run_at == T0 + timedelta(days=1)
    escalate.assert_not_awaited()
    assert await scheduler.run_pending(now=T0 + timedelta(minutes=5)) == 0


@pytest.mark.asyncio
async def test_recurring_job_uses_scheduler_timezone(db):
    scheduler = _scheduler(db, AsyncMock(return_value=OK), tz="America/New_York")

    job = scheduler.schedule_recurring("daily", "0 9 * * *", "briefing", now=T0)

    # 09:00 in New York is 14:00 UTC in March before DST starts.
    assert job.next_run_at == datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


def test_invalid_cron_is_rejected(db):
    scheduler = _scheduler(db, AsyncMock())
    with pytest.raises(ValueError):
        scheduler.schedule_recurring("bad", "every tuesday", "nope")


@pytest.mark.asyncio
async def test_expired_job_is_removed_without_firing(db):
    handler = AsyncMock(return_value=OK)
    scheduler = _scheduler(db, handler)
    scheduler.schedule_recurring(
        "daily",
        "0 9 * * *",
        "briefing",
        expires_at=T0 - timedelta(minutes=1),
        now=T0 - timedelta(hours=1),
    )

    assert await scheduler.run_pending(now=T0) == 0
    handler.assert_not_awaited()
    assert db.get_job("daily") is None


@pytest.mark.asyncio
async def test_jobs_survive_a_new_scheduler_instance(db):
    _scheduler(db, AsyncMock()).schedule_once("later", T0, "do the thing")

    handler = AsyncMock(return_value=OK)
    restarted = _scheduler(db, handler)

    assert [job.name for job in restarted.list_jobs()] == ["later"]
    assert await restarted.run_pending(now=T0) == 1
    assert handler.await_args.args[0].text == "Scheduled Instruction: do the thing"


@pytest.mark.asyncio
async def test_config_jobs_are_kept_in_memory_only(db):
    handler = AsyncMock(return_value=OK)
    scheduler = _scheduler(db, handler)
    definitions = [JobDefinition(name="digest", cron="*/5 * * * *", task="check inbox")]

    scheduler.ensure_jobs(definitions)
    scheduler.ensure_jobs(definitions)

    assert db.list_jobs() == []
    assert [job.name for job in scheduler.list_jobs()] == ["digest"]
    assert scheduler.get("digest").persisted is False

    due_at = scheduler.get("digest").next_run_at
    await scheduler.run_pending(now=due_at)
    handler.assert_awaited_once()
    assert handler.await_args.args[0].text == "Scheduled Task: check inbox"
    assert scheduler.get("digest").next_run_at > due_at

    assert _scheduler(db, AsyncMock()).list_jobs() == []


def test_cancel_removes_persisted_and_config_jobs(db):
    scheduler = _scheduler(db, AsyncMock())
    scheduler.schedule_once("later", T0, "do the thing")
    scheduler.ensure_jobs([JobDefinition(name="digest", cron="0 * * * *", task="check inbox")])

    assert scheduler.cancel("later") is True
    assert scheduler.cancel("digest") is True
    assert scheduler.cancel("missing") is False
    assert scheduler.list_jobs() == []


def test_reminder_instruction_targets_the_originating_chat(db):
    scheduler = _scheduler(db, AsyncMock())
    job = scheduler.schedule_once(
        "reminder_1",
        T0,
        "call the dentist",
        kind=KIND_REMINDER,
        target_chat_id="+15550000001",
        target_source="signal",
    )

    message = scheduler.instruction_for(job, T0)

    assert message.chat_id == "+15550000001"
    assert message.source == "signal"
    assert message.sender_id == "scheduler"
    assert message.text == (
        'System Instruction: It is now 09:00. The user set a reminder: "call the dentist". '
        "Please explicitly remind them now."
    )


def test_untargeted_job_gets_its_own_chat(db):
    scheduler = _scheduler(db, AsyncMock())
    job = scheduler.schedule_once("cleanup", T0, "tidy the workspace")

    message = scheduler.instruction_for(job, T0)

    assert message.chat_id == "scheduled_cleanup"
    assert message.source == "scheduler"


def test_naive_run_at_uses_scheduler_timezone(db):
    scheduler = _scheduler(db, AsyncMock(), tz="Europe/Berlin")

    job = scheduler.schedule_once("later", datetime(2026, 3, 2, 10, 0), "do it")

    assert job.next_run_at == T0


@pytest.mark.parametrize(
    "result",
    [
        TurnResult(failed=True),
        TurnResult(stuck=True, reply="I am stuck in a loop. Stopping now."),
        TurnResult(stopped=True, reply="Execution stopped."),
        TurnResult(reply="Sorry, something went wrong."),
        TurnResult(reply=""),
        TurnResult(reply="   ", sent=False),
        TurnResult(failed=True, reply="Rate limit exceeded. Please try again later."),
    ],
)
def test_check_result_rejects_unusable_turns(result):
    with pytest.raises(JobFailure):
        check_result(result)


def test_check_result_accepts_normal_reply():
    check_result(TurnResult(reply="Reminder: call the dentist.", sent=True))


@pytest.mark.asyncio
async def test_silent_reminder_turn_is_retried(db):
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content=""))
    router = MagicMock()
    router.route = AsyncMock(return_value=RouteDecision(tier=FAST))
    runtime = AgentRuntime(
        db=db,
        llm=llm,
        router=router,
        executor=ToolExecutor(ToolRegistry(), FederationRegistry(), db),
        model_fast="fast-model",
        model_deep="deep-model",
        empty_retry_delay_seconds=0,
    )
    send = AsyncMock()

    async def handler(message):
        return await runtime.handle_message(message, send)

    scheduler = _scheduler(db, handler)
    scheduler.schedule_once("dentist", T0, "call the dentist", kind=KIND_REMINDER)

    await scheduler.run_pending(now=T0)

    send.assert_not_awaited()
    job = db.get_job("dentist")
    assert job is not None
    assert job.retry_count == 1


@pytest.mark.asyncio
async def test_job_cancelled_during_its_turn_stays_cancelled(db):
    escalate = AsyncMock()

    async def handler(message):
        scheduler.cancel("rem")
        return TurnResult(failed=True, error="model timeout")

    scheduler = _scheduler(db, handler, escalate, max_retries=1)
    scheduler.schedule_once("rem", T0, "water the plants")

    await scheduler.run_pending(now=T0)

    assert scheduler.get("rem") is None
    escalate.assert_not_awaited()


@pytest.mark.asyncio
async def test_job_cancelled_during_its_turn_is_not_rescheduled(db):
    async def handler(message):
        scheduler.cancel("rem")
        return TurnResult(failed=True)

    scheduler = _scheduler(db, handler)
    scheduler.schedule_once("rem", T0, "water the plants")

    await scheduler.run_pending(now=T0)

    assert scheduler.get("rem") is None
    assert scheduler.list_jobs() == []
