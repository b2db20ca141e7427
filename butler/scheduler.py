"""Durable scheduler for recurring and one-off agent instructions.

Jobs live in the ``scheduled_jobs`` table and one polling loop fires whatever
is due, so nothing needs re-arming after a restart. A fired job re-enters the
agent runtime with a synthetic instruction.

One-off jobs that fail are pushed back by a fixed backoff with an incremented
retry counter until ``max_retries`` attempts have been made; the job is then
dropped and an escalation notice is sent once. Cron jobs are never retried:
their next natural firing is the retry.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from croniter import croniter

from butler.config import JobDefinition
from butler.db import Database
from butler.errors import JobFailure
from butler.models import Message, ScheduledJob, TurnResult

LOGGER = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = 60.0

CRON = "cron"
AT = "at"

KIND_RECURRING = "recurring"
KIND_REMINDER = "reminder"
KIND_TASK = "task"

# Replies that mean the turn "finished" without doing anything useful.
FAILURE_PHRASES = (
    "i am stuck in a loop",
    "something went wrong",
    "execution stopped",
    "rate limit exceeded",
)

TurnHandler = Callable[[Message], Awaitable[TurnResult]]
Escalator = Callable[[str], Awaitable[None]]


class JobScheduler:
    """Persists jobs, fires them when due, and retries or escalates failures."""

    def __init__(
        self,
        db: Database,
        handler: TurnHandler,
        escalate: Escalator,
        poll_interval_seconds: float = 2.0,
        max_retries: int = MAX_RETRIES,
        retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        tz: str = "UTC",
    ) -> None:
        self._db = db
        self._handler = handler
        self._escalate = escalate
        self._poll_interval_seconds = poll_interval_seconds
        self._max_retries = max_retries
        self._retry_backoff = timedelta(seconds=retry_backoff_seconds)
        self._tz: tzinfo = ZoneInfo(tz)
        self._ephemeral: dict[str, ScheduledJob] = {}
        self._stop_event = asyncio.Event()

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def schedule_recurring(
        self,
        name: str,
        cron: str,
        task: str,
        target_chat_id: str | None = None,
        target_source: str | None = None,
        expires_at: datetime | None = None,
        persist: bool = True,
        now: datetime | None = None,
    ) -> ScheduledJob:
        """Create or replace a cron-triggered job."""

        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron!r}")
        now = now or datetime.now(timezone.utc)
        job = ScheduledJob(
            name=name,
            trigger_kind=CRON,
            trigger=cron,
            payload=_payload(KIND_RECURRING, task, target_chat_id, target_source),
            next_run_at=self.next_cron_run(cron, now),
            expires_at=expires_at,
            persisted=persist,
        )
        self._save(job)
        LOGGER.info("Job %r scheduled for %r (next %s)", name, cron, job.next_run_at.isoformat())
        return job

    def schedule_once(
        self,
        name: str,
        run_at: datetime,
        task: str,
        kind: str = KIND_TASK,
        target_chat_id: str | None = None,
        target_source: str | None = None,
        expires_at: datetime | None = None,
    ) -> ScheduledJob:
        """Create or replace a one-off job firing at ``run_at``."""

        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=self._tz)
        job = ScheduledJob(
            name=name,
            trigger_kind=AT,
            trigger=run_at.isoformat(),
            payload=_payload(kind, task, target_chat_id, target_source),
            next_run_at=run_at,
            expires_at=expires_at,
        )
        self._save(job)
        LOGGER.info("One-off job %r scheduled at %s", name, run_at.isoformat())
        return job

    def ensure_jobs(self, definitions: list[JobDefinition]) -> None:
        """Declare config-defined recurring jobs, kept in memory only."""

        for definition in definitions:
            if definition.name in self._ephemeral:
                continue
            self.schedule_recurring(
                definition.name,
                definition.cron,
                definition.task,
                target_chat_id=definition.target_chat_id,
                target_source=definition.target_source,
                persist=False,
            )

    def cancel(self, name: str) -> bool:
        removed = self._ephemeral.pop(name, None) is not None
        removed = self._db.delete_job(name) or removed
        if removed:
            LOGGER.info("Job %r cancelled", name)
        return removed

    def get(self, name: str) -> ScheduledJob | None:
        return self._ephemeral.get(name) or self._db.get_job(name)

    def list_jobs(self) -> list[ScheduledJob]:
        jobs = self._db.list_jobs() + list(self._ephemeral.values())
        return sorted(jobs, key=lambda job: job.next_run_at)

    def next_cron_run(self, cron: str, after: datetime) -> datetime:
        local_after = after.astimezone(self._tz)
        next_local = croniter(cron, local_after).get_next(datetime)
        return next_local.astimezone(timezone.utc)

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        while not self._stop_event.is_set():
            try:
                await self.run_pending()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Scheduler pass failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()

    async def run_pending(self, now: datetime | None = None) -> int:
        """Fire every job due at ``now``; returns how many were fired."""

        now = now or datetime.now(timezone.utc)
        due = self._db.get_due_jobs(now) + [j for j in self._ephemeral.values() if j.next_run_at <= now]
        fired = 0
        for job in sorted(due, key=lambda j: j.next_run_at):
            if job.expires_at is not None and job.expires_at <= now:
                LOGGER.info("Job %r expired at %s; removing", job.name, job.expires_at.isoformat())
                self._delete(job)
                continue
            await self._fire(job, now)
            fired += 1
        return fired

    async def _fire(self, job: ScheduledJob, now: datetime) -> None:
        LOGGER.info("Running job %r (attempt %d)", job.name, job.retry_count + 1)
        if job.is_recurring:
            job.next_run_at = self.next_cron_run(job.trigger, now)
            self._save(job)

        try:
            result = await self._handler(self.instruction_for(job, now))
            check_result(result)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Job %r failed: %s", job.name, exc)
            await self._on_failure(job, exc, now)
            return

        LOGGER.info("Job %r succeeded", job.name)
        if not job.is_recurring:
            self._delete(job)

    async def _on_failure(self, job: ScheduledJob, exc: Exception, now: datetime) -> None:
        if job.is_recurring:
            LOGGER.info("Recurring job %r will retry at its next firing %s", job.name, job.next_run_at.isoformat())
            return

        current = self.get(job.name)
        if current is None or current.next_run_at != job.next_run_at:
            LOGGER.info("Job %r was cancelled or replaced while running; not retrying", job.name)
            return

        attempts = job.retry_count + 1
        if attempts < self._max_retries:
            job.retry_count = attempts
            job.next_run_at = now + self._retry_backoff
            self._save(job)
            LOGGER.info(
                "Job %r rescheduled for %s (retry %d/%d)",
                job.name,
                job.next_run_at.isoformat(),
                job.retry_count,
                self._max_retries,
            )
            return

        self._delete(job)
        notice = (
            f"Scheduled job '{job.name}' failed {attempts} times and will not be retried. "
            f"Task: {job.payload.get('task', '')}. Last error: {exc}"
        )
        LOGGER.error("Escalating job %r after %d attempts", job.name, attempts)
        try:
            await self._escalate(notice)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Escalation for job %r could not be delivered", job.name)

    def instruction_for(self, job: ScheduledJob, now: datetime) -> Message:
        payload = job.payload
        task = payload.get("task", "")
        kind = payload.get("kind", KIND_TASK)
        if kind == KIND_REMINDER:
            local_time = now.astimezone(self._tz).strftime("%H:%M")
            text = (
                f"System Instruction: It is now {local_time}. The user set a reminder: "
                f'"{task}". Please explicitly remind them now.'
            )
        elif kind == KIND_RECURRING:
            text = f"Scheduled Task: {task}"
        else:
            text = f"Scheduled Instruction: {task}"

        return Message(
            chat_id=payload.get("target_chat_id") or f"scheduled_{job.name}",
            sender_id="scheduler",
            text=text,
            timestamp=now,
            source=payload.get("target_source") or "scheduler",
        )

    def _save(self, job: ScheduledJob) -> None:
        if job.persisted:
            self._db.save_job(job)
        else:
            self._ephemeral[job.name] = job

    def _delete(self, job: ScheduledJob) -> None:
        if job.persisted:
            self._db.delete_job(job.name)
        else:
            self._ephemeral.pop(job.name, None)


def check_result(result: TurnResult) -> None:
    """Raise JobFailure unless the turn produced a usable reply."""

    if not result.ok:
        raise JobFailure(result.error or "turn did not complete")
    if not result.reply.strip():
        raise JobFailure("turn ended without a reply")
    lowered = result.reply.lower()
    for phrase in FAILURE_PHRASES:
        if phrase in lowered:
            raise JobFailure(f"reply contains failure phrase {phrase!r}")


def _payload(kind: str, task: str, target_chat_id: str | None, target_source: str | None) -> dict[str, Any]:
    return {
        "kind": kind,
        "task": task,
        "target_chat_id": target_chat_id,
        "target_source": target_source,
    }
