"""Scheduling tools: recurring jobs, reminders, delayed instructions."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any

from butler.models import ToolContext
from butler.scheduler import KIND_REMINDER, KIND_TASK, JobScheduler
from butler.tools.base import Tool


def _parse_future_time(raw: str, scheduler: JobScheduler) -> datetime | dict[str, str]:
    try:
        when = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return {"error": "Invalid date format. Use ISO 8601, e.g. 2026-05-01T09:30:00."}
    if when.tzinfo is None:
        when = when.replace(tzinfo=scheduler.tz)
    if when <= datetime.now(timezone.utc):
        return {"error": "Time must be in the future."}
    return when


def _one_off_name(prefix: str, when: datetime) -> str:
    return f"{prefix}_{int(when.timestamp())}_{secrets.token_hex(2)}"


class ScheduleJobTool(Tool):
    """Create a recurring cron job that re-runs an instruction."""

    name = "schedule_job"
    description = (
        "Schedule a recurring task with a cron expression (minute hour day month weekday). "
        "The task text is run as an instruction each time it fires."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Unique job name."},
            "cron": {"type": "string", "description": "Cron expression, e.g. '0 8 * * *'."},
            "task": {"type": "string", "description": "Instruction to run."},
        },
        "required": ["name", "cron", "task"],
        "additionalProperties": False,
    }

    def __init__(self, scheduler: JobScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        try:
            job = self._scheduler.schedule_recurring(
                kwargs["name"],
                kwargs["cron"],
                kwargs["task"],
                target_chat_id=context.chat_id,
                target_source=context.source,
            )
        except ValueError as exc:
            return {"error": str(exc)}
        return {"info": f"Job '{job.name}' scheduled for '{job.trigger}'", "next_run_at": job.next_run_at.isoformat()}


class SetReminderTool(Tool):
    """Remind the user of something at a given time."""

    name = "set_reminder"
    description = "Set a one-off reminder. 'time' is an ISO 8601 timestamp in the future."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "time": {"type": "string"},
            "message": {"type": "string", "description": "What to remind the user about."},
        },
        "required": ["time", "message"],
        "additionalProperties": False,
    }

    def __init__(self, scheduler: JobScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        when = _parse_future_time(kwargs["time"], self._scheduler)
        if isinstance(when, dict):
            return when
        job = self._scheduler.schedule_once(
            _one_off_name("reminder", when),
            when,
            kwargs["message"],
            kind=KIND_REMINDER,
            target_chat_id=context.chat_id,
            target_source=context.source,
        )
        return {"info": f"Reminder set for {when.isoformat()}", "name": job.name}


class ScheduleTaskTool(Tool):
    """Run an instruction once, later."""

    name = "schedule_task"
    description = "Run an instruction once at a future time (ISO 8601), e.g. 'check the weather and tell me'."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "time": {"type": "string"},
            "task": {"type": "string"},
        },
        "required": ["time", "task"],
        "additionalProperties": False,
    }

    def __init__(self, scheduler: JobScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        when = _parse_future_time(kwargs["time"], self._scheduler)
        if isinstance(when, dict):
            return when
        job = self._scheduler.schedule_once(
            _one_off_name("task", when),
            when,
            kwargs["task"],
            kind=KIND_TASK,
            target_chat_id=context.chat_id,
            target_source=context.source,
        )
        return {"info": f"Task scheduled for {when.isoformat()}", "name": job.name}


class ListJobsTool(Tool):
    name = "list_jobs"
    description = "List scheduled jobs and reminders."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}

    def __init__(self, scheduler: JobScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        return {
            "jobs": [
                {
                    "name": job.name,
                    "trigger": job.trigger,
                    "task": job.payload.get("task"),
                    "next_run_at": job.next_run_at.isoformat(),
                    "retry_count": job.retry_count,
                }
                for job in self._scheduler.list_jobs()
            ]
        }


class CancelJobTool(Tool):
    name = "cancel_job"
    description = "Cancel a scheduled job or reminder by name."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"name": {"type": "string"}},
        "required": ["name"],
        "additionalProperties": False,
    }

    def __init__(self, scheduler: JobScheduler) -> None:
        self._scheduler = scheduler

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        if not self._scheduler.cancel(kwargs["name"]):
            return {"error": f"No job named '{kwargs['name']}'."}
        return {"info": f"Job '{kwargs['name']}' cancelled."}


def scheduler_tools(scheduler: JobScheduler) -> list[Tool]:
    return [
        ScheduleJobTool(scheduler),
        SetReminderTool(scheduler),
        ScheduleTaskTool(scheduler),
        ListJobsTool(scheduler),
        CancelJobTool(scheduler),
    ]
