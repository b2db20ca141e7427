"""Application entrypoint."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import replace

from butler.agent_runtime import AgentRuntime, StopSignal
from butler.commands import CommandDispatcher
from butler.confirmation import ConfirmationManager, default_rules
from butler.config import allowed_senders, load_job_definitions, load_provider_configs, load_settings
from butler.db import Database
from butler.executor import ToolExecutor
from butler.llm.openrouter import OpenRouterProvider
from butler.models import Message, OutboundMessage, TurnResult
from butler.providers.connection import open_connection
from butler.providers.federation import FederationRegistry
from butler.rate_limiter import RateLimiter
from butler.router import ModelRouter
from butler.scheduler import JobScheduler
from butler.signal_adapter import SOURCE as SIGNAL_SOURCE
from butler.signal_adapter import SignalAdapter
from butler.tools.alias_tool import LookupAliasTool, SaveAliasTool
from butler.tools.files_tool import ListDirectoryTool, ReadFileTool, WriteFileTool
from butler.tools.memory_tool import RecallFactsTool, RememberFactTool, SearchMemoryTool
from butler.tools.messaging_tool import SendMessageTool
from butler.tools.registry import ToolRegistry
from butler.tools.scheduler_tool import scheduler_tools
from butler.tools.time_tool import GetCurrentTimeTool
from butler.tools.vault_tool import ReadNotesTool, SaveNoteTool

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
LOGGER = logging.getLogger(__name__)


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()

    signal_adapter = SignalAdapter(
        signal_cli_path=settings.signal_cli_path,
        account=settings.signal_account,
        poll_interval_seconds=settings.signal_poll_interval_seconds,
        allowed_senders=allowed_senders(settings),
    )
    escalation_chat_id = settings.escalation_chat_id or settings.signal_owner_number

    async def send(outbound: OutboundMessage) -> None:
        # Scheduler-owned chats have no channel of their own; deliver to the owner.
        if outbound.source != SIGNAL_SOURCE:
            outbound = replace(outbound, chat_id=settings.signal_owner_number, source=SIGNAL_SOURCE)
        await signal_adapter.send(outbound)

    async def escalate(notice: str) -> None:
        await signal_adapter.send(
            OutboundMessage(chat_id=escalation_chat_id, text=notice, source=SIGNAL_SOURCE, kind="escalation")
        )

    llm = OpenRouterProvider(settings)
    router = ModelRouter(llm, model=settings.router_model or settings.model_fast)

    federation = FederationRegistry(
        connector=functools.partial(open_connection, call_timeout_seconds=settings.provider_call_timeout_seconds)
    )
    await federation.start(load_provider_configs(settings.providers_config_path))

    runtime: AgentRuntime | None = None

    async def handle_scheduled(message: Message) -> TurnResult:
        assert runtime is not None
        return await runtime.handle_message(message, send)

    scheduler = JobScheduler(
        db=db,
        handler=handle_scheduled,
        escalate=escalate,
        poll_interval_seconds=settings.scheduler_poll_interval_seconds,
        max_retries=settings.job_max_retries,
        retry_backoff_seconds=settings.job_retry_backoff_seconds,
        tz=settings.timezone,
    )
    scheduler.ensure_jobs(load_job_definitions(settings.jobs_config_path))

    settings.workspace_root.mkdir(parents=True, exist_ok=True)
    settings.vault_root.mkdir(parents=True, exist_ok=True)
    tools = ToolRegistry()
    tools.register_all(
        [
            GetCurrentTimeTool(settings.timezone),
            RememberFactTool(db),
            RecallFactsTool(db),
            SearchMemoryTool(db),
            SaveAliasTool(db),
            LookupAliasTool(db),
            SaveNoteTool(settings.vault_root),
            ReadNotesTool(settings.vault_root),
            ReadFileTool(settings.workspace_root),
            WriteFileTool(settings.workspace_root),
            ListDirectoryTool(settings.workspace_root),
            SendMessageTool(),
            *scheduler_tools(scheduler),
        ]
    )
    executor = ToolExecutor(tools, federation, db)

    stop_signal = StopSignal()
    confirmations = ConfirmationManager(
        default_rules(settings.workspace_root), ttl_seconds=settings.confirmation_ttl_seconds
    )
    runtime = AgentRuntime(
        db=db,
        llm=llm,
        router=router,
        executor=executor,
        model_fast=settings.model_fast,
        model_deep=settings.model_deep,
        history_window_fast=settings.history_window_fast,
        history_window_deep=settings.history_window_deep,
        summary_trigger_messages=settings.summary_trigger_messages,
        request_timeout_seconds=settings.request_timeout_seconds,
        max_tool_loops=settings.max_tool_loops,
        thinking_notice_delay_seconds=settings.thinking_notice_delay_seconds,
        empty_response_retries=settings.empty_response_retries,
        empty_retry_delay_seconds=settings.empty_retry_delay_seconds,
        command_dispatcher=CommandDispatcher(
            db=db,
            stop_signal=stop_signal,
            scheduler=scheduler,
            confirmations=confirmations,
            executor=executor,
        ),
        stop_signal=stop_signal,
        confirmations=confirmations,
        rate_limiter=RateLimiter(db, settings.rate_limit_hourly, settings.rate_limit_daily),
    )

    scheduler_task = asyncio.create_task(scheduler.run_forever(), name="job-scheduler")
    turn_tasks: set[asyncio.Task[TurnResult]] = set()

    try:
        async for message in signal_adapter.poll_messages():
            # One task per message; the runtime serialises turns within a chat.
            task = asyncio.create_task(runtime.handle_message(message, send), name=f"turn-{message.chat_id}")
            turn_tasks.add(task)
            task.add_done_callback(turn_tasks.discard)
    except asyncio.CancelledError:
        raise
    finally:
        scheduler.stop()
        scheduler_task.cancel()
        for task in turn_tasks:
            task.cancel()
        await federation.close()
        LOGGER.info("Butler shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
