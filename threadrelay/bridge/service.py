"""RelayService -- composition root and command layer.

Wires settings, the durable store, the conversation registry, the diff store,
the agent runtime and the stream orchestrator together, and exposes the thin
command operations that the chat gateway and the HTTP API share.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from loguru import logger

from threadrelay.bridge.execution.coordinator import ModelCatalog, StreamOrchestrator
from threadrelay.bridge.execution.diffs import DiffStore
from threadrelay.bridge.execution.runtime import AgentRuntime, ClaudeAgentRuntime
from threadrelay.bridge.models.enums import DispatchOutcome
from threadrelay.bridge.models.session import ContextUsage, CostReport, ModelInfo
from threadrelay.bridge.registry import ConversationRegistry
from threadrelay.bridge.store.local import JsonSessionStore

if TYPE_CHECKING:
    from threadrelay.bridge.context import BackgroundTask, ConversationSession
    from threadrelay.bridge.settings import RelaySettings
    from threadrelay.bridge.store.base import SessionStore

PROMPT_LABEL_LENGTH = 60
DEFAULT_TASK_LABEL = "background task"


class RelayService:
    """Everything one bridge process needs, with an explicit lifecycle."""

    def __init__(
        self,
        settings: RelaySettings,
        *,
        store: SessionStore | None = None,
        runtime: AgentRuntime | None = None,
        diff_store: DiffStore | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self.settings = settings
        self.store: SessionStore = store or JsonSessionStore(settings.data_root)
        self.registry = ConversationRegistry(
            self.store,
            idle_timeout=settings.session_timeout_seconds,
            sweep_interval=settings.sweep_interval_seconds,
        )
        self.diff_store = diff_store or DiffStore()
        if runtime is None:
            api_key = settings.anthropic_api_key.get_secret_value() if settings.anthropic_api_key else None
            runtime = ClaudeAgentRuntime(api_key=api_key, mcp_config=settings.mcp_config)
        self.runtime = runtime
        self.orchestrator = StreamOrchestrator(
            self.registry, self.runtime, self.diff_store, settings, catalog=catalog
        )
        self.started_at = time.time()

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        self.registry.start()
        self.diff_store.start()
        logger.info(
            "Relay service started (channels={}, model={})",
            ", ".join(self.settings.channel_map()) or "none",
            self.current_model or "default",
        )

    async def shutdown(self) -> None:
        logger.info("Relay service shutting down (active runs={})", self.orchestrator.active_runs)
        await self.registry.shutdown()
        await self.orchestrator.shutdown(self.settings.shutdown_timeout_seconds)
        await self.diff_store.shutdown()

    # -- Prompts ---------------------------------------------------------------

    def submit(self, session: ConversationSession, prompt: str) -> DispatchOutcome:
        """Hand *prompt* to the orchestrator's busy gate."""
        outcome = self.orchestrator.submit(session, prompt)
        if outcome is DispatchOutcome.STARTED:
            session.prompt_label = _label(prompt)
        return outcome

    # -- Commands --------------------------------------------------------------

    async def reset(self, thread_id: str) -> bool:
        """Abort everything in the thread and forget its remote session."""
        return await self.registry.reset(thread_id)

    def abort(self, thread_id: str) -> bool:
        """Abort the thread's current run.  ``False`` if nothing is running."""
        session = self.registry.get(thread_id)
        if session is None or not session.busy:
            return False
        logger.info("Aborting run in thread {}", thread_id)
        session.cancel()
        return True

    @property
    def current_model(self) -> str | None:
        return self.orchestrator.model

    @property
    def models(self) -> list[ModelInfo] | None:
        return self.orchestrator.catalog.models

    def set_model(self, name: str | None) -> None:
        """Switch the model used by runs started from now on."""
        self.orchestrator.model = name or None
        logger.info("Model switched to {}", name or "default")

    async def get_cost(self, thread_id: str | None = None) -> CostReport:
        thread_cost: float | None = None
        if thread_id is not None:
            session = self.registry.get(thread_id)
            if session is not None:
                thread_cost = session.cost
            elif (record := await self.store.get(thread_id)) is not None:
                thread_cost = record.cost
        return CostReport(thread_cost=thread_cost, total_cost=await self.store.total_cost())

    def get_context_usage(self, thread_id: str) -> ContextUsage | None:
        session = self.registry.get(thread_id)
        return session.context.model_copy() if session is not None else None

    # -- Background tasks ------------------------------------------------------

    def background(self, thread_id: str, label: str | None = None) -> BackgroundTask | None:
        """Detach the thread's busy run into a background task.

        A fresh foreground session that inherits the conversation takes over
        the thread.  Returns ``None`` if nothing is running.
        """
        session = self.registry.get(thread_id)
        if session is None or not session.busy:
            return None
        task = self.registry.backgroundize(thread_id, label or session.prompt_label or DEFAULT_TASK_LABEL)
        if task is None:
            return None
        self.registry.create_foreground(task)
        return task

    def jobs(self, thread_id: str) -> list[BackgroundTask]:
        return self.registry.background_tasks(thread_id)

    def kill(self, thread_id: str, task_id: int | None = None) -> int:
        """Abort one background task, or all of them when *task_id* is ``None``."""
        if task_id is None:
            return self.registry.abort_all_background_tasks(thread_id)
        return int(self.registry.abort_background_task(thread_id, task_id))


def _label(prompt: str) -> str:
    first_line = prompt.strip().split("\n", 1)[0]
    if len(first_line) > PROMPT_LABEL_LENGTH:
        return first_line[: PROMPT_LABEL_LENGTH - 3] + "..."
    return first_line
