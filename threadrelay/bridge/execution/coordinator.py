"""Stream orchestrator -- the busy gate and the per-run loop.

``StreamOrchestrator.submit`` is the only way a prompt reaches the agent:

- an idle session starts a run;
- a busy session with an open handoff channel gets the prompt injected into
  the running conversation;
- any other busy session queues it.

Each run is an ``AgentRunLoop``:

1. **Start**: open the handoff channel, post the status embed, start the
   agent run with a permission gate bound to this run
2. **Stream**: consume events in arrival order and render them
3. **Teardown**: flush, clean up the UI, re-queue undelivered input, apply
   clear-context / auto-resume, then hand off to the next queued prompt or go
   idle

The session stays busy from launch until teardown finds the queue empty, so
no two runs of one session ever overlap.  Every per-run error is caught and
classified here; nothing escapes to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing, suppress
from typing import TYPE_CHECKING, Any, assert_never

from threadrelay.bridge.channel import HandoffChannel
from threadrelay.bridge.context import AbortHandle
from threadrelay.bridge.execution.permissions import PermissionGate
from threadrelay.bridge.execution.plans import IMPLEMENT_PLAN_PROMPT
from threadrelay.bridge.execution.runtime import RunRequest
from threadrelay.bridge.execution.stream import StreamView
from threadrelay.bridge.execution.ui import background_tag, best_effort, spawn
from threadrelay.bridge.models.enums import DispatchOutcome, ResultSubtype, RunPhase
from threadrelay.bridge.models.events import (
    AgentEvent,
    AssistantTurnEvent,
    BlockStopEvent,
    CompactionEvent,
    InitEvent,
    RunResultEvent,
    TextDeltaEvent,
    ToolInputDeltaEvent,
    ToolProgressEvent,
    ToolResultEvent,
    ToolUseStartEvent,
)
from threadrelay.bridge.models.session import ContextUsage, ModelInfo

if TYPE_CHECKING:
    from threadrelay.bridge.context import ConversationSession
    from threadrelay.bridge.execution.diffs import DiffStore
    from threadrelay.bridge.execution.runtime import AgentRun, AgentRuntime
    from threadrelay.bridge.registry import ConversationRegistry
    from threadrelay.bridge.settings import RelaySettings

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = "Continue from where you left off."
CONTEXT_WARNING_RATIO = 0.8

OVERFLOW_NOTICE = (
    "**Context overflow - conversation too long.** Session has been reset. "
    "Your next message will start a fresh conversation."
)
EXPIRED_NOTICE = "**Session expired.** Your next message will start a fresh conversation."
UNKNOWN_SESSION_MARKER = "No conversation found"


def is_context_overflow(text: str) -> bool:
    lowered = text.lower()
    return "prompt is too long" in lowered or "prompt_too_long" in lowered


# ---------------------------------------------------------------------------
# Model catalog
# ---------------------------------------------------------------------------


class ModelCatalog:
    """Selectable models, fetched once per process from the first live run."""

    def __init__(self) -> None:
        self._models: list[ModelInfo] | None = None
        self._requested = False

    @property
    def models(self) -> list[ModelInfo] | None:
        return self._models

    def claim_fetch(self) -> bool:
        """Return ``True`` exactly once, for the caller that should fetch."""
        if self._requested:
            return False
        self._requested = True
        return True

    async def fetch(self, run: AgentRun) -> None:
        try:
            models = await run.supported_models()
        except Exception:
            logger.debug("Could not fetch supported models", exc_info=True)
            self._requested = False
            return
        self._models = models
        logger.info("Cached %d available models", len(models))


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------


class AgentRunLoop:
    """One run of one session.  Also the permission gate's UI hooks."""

    def __init__(self, orchestrator: StreamOrchestrator, session: ConversationSession, prompt: str) -> None:
        self._orc = orchestrator
        self.session = session
        self.prompt = prompt
        self.abort = session.abort
        self.channel: HandoffChannel[str] = HandoffChannel()
        self.run: AgentRun | None = None
        settings = orchestrator.settings
        self.view = StreamView(
            session,
            orchestrator.diff_store,
            edit_rate_ms=settings.edit_rate_ms,
            typing_interval=settings.typing_interval_seconds,
        )

    # -- Gate hooks ------------------------------------------------------------

    def on_tool_use(self, tool_name: str, tool_input: dict[str, Any], tool_use_id: str | None) -> None:
        self.view.on_tool_use(tool_name, tool_input, tool_use_id)

    async def pause(self) -> None:
        await self.view.pause()

    # -- Lifecycle -------------------------------------------------------------

    async def execute(self) -> None:
        session = self.session
        session.handoff = self.channel
        session.touch()
        try:
            if self.abort.aborted:
                return
            await self.view.send_status()
            self.run = self._orc.runtime.start(self._build_request())
            session.run = self.run
            await self._supervise()
        except Exception as exc:
            await self._report_error(exc)
        finally:
            await self._teardown()

    def _build_request(self) -> RunRequest:
        settings = self._orc.settings
        gate = PermissionGate(
            self.session,
            self.abort,
            self,
            plans_dir=settings.plans_dir,
            plan_max_age=settings.plan_max_age_seconds,
            tool_accept_delay_ms=settings.tool_accept_delay_ms,
        )
        logger.debug("Prompt for thread %s: %r", self.session.thread_id, self.prompt[:120])
        return RunRequest(
            prompt=self.prompt,
            working_dir=self.session.working_dir,
            handoff=self.channel,
            permission_handler=gate,
            resume=self.session.remote_session_id,
            model=self._orc.model,
            permission_mode=settings.permission_mode,
            max_turns=settings.max_turns_per_run,
        )

    async def _supervise(self) -> None:
        """Consume events until the run ends, is aborted, or is asked to stop.

        A stop request (clear-context approval) lets the consumer finish the
        event it is handling and leave on its own; it is cancelled only if it
        has not done so within the grace period.  An abort cancels it at once.
        """
        consumer = asyncio.create_task(self._consume(), name=f"consume-{self.session.thread_id}")
        aborted = asyncio.create_task(self.abort.wait_aborted())
        stopping = asyncio.create_task(self.abort.wait_stop())
        try:
            done, _ = await asyncio.wait({consumer, aborted, stopping}, return_when=asyncio.FIRST_COMPLETED)
            if consumer in done:
                consumer.result()
                return
            if stopping in done and not self.abort.aborted:
                logger.info("Stop requested for thread %s, waiting for the run to wind down", self.session.thread_id)
                await asyncio.wait({consumer, aborted}, timeout=self._orc.settings.stop_grace_seconds)
                if consumer.done():
                    consumer.result()
                    return
            logger.info("Cancelling run for thread %s", self.session.thread_id)
        finally:
            aborted.cancel()
            stopping.cancel()
            if not consumer.done():
                consumer.cancel()
                with suppress(asyncio.CancelledError):
                    await consumer

    async def _consume(self) -> None:
        assert self.run is not None  # noqa: S101
        async with aclosing(self.run.events()) as events:
            async for event in events:
                self.session.touch()
                await self._handle(event)
                if self.abort.aborted or self.abort.stop_requested:
                    break

    # -- Events ----------------------------------------------------------------

    async def _handle(self, event: AgentEvent) -> None:
        view = self.view
        match event:
            case InitEvent():
                await self._on_init(event)
            case CompactionEvent():
                logger.info(
                    "Context compacted in thread %s (pre-compaction tokens: %s)",
                    self.session.thread_id,
                    event.pre_tokens if event.pre_tokens is not None else "unknown",
                )
                await view.on_compaction()
            case TextDeltaEvent():
                view.append_text(event.text)
            case ToolUseStartEvent():
                view.on_tool_start(event)
            case ToolInputDeltaEvent():
                view.on_tool_input_delta(event)
            case BlockStopEvent():
                view.on_block_stop(event)
            case AssistantTurnEvent():
                await view.on_assistant(event)
            case ToolProgressEvent():
                view.on_tool_progress(event)
            case ToolResultEvent():
                view.on_tool_result(event)
            case RunResultEvent():
                await self._on_result(event)
            case _:
                assert_never(event)

    async def _on_init(self, event: InitEvent) -> None:
        session = self.session
        if event.session_id != session.remote_session_id:
            await self._orc.registry.set_remote_session_id(session, event.session_id)
        logger.info(
            "Session initialized for thread %s: %s, model: %s", session.thread_id, event.session_id, event.model
        )
        if self.run is not None and self._orc.catalog.claim_fetch():
            spawn(self._orc.catalog.fetch(self.run), name="fetch-models")

    async def _on_result(self, event: RunResultEvent) -> None:
        session = self.session
        settings = self._orc.settings
        registry = self._orc.registry
        tag = background_tag(session.background_id)

        if event.context_tokens is not None:
            self._update_context(event.context_tokens, event.context_window or settings.context_window)

        if event.subtype == ResultSubtype.SUCCESS:
            await registry.add_cost(session, event.total_cost_usd)
            session.turns_since_request = 0
            logger.info(
                "Run completed for thread %s: turns=%d, cost=$%.4f, session total=$%.4f",
                session.thread_id,
                event.num_turns,
                event.total_cost_usd,
                session.cost,
            )
        elif event.subtype == ResultSubtype.ERROR_MAX_TURNS:
            await registry.add_cost(session, event.total_cost_usd)
            session.turns_since_request += event.num_turns
            if session.turns_since_request >= settings.max_total_turns:
                logger.error(
                    "Reached maximum total turn limit (%d) in thread %s", settings.max_total_turns, session.thread_id
                )
                await best_effort(
                    session.thread.send(
                        f"{tag}**Reached maximum turn limit ({settings.max_total_turns} turns).** Session stopped."
                    ),
                    "send turn limit notice",
                )
                session.turns_since_request = 0
            else:
                logger.debug(
                    "Auto-resuming thread %s after max turns (%d/%d)",
                    session.thread_id,
                    session.turns_since_request,
                    settings.max_total_turns,
                )
                session.auto_resume = True
        else:
            errors = ", ".join(event.errors) or "Unknown error"
            logger.error("Run error in thread %s (%s): %s", session.thread_id, event.subtype, errors)
            if UNKNOWN_SESSION_MARKER in errors:
                await registry.clear_remote_session_id(session)
                await best_effort(session.thread.send(f"{tag}{EXPIRED_NOTICE}"), "send expired notice")
            elif is_context_overflow(errors):
                await self._reset_for_overflow()
            else:
                await best_effort(
                    session.thread.send(f"{tag}**Session ended with error:** {errors}"), "send error notice"
                )

    def _update_context(self, tokens: int, window: int) -> None:
        session = self.session
        session.context = ContextUsage(tokens=tokens, window=window)
        if session.context.ratio >= CONTEXT_WARNING_RATIO and not session.context_warned:
            session.context_warned = True
            pct = session.context.ratio * 100
            spawn(
                best_effort(
                    session.thread.send(
                        f"{background_tag(session.background_id)}⚠️ **Context {pct:.0f}% full** "
                        f"({tokens / 1000:.1f}k / {window / 1000:.0f}k tokens). "
                        "Use `!clear` to start a fresh conversation."
                    ),
                    "send context warning",
                ),
                name="context-warning",
            )

    async def _reset_for_overflow(self) -> None:
        session = self.session
        logger.error("Context overflow in thread %s, resetting", session.thread_id)
        await self._orc.registry.clear_remote_session_id(session)
        await best_effort(
            session.thread.send(f"{background_tag(session.background_id)}{OVERFLOW_NOTICE}"), "send overflow notice"
        )

    async def _report_error(self, exc: Exception) -> None:
        session = self.session
        message = str(exc) or type(exc).__name__
        if self.abort.aborted:
            logger.info("Run for thread %s aborted", session.thread_id)
        elif is_context_overflow(message):
            await self._reset_for_overflow()
        else:
            logger.error("Run error in thread %s", session.thread_id, exc_info=exc)
            await best_effort(
                session.thread.send(f"{background_tag(session.background_id)}**Error:** {message}"),
                "send error",
            )

    # -- Teardown --------------------------------------------------------------

    async def _teardown(self) -> None:
        """Clean up after the run and hand off to the next queued prompt.

        The session stays busy throughout; only ``handoff_next`` may make it idle.
        """
        session = self.session
        session.phase = RunPhase.DRAINING
        try:
            await self.view.close()
        except Exception:
            logger.exception("Failed to clean up the UI of thread %s", session.thread_id)

        self.channel.close()
        drained = self.channel.drain()
        if drained and self.abort.aborted:
            logger.debug("Dropped %d undelivered message(s) in aborted thread %s", len(drained), session.thread_id)
        elif drained:
            session.queue.extendleft(reversed(drained))
            logger.debug("Re-queued %d undelivered message(s) in thread %s", len(drained), session.thread_id)
        if session.handoff is self.channel:
            session.handoff = None
        if session.run is self.run:
            session.run = None
        if self.run is not None:
            self.run.close()
            await self.run.wait_closed()

        if session.clear_context_requested:
            session.clear_context_requested = False
            plan, session.approved_plan = session.approved_plan, None
            session.forget_identity()
            session.auto_resume = False
            session.abort = AbortHandle()
            if plan:
                session.queue.appendleft(IMPLEMENT_PLAN_PROMPT.format(plan=plan))
                logger.info("Cleared context in thread %s, queued plan for implementation", session.thread_id)

        if session.auto_resume:
            session.auto_resume = False
            session.queue.appendleft(CONTINUE_PROMPT)
            logger.debug(
                "Queued auto-resume in thread %s (turns so far: %d)", session.thread_id, session.turns_since_request
            )

        self._orc.handoff_next(session)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class StreamOrchestrator:
    """Busy gate and run launcher for every session."""

    def __init__(
        self,
        registry: ConversationRegistry,
        runtime: AgentRuntime,
        diff_store: DiffStore,
        settings: RelaySettings,
        *,
        catalog: ModelCatalog | None = None,
    ) -> None:
        self.registry = registry
        self.runtime = runtime
        self.diff_store = diff_store
        self.settings = settings
        self.catalog = catalog or ModelCatalog()
        self.model: str | None = settings.model
        self._runs: set[asyncio.Task[None]] = set()

    def submit(self, session: ConversationSession, prompt: str) -> DispatchOutcome:
        """Start, inject, or queue *prompt* for *session*.

        Synchronous, so the busy check and the state change happen without a
        suspension point in between.
        """
        session.touch()
        if not session.busy:
            self._launch(session, prompt)
            return DispatchOutcome.STARTED
        if session.handoff is not None and not session.handoff.closed:
            session.handoff.push(prompt)
            logger.debug("Injected message into running session for thread %s", session.thread_id)
            return DispatchOutcome.INJECTED
        session.queue.append(prompt)
        logger.debug("Queued message in thread %s (queue size: %d)", session.thread_id, len(session.queue))
        return DispatchOutcome.QUEUED

    def _launch(self, session: ConversationSession, prompt: str) -> None:
        session.phase = RunPhase.RUNNING
        loop = AgentRunLoop(self, session, prompt)
        task = asyncio.create_task(loop.execute(), name=f"run-{session.thread_id}")
        self._runs.add(task)
        task.add_done_callback(self._run_done)
        logger.info(
            "Starting run for thread %s (%s)",
            session.thread_id,
            f"resume={session.remote_session_id}" if session.remote_session_id else "new session",
        )

    def _run_done(self, task: asyncio.Task[None]) -> None:
        self._runs.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.error("Run task %s crashed", task.get_name(), exc_info=exc)

    def handoff_next(self, session: ConversationSession) -> None:
        """Start the next queued prompt, or mark the session idle."""
        if session.queue:
            prompt = session.queue.popleft()
            logger.debug(
                "Processing queued message in thread %s (%d remaining)", session.thread_id, len(session.queue)
            )
            self._launch(session, prompt)
            return
        session.phase = RunPhase.IDLE
        if session.is_background and session.background_id is not None:
            self.registry.remove_background_task(session.thread_id, session.background_id)
        logger.debug("Thread %s is idle", session.thread_id)

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    async def wait_idle(self) -> None:
        """Wait until no run task is left (including hand-offs started meanwhile)."""
        while self._runs:
            await asyncio.wait(set(self._runs))

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Wait for run tasks to tear down, cancelling any that take too long.

        Call after the registry has cancelled its sessions.
        """
        if not self._runs:
            return
        _, pending = await asyncio.wait(set(self._runs), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d run(s) that did not stop in time", len(pending))
            await asyncio.wait(pending)
