"""Conversation session state.

A ``ConversationSession`` is the cross-run state of one chat thread while it
is resident in memory.  Runs come and go; the session outlives them and is
only dropped on delete or idle eviction.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from threadrelay.bridge.models.enums import RunPhase
from threadrelay.bridge.models.session import ContextUsage

if TYPE_CHECKING:
    from threadrelay.bridge.channel import HandoffChannel
    from threadrelay.bridge.chat import ChatThread
    from threadrelay.bridge.execution.runtime import AgentRun


class PromptAbortedError(RuntimeError):
    """A pending interactive prompt was cancelled before the user answered."""


class PendingPrompt(Protocol):
    """A blocking prompt awaiting the user (question or plan approval)."""

    def cancel(self) -> None:
        """Fail the prompt's future with ``PromptAbortedError``."""
        ...

    def resolve_default(self) -> bool:
        """Answer without the user; ``False`` if the prompt was already settled."""
        ...


class AbortHandle:
    """Cancellation token for the runs of one session.

    ``aborted`` is a hard stop; ``stop_requested`` asks the run to wind down at
    the next event boundary.  A fresh handle is issued after every abort so
    that later runs are unaffected.
    """

    def __init__(self) -> None:
        self._aborted = asyncio.Event()
        self._stop = asyncio.Event()

    def abort(self) -> None:
        self._aborted.set()

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def wait_aborted(self) -> None:
        await self._aborted.wait()

    async def wait_stop(self) -> None:
        await self._stop.wait()


@dataclass(eq=False)
class ConversationSession:
    """Resident state for one conversation thread."""

    # -- Identity --------------------------------------------------------------
    thread_id: str
    thread: ChatThread
    working_dir: str
    remote_session_id: str | None = None

    # -- Single-flight ---------------------------------------------------------
    phase: RunPhase = RunPhase.IDLE
    last_activity: float = field(default_factory=time.monotonic)
    abort: AbortHandle = field(default_factory=AbortHandle)
    run: AgentRun | None = None
    handoff: HandoffChannel[str] | None = None
    queue: deque[str] = field(default_factory=deque)

    # -- Blocking prompts (mutually exclusive) ---------------------------------
    pending_question: PendingPrompt | None = None
    pending_plan: PendingPrompt | None = None

    # -- Accounting ------------------------------------------------------------
    cost: float = 0.0
    turns_since_request: int = 0
    auto_resume: bool = False
    context: ContextUsage = field(default_factory=ContextUsage)
    context_warned: bool = False

    # -- Clear-context intent --------------------------------------------------
    clear_context_requested: bool = False
    approved_plan: str | None = None

    # -- Background linkage ----------------------------------------------------
    is_background: bool = False
    background_id: int | None = None
    prompt_label: str | None = None
    """Short label of the prompt that started the current run."""

    @property
    def busy(self) -> bool:
        return self.phase is not RunPhase.IDLE

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def cancel(self) -> None:
        """Abort everything in flight for this session.

        Signals the run, closes the handoff channel and the run handle, clears
        the queue and auto-resume, fails any pending prompt, drops a pending
        clear-context intent, and issues a fresh abort handle.  The run's own
        teardown returns the session to idle.
        """
        self.abort.abort()
        if self.handoff is not None:
            self.handoff.close()
        if self.run is not None:
            self.run.close()
        self.queue.clear()
        self.auto_resume = False
        for pending in (self.pending_question, self.pending_plan):
            if pending is not None:
                pending.cancel()
        self.pending_question = None
        self.pending_plan = None
        self.clear_context_requested = False
        self.approved_plan = None
        self.abort = AbortHandle()

    def forget_identity(self) -> None:
        """Drop the remote session and everything derived from it."""
        self.remote_session_id = None
        self.turns_since_request = 0
        self.context = ContextUsage()
        self.context_warned = False


@dataclass(eq=False)
class BackgroundTask:
    """A former foreground session left running detached from its thread."""

    id: int
    session: ConversationSession
    label: str
    started_at: float = field(default_factory=time.time)
