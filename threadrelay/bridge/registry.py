"""In-process conversation registry.

Maps thread id -> resident ``ConversationSession`` and owns per-thread
background tasks.  Ephemeral -- empty on process restart; the durable
``SessionStore`` keeps enough (remote session id, working dir, cost) for a
thread to be rehydrated transparently.

The registry decides *when* to persist and evict; the store decides *how*.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from threadrelay.bridge.context import BackgroundTask, ConversationSession

if TYPE_CHECKING:
    from threadrelay.bridge.chat import ChatThread
    from threadrelay.bridge.models.session import SessionRecord
    from threadrelay.bridge.store.base import SessionStore


class ConversationRegistry:
    """Registry of resident sessions plus their background tasks.

    All mutation is synchronous on the event loop; only store writes await.
    ``start`` launches the periodic idle sweep and ``shutdown`` stops it and
    cancels every session still in flight.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        idle_timeout: float = 3600.0,
        sweep_interval: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._idle_timeout = idle_timeout
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: dict[str, ConversationSession] = {}
        self._background: dict[str, dict[int, BackgroundTask]] = {}
        self._background_counters: dict[str, int] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def store(self) -> SessionStore:
        return self._store

    # -- Creation --------------------------------------------------------------

    def create(self, thread_id: str, thread: ChatThread, working_dir: str) -> ConversationSession:
        """Create a fresh idle session, replacing any resident one."""
        logger.debug("Registry: create session for thread {} (working_dir={})", thread_id, working_dir)
        session = ConversationSession(
            thread_id=thread_id,
            thread=thread,
            working_dir=working_dir,
            last_activity=self._clock(),
        )
        self._sessions[thread_id] = session
        return session

    def restore(self, thread_id: str, thread: ChatThread, record: SessionRecord) -> ConversationSession:
        """Rehydrate a session from its durable record."""
        session = self.create(thread_id, thread, record.working_dir)
        session.remote_session_id = record.remote_session_id
        session.cost = record.cost
        logger.info("Registry: restored thread {} (working_dir={})", thread_id, record.working_dir)
        return session

    def create_foreground(self, task: BackgroundTask) -> ConversationSession:
        """Create a foreground session that inherits from a backgrounded one."""
        source = task.session
        session = self.create(source.thread_id, source.thread, source.working_dir)
        session.remote_session_id = source.remote_session_id
        session.cost = source.cost
        session.context = source.context.model_copy()
        session.context_warned = source.context_warned
        return session

    # -- Query -----------------------------------------------------------------

    def get(self, thread_id: str) -> ConversationSession | None:
        return self._sessions.get(thread_id)

    def sessions(self) -> list[ConversationSession]:
        """Return a snapshot of all resident foreground sessions."""
        return list(self._sessions.values())

    def touch(self, thread_id: str) -> None:
        session = self._sessions.get(thread_id)
        if session is not None:
            session.last_activity = self._clock()

    # -- Identity and cost -----------------------------------------------------

    async def set_remote_session_id(self, session: ConversationSession, remote_session_id: str) -> None:
        """Record the runtime's session handle.

        Background sessions keep it in memory only, so they never overwrite
        the foreground session's durable record.
        """
        session.remote_session_id = remote_session_id
        if session.is_background:
            return
        await self._store.set_remote_session_id(session.thread_id, remote_session_id, session.working_dir)
        logger.debug("Registry: persisted remote session {} for thread {}", remote_session_id, session.thread_id)

    async def clear_remote_session_id(self, session: ConversationSession, *, forget: bool = True) -> None:
        """Discard the remote identity so the next run starts fresh."""
        session.forget_identity()
        if forget and not session.is_background:
            await self._store.remove(session.thread_id)

    async def add_cost(self, session: ConversationSession, amount: float) -> None:
        session.cost += amount
        await self._store.add_cost(session.thread_id, amount)
        logger.debug(
            "Registry: added ${:.4f} to thread {} (total ${:.4f})", amount, session.thread_id, session.cost
        )

    # -- Reset / delete --------------------------------------------------------

    async def reset(self, thread_id: str) -> bool:
        """Abort everything and start the thread over.

        The session stays attached to the thread; its run (if any) returns it
        to idle from its own teardown.  Returns ``False`` if not resident.
        """
        session = self._sessions.get(thread_id)
        if session is None:
            return False
        logger.info("Registry: reset thread {}", thread_id)
        session.cancel()
        session.forget_identity()
        session.prompt_label = None
        session.last_activity = self._clock()
        self.abort_all_background_tasks(thread_id)
        await self._store.remove(thread_id)
        return True

    async def delete(self, thread_id: str) -> bool:
        """Reset and drop the session from memory."""
        existed = await self.reset(thread_id)
        self._sessions.pop(thread_id, None)
        if not existed:
            self.abort_all_background_tasks(thread_id)
            await self._store.remove(thread_id)
        return existed

    # -- Background tasks ------------------------------------------------------

    def backgroundize(self, thread_id: str, label: str) -> BackgroundTask | None:
        """Detach the busy foreground session into a background task.

        Returns ``None`` when there is no busy session.  The thread id is free
        for a new foreground session afterwards (see ``create_foreground``).
        A question or plan approval still waiting on the user is answered with
        its defaults, since replies in the thread no longer reach this session.
        """
        session = self._sessions.get(thread_id)
        if session is None or not session.busy:
            return None
        task_id = self._background_counters.get(thread_id, 0) + 1
        self._background_counters[thread_id] = task_id
        session.is_background = True
        session.background_id = task_id
        for pending in (session.pending_question, session.pending_plan):
            if pending is not None and pending.resolve_default():
                logger.info("Registry: auto-resolved a pending prompt of bg #{} in thread {}", task_id, thread_id)
        task = BackgroundTask(id=task_id, session=session, label=label)
        self._background.setdefault(thread_id, {})[task_id] = task
        del self._sessions[thread_id]
        logger.info("Registry: thread {} backgrounded as bg #{} ({!r})", thread_id, task_id, label)
        return task

    def background_tasks(self, thread_id: str) -> list[BackgroundTask]:
        return list(self._background.get(thread_id, {}).values())

    def remove_background_task(self, thread_id: str, task_id: int) -> None:
        tasks = self._background.get(thread_id)
        if not tasks or tasks.pop(task_id, None) is None:
            return
        logger.debug("Registry: removed bg #{} from thread {} ({} remaining)", task_id, thread_id, len(tasks))
        if not tasks:
            del self._background[thread_id]

    def abort_background_task(self, thread_id: str, task_id: int) -> bool:
        task = self._background.get(thread_id, {}).get(task_id)
        if task is None:
            return False
        task.session.cancel()
        self.remove_background_task(thread_id, task_id)
        logger.info("Registry: aborted bg #{} in thread {}", task_id, thread_id)
        return True

    def abort_all_background_tasks(self, thread_id: str) -> int:
        tasks = self._background.pop(thread_id, {})
        for task in tasks.values():
            task.session.cancel()
        if tasks:
            logger.info("Registry: aborted {} bg task(s) in thread {}", len(tasks), thread_id)
        return len(tasks)

    # -- Eviction --------------------------------------------------------------

    def sweep(self, now: float | None = None) -> list[str]:
        """Evict sessions idle longer than the timeout.

        The durable record is kept so the thread can be rehydrated later.
        Returns the evicted thread ids.
        """
        now = self._clock() if now is None else now
        evicted = [tid for tid, s in self._sessions.items() if now - s.last_activity > self._idle_timeout]
        for thread_id in evicted:
            session = self._sessions.pop(thread_id)
            session.cancel()
            self.abort_all_background_tasks(thread_id)
            logger.info("Registry: evicted idle thread {} (durable record kept)", thread_id)
        return evicted

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="registry-sweep")

    async def shutdown(self) -> None:
        """Stop sweeping and cancel every resident and background session."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        for session in self._sessions.values():
            session.cancel()
        for thread_id in list(self._background):
            self.abort_all_background_tasks(thread_id)
        logger.info("Registry: shut down ({} resident sessions)", len(self._sessions))
        self._sessions.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Registry: idle sweep failed")


