"""Live chat rendering of one agent run.

``StreamView`` owns everything a run shows in its thread: the live response
message fed by text deltas, the "Thinking..." / "Working..." status embed with
its typing indicator, and one card per tool call.  It never talks to the agent
runtime; the run loop feeds it events.

Tool cards are ephemeral: they are swept together with the status embed when
response text starts streaming, when a blocking prompt takes over the thread,
and at teardown.  Cards of file-editing tools become persistent diff cards
once the tool succeeds.
"""

from __future__ import annotations

import asyncio
import json
import math
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from threadrelay.bridge.chat import Button, ChatMessage, DeliveryError, Embed, MessageDeletedError
from threadrelay.bridge.context import ConversationSession
from threadrelay.bridge.execution.cards import (
    diff_summary_embed,
    show_diff_button,
    status_embed,
    tool_card_embed,
)
from threadrelay.bridge.execution.diffs import DiffStore, diff_id
from threadrelay.bridge.execution.text import split_message, wrap_tables
from threadrelay.bridge.execution.tools import (
    capture_diff,
    extract_image_paths,
    image_path_from_input,
    merge_attachments,
    tool_detail,
)
from threadrelay.bridge.execution.ui import best_effort, delete_later
from threadrelay.bridge.models.enums import ToolCardStatus
from threadrelay.bridge.models.events import (
    AssistantTurnEvent,
    BlockStopEvent,
    ToolInputDeltaEvent,
    ToolProgressEvent,
    ToolResultEvent,
    ToolUse,
    ToolUseStartEvent,
)

COMPACTION_NOTICE = "*Context compacted, conversation summarized to fit context window*"


@dataclass
class PartialToolInput:
    """JSON arguments of a tool_use block still being streamed."""

    tool_use_id: str
    name: str
    json: str = ""


@dataclass(eq=False)
class ToolCard:
    tool_use_id: str
    name: str
    detail: str = ""
    is_diff: bool = False
    ready: asyncio.Task[ChatMessage | None] | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def message(self) -> ChatMessage | None:
        """Wait for the card's send to finish; ``None`` if it failed."""
        if self.ready is None:
            return None
        return await self.ready


class StreamView:
    """Chat-side state of one run: live text, status embed and tool cards."""

    def __init__(
        self,
        session: ConversationSession,
        diff_store: DiffStore,
        *,
        edit_rate_ms: int = 1500,
        typing_interval: float = 8.0,
    ) -> None:
        self._session = session
        self._thread = session.thread
        self._working_dir = session.working_dir
        self._diffs = diff_store
        self._edit_rate = edit_rate_ms / 1000
        self._typing_interval = typing_interval
        self._loop = asyncio.get_running_loop()
        self._closed = False
        self._finalizing = False

        # -- Text ------------------------------------------------------------------
        self.accumulated = ""
        self.last_finalized = ""
        self._flushed = ""
        self._live: ChatMessage | None = None
        self._last_edit = -math.inf
        self._flush_handle: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[None] | None = None

        # -- Tools -----------------------------------------------------------------
        self.tool_counts: dict[str, int] = {}
        self.tool_log: list[tuple[str, str]] = []
        self.cards: dict[str, ToolCard] = {}
        self.image_files: list[str] = []
        self._partials: dict[int, PartialToolInput] = {}

        # -- Status ----------------------------------------------------------------
        self._status: ChatMessage | None = None
        self._status_lock = asyncio.Lock()
        self._typing: asyncio.Task[None] | None = None
        self._ui_tasks: set[asyncio.Task[Any]] = set()

    # -- Background UI work ----------------------------------------------------

    def _track(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._ui_tasks.add(task)
        task.add_done_callback(self._ui_task_done)
        return task

    def _ui_task_done(self, task: asyncio.Task[Any]) -> None:
        self._ui_tasks.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.opt(exception=exc).warning("Stream: UI task {} failed", task.get_name())

    async def drain_ui(self) -> None:
        """Wait for every pending card send/edit and status refresh."""
        while self._ui_tasks:
            await asyncio.wait(set(self._ui_tasks))

    # -- Status and typing -----------------------------------------------------

    async def send_status(self) -> None:
        """Post (or refresh in place) the status embed and keep typing alive."""
        self._start_typing()
        async with self._status_lock:
            embed = status_embed(self.tool_counts)
            if self._status is not None:
                try:
                    await self._status.edit(content="", embeds=[embed])
                    return
                except MessageDeletedError:
                    self._status = None
                except DeliveryError as exc:
                    logger.debug("Stream: status edit failed: {}", exc)
                    return
            self._status = await best_effort(self._thread.send(embeds=[embed]), "send status")

    def refresh_status(self) -> None:
        self._track(self.send_status(), "refresh-status")

    async def clear_status(self) -> None:
        """Stop typing and delete the status embed and every ephemeral tool card."""
        self._stop_typing()
        async with self._status_lock:
            status, self._status = self._status, None
            if status is not None:
                await best_effort(status.delete(), "delete status")
        await self._delete_tool_cards()

    async def pause(self) -> None:
        """Hand the thread over to a blocking prompt."""
        await self.drain_ui()
        await self.clear_status()

    def _start_typing(self) -> None:
        if self._typing is None or self._typing.done():
            self._typing = asyncio.create_task(self._typing_loop(), name="typing")

    def _stop_typing(self) -> None:
        if self._typing is not None:
            self._typing.cancel()
            self._typing = None

    async def _typing_loop(self) -> None:
        while True:
            await best_effort(self._thread.send_typing(), "send typing")
            await asyncio.sleep(self._typing_interval)

    # -- Tool cards ------------------------------------------------------------

    def upsert_card(self, tool_use_id: str, name: str, detail: str = "") -> ToolCard:
        """Return the card for *tool_use_id*, creating it on first sight.

        Streaming block starts, permission callbacks and progress events can
        all announce the same call; only the first creates a card and counts
        the tool.
        """
        card = self.cards.get(tool_use_id)
        if card is not None:
            if detail and detail != card.detail:
                card.detail = detail
                self._edit_card(card, embeds=[tool_card_embed(card.name, detail)])
            return card

        self.tool_counts[name] = self.tool_counts.get(name, 0) + 1
        self.tool_log.append((name, detail))
        card = ToolCard(tool_use_id=tool_use_id, name=name, detail=detail)
        self.cards[tool_use_id] = card
        card.ready = self._track(self._send_card(card), f"card-{tool_use_id}")
        self.refresh_status()
        logger.debug("Stream: card for {} ({})", name, tool_use_id)
        return card

    async def _send_card(self, card: ToolCard) -> ChatMessage | None:
        message = await best_effort(
            self._thread.send(embeds=[tool_card_embed(card.name, card.detail)]), f"send {card.name} card"
        )
        if message is None and self.cards.get(card.tool_use_id) is card:
            del self.cards[card.tool_use_id]
        return message

    def _edit_card(self, card: ToolCard, *, embeds: list[Embed], buttons: list[Button] | None = None) -> None:
        self._track(self._apply_card_edit(card, embeds, buttons), f"edit-{card.tool_use_id}")

    async def _apply_card_edit(self, card: ToolCard, embeds: list[Embed], buttons: list[Button] | None) -> None:
        message = await card.message()
        if message is None:
            return
        async with card.lock:
            await best_effort(message.edit(embeds=embeds, buttons=buttons), f"edit {card.name} card")

    async def _delete_tool_cards(self) -> None:
        ephemeral = [card for card in self.cards.values() if not card.is_diff]
        for card in ephemeral:
            del self.cards[card.tool_use_id]
        if ephemeral:
            await asyncio.gather(*(self._delete_card(card) for card in ephemeral))

    async def _delete_card(self, card: ToolCard) -> None:
        message = await card.message()
        if message is not None:
            async with card.lock:
                await best_effort(message.delete(), f"delete {card.name} card")

    def _apply_tool_input(self, tool_use_id: str, name: str, tool_input: dict[str, Any]) -> None:
        card = self.cards.get(tool_use_id)
        if card is None:
            return
        detail = tool_detail(name, tool_input, self._working_dir)
        if detail and detail != card.detail:
            card.detail = detail
            self._edit_card(card, embeds=[tool_card_embed(card.name, detail)])
        entry = capture_diff(name, tool_input, self._working_dir, self._diffs.now())
        if entry is not None:
            self._diffs.put(diff_id(tool_use_id), entry)
            card.is_diff = True
        self._track_image(tool_input)

    def _track_image(self, tool_input: dict[str, Any]) -> None:
        path = image_path_from_input(tool_input, self._working_dir)
        if path is not None and path not in self.image_files:
            self.image_files.append(path)
            logger.debug("Stream: tracked image {}", path)

    def track_tool_uses(self, tool_uses: Sequence[ToolUse]) -> None:
        for tool_use in tool_uses:
            self._track_image(tool_use.input)

    # -- Event handlers --------------------------------------------------------

    def on_tool_use(self, tool_name: str, tool_input: dict[str, Any], tool_use_id: str | None) -> None:
        """A generic tool passed the permission gate."""
        if tool_use_id is None:
            self._track_image(tool_input)
            return
        self.upsert_card(tool_use_id, tool_name, tool_detail(tool_name, tool_input, self._working_dir))
        self._apply_tool_input(tool_use_id, tool_name, tool_input)

    def on_tool_start(self, event: ToolUseStartEvent) -> None:
        self._partials[event.index] = PartialToolInput(tool_use_id=event.tool_use_id, name=event.name)
        self.upsert_card(event.tool_use_id, event.name)

    def on_tool_input_delta(self, event: ToolInputDeltaEvent) -> None:
        partial = self._partials.get(event.index)
        if partial is not None:
            partial.json += event.partial_json

    def on_block_stop(self, event: BlockStopEvent) -> None:
        partial = self._partials.pop(event.index, None)
        if partial is None:
            return
        try:
            tool_input = json.loads(partial.json or "{}")
        except json.JSONDecodeError:
            logger.debug("Stream: unparseable input for {} ({})", partial.name, partial.tool_use_id)
            return
        if isinstance(tool_input, dict):
            self._apply_tool_input(partial.tool_use_id, partial.name, tool_input)

    def on_tool_result(self, event: ToolResultEvent) -> None:
        card = self.cards.get(event.tool_use_id)
        if card is None:
            return
        if card.is_diff and not event.is_error:
            # Becomes a persistent summary card; no longer swept with the status.
            del self.cards[event.tool_use_id]
            key = diff_id(event.tool_use_id)
            entry = self._diffs.get(key)
            if entry is not None:
                self._edit_card(card, embeds=[diff_summary_embed(entry)], buttons=[show_diff_button(key)])
            return
        card.is_diff = False
        status = ToolCardStatus.ERROR if event.is_error else ToolCardStatus.DONE
        embed = tool_card_embed(card.name, card.detail, status=status, output=event.content or None)
        self._edit_card(card, embeds=[embed])

    def on_tool_progress(self, event: ToolProgressEvent) -> None:
        card = self.cards.get(event.tool_use_id)
        if card is None:
            if not event.tool_name:
                return
            card = self.upsert_card(event.tool_use_id, event.tool_name)
        embed = tool_card_embed(card.name, card.detail, elapsed_seconds=event.elapsed_seconds)
        self._edit_card(card, embeds=[embed])

    async def on_compaction(self) -> None:
        notice = await best_effort(self._thread.send(COMPACTION_NOTICE), "send compaction notice")
        if notice is not None:
            delete_later(notice)

    async def on_assistant(self, event: AssistantTurnEvent) -> None:
        """Close the current turn with the full assistant text.

        The full text replaces whatever the deltas previewed, unless it is a
        repeat of the turn that was just finalized.
        """
        self.track_tool_uses(event.tool_uses)
        if event.text and event.text != self.last_finalized:
            self.accumulated = event.text
        await self.finalize()

        if event.text:
            paths = merge_attachments(extract_image_paths(event.text, self._working_dir), self.image_files)
            self.image_files = []
            if paths:
                await best_effort(self._thread.send_files(paths), "send image attachments")

    # -- Text ------------------------------------------------------------------

    def append_text(self, text: str) -> None:
        self.accumulated += text
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._closed or self._finalizing or self._flush_handle is not None or self._flush_task is not None:
            return
        delay = max(0.0, self._edit_rate - (self._loop.time() - self._last_edit))
        self._flush_handle = self._loop.call_later(delay, self._start_flush)

    def _start_flush(self) -> None:
        self._flush_handle = None
        task = asyncio.create_task(self._flush(), name="flush")
        self._flush_task = task
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task[None]) -> None:
        if self._flush_task is task:
            self._flush_task = None
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.opt(exception=exc).warning("Stream: flush failed")
        if self.accumulated and self.accumulated != self._flushed:
            self._schedule_flush()

    def _cancel_flush_timer(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

    async def wait_flush(self) -> None:
        if self._flush_task is not None:
            await asyncio.wait({self._flush_task})

    async def _flush(self) -> None:
        text = self.accumulated
        if not text or text == self._flushed:
            return
        self._last_edit = self._loop.time()
        first = split_message(wrap_tables(text))[0]

        if self._live is None:
            await self.clear_status()
            self._live = await best_effort(self._thread.send(first), "send live message")
            if self._live is None:
                return
        else:
            try:
                await self._live.edit(content=first)
            except MessageDeletedError:
                logger.debug("Stream: live message deleted, will send a replacement")
                self._live = None
                return
            except DeliveryError as exc:
                logger.debug("Stream: live edit failed, keeping message: {}", exc)
                return
        self._flushed = text

    async def finalize(self, *, next_status: bool = True) -> None:
        """Deliver the turn's full text and reset for the next turn.

        No timed flush may start once finalizing begins: the final edit is the
        only write to the live message from here on.
        """
        self._finalizing = True
        try:
            await self._finalize(next_status=next_status)
        finally:
            self._finalizing = False

    async def _finalize(self, *, next_status: bool) -> None:
        self._cancel_flush_timer()
        await self.wait_flush()

        text = self.accumulated
        if not text:
            self._live = None
            return

        chunks = split_message(wrap_tables(text))
        if self._live is not None:
            try:
                await self._live.edit(content=chunks[0])
            except MessageDeletedError:
                logger.debug("Stream: live message deleted, sending replacement")
                await self.clear_status()
                await best_effort(self._thread.send(chunks[0]), "send replacement message")
            except DeliveryError as exc:
                # The message still holds the last flushed text; a resend would duplicate it.
                logger.debug("Stream: final edit failed, keeping message: {}", exc)
        else:
            await self.clear_status()
            await best_effort(self._thread.send(chunks[0]), "send message")
        for chunk in chunks[1:]:
            await best_effort(self._thread.send(chunk), "send message chunk")

        self.last_finalized = text
        self.accumulated = ""
        self._flushed = ""
        self._live = None
        self._last_edit = -math.inf
        self.tool_counts = {}
        self.tool_log = []
        if next_status:
            await self.send_status()

    # -- Teardown --------------------------------------------------------------

    async def close(self) -> None:
        """Flush what is left and remove every ephemeral UI element."""
        self._closed = True
        self._cancel_flush_timer()
        await self.wait_flush()
        await self.finalize(next_status=False)
        await self.drain_ui()
        await self.clear_status()
        await self.drain_ui()
