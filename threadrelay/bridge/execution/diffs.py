"""Expandable diff cards.

Edit/Write tool inputs are captured into a ``DiffStore`` keyed by the button
id ``diff:<tool_use_id>``.  Pressing "Show Diff" swaps the summary card for
the fenced diff; "Hide Diff" (``hide-diff:<tool_use_id>``) swaps it back.
Entries expire after a TTL and are swept periodically.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable

from threadrelay.bridge.chat import ButtonInteraction
from threadrelay.bridge.execution.cards import diff_summary_embed, hide_diff_button, show_diff_button
from threadrelay.bridge.execution.text import MAX_MESSAGE_LENGTH, escape_code_fences
from threadrelay.bridge.models.session import DiffEntry

logger = logging.getLogger(__name__)

DIFF_PREFIX = "diff:"
HIDE_PREFIX = "hide-"
MAX_DIFF_LENGTH = 20_000
MAX_DIFF_CHUNK = MAX_MESSAGE_LENGTH - len("```diff\n\n```")
TRUNCATED_SUFFIX = "\n*Diff truncated (exceeded 20,000 characters)*"
EXPIRED_MESSAGE = "This diff has expired."


def diff_id(tool_use_id: str) -> str:
    return f"{DIFF_PREFIX}{tool_use_id}"


def is_diff_button(custom_id: str) -> bool:
    return custom_id.startswith((DIFF_PREFIX, HIDE_PREFIX + DIFF_PREFIX))


class DiffStore:
    """TTL map of captured diffs."""

    def __init__(
        self,
        *,
        ttl: float = 30 * 60,
        sweep_interval: float = 10 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: dict[str, DiffEntry] = {}
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sweep_task: asyncio.Task[None] | None = None

    def now(self) -> float:
        return self._clock()

    def put(self, key: str, entry: DiffEntry) -> None:
        self._entries[key] = entry
        logger.debug("Stored diff %s (%s)", key, entry.file_path)

    def get(self, key: str) -> DiffEntry | None:
        return self._entries.get(key)

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def sweep(self, now: float | None = None) -> int:
        """Drop entries older than the TTL.  Returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [k for k, e in self._entries.items() if now - e.created_at > self._ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Diff sweep removed %d expired entries", len(expired))
        return len(expired)

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="diff-sweep")

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()


# -- Rendering -----------------------------------------------------------------


def format_diff(entry: DiffEntry) -> str:
    """Render old/new content as ``- ``/``+ `` prefixed lines."""
    lines = [f"- {line}" for line in entry.old_string.split("\n")] if entry.old_string else []
    if entry.new_string:
        lines.extend(f"+ {line}" for line in entry.new_string.split("\n"))
    return "\n".join(lines)


def diff_messages(entry: DiffEntry) -> list[str]:
    """Return the fenced messages for an expanded diff."""
    text = format_diff(entry)
    truncated = len(text) > MAX_DIFF_LENGTH
    if truncated:
        text = text[:MAX_DIFF_LENGTH]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= MAX_DIFF_CHUNK:
            chunks.append(remaining)
            break
        split_at = remaining.rfind("\n", 0, MAX_DIFF_CHUNK)
        cut = split_at + 1 if split_at > MAX_DIFF_CHUNK * 0.5 else MAX_DIFF_CHUNK
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if not chunks:
        chunks = [""]

    messages = [f"```diff\n{escape_code_fences(chunk)}\n```" for chunk in chunks]
    if truncated:
        messages[-1] += TRUNCATED_SUFFIX
    return messages


async def handle_diff_button(interaction: ButtonInteraction, store: DiffStore) -> bool:
    """Expand or collapse a diff card.  Returns ``False`` for unrelated buttons."""
    custom_id = interaction.custom_id
    if not is_diff_button(custom_id):
        return False

    hiding = custom_id.startswith(HIDE_PREFIX)
    key = custom_id[len(HIDE_PREFIX) :] if hiding else custom_id
    entry = store.get(key)
    if entry is None:
        await interaction.reply(EXPIRED_MESSAGE, ephemeral=True)
        return True

    if hiding:
        await interaction.update(content="", embeds=[diff_summary_embed(entry)], buttons=[show_diff_button(key)])
        logger.debug("Collapsed diff %s", key)
        return True

    messages = diff_messages(entry)
    logger.debug("Expanding diff %s: %d message(s)", key, len(messages))
    await interaction.update(content=messages[0], embeds=[], buttons=[hide_diff_button(key)])
    for message in messages[1:]:
        await interaction.follow_up(message)
    return True
