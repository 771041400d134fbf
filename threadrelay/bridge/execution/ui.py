"""Best-effort chat UI helpers shared by the bridges and the stream view."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Coroutine
from typing import Any, TypeVar

from loguru import logger

from threadrelay.bridge.chat import ChatMessage, DeliveryError

T = TypeVar("T")

EPHEMERAL_SECONDS = 8.0

# Strong references to fire-and-forget tasks until they finish.
_detached: set[asyncio.Task[Any]] = set()


def spawn(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    """Run *coro* detached, keeping it referenced until done."""
    task = asyncio.create_task(coro, name=name)
    _detached.add(task)
    task.add_done_callback(_detached.discard)
    return task


async def best_effort(awaitable: Awaitable[T], what: str) -> T | None:
    """Await a chat operation, logging (not raising) delivery failures."""
    try:
        return await awaitable
    except DeliveryError as exc:
        logger.debug("UI: {} failed: {}", what, exc)
        return None


async def _delete_after(message: ChatMessage, delay: float) -> None:
    await asyncio.sleep(delay)
    await best_effort(message.delete(), "delete ephemeral message")


def delete_later(message: ChatMessage, delay: float = EPHEMERAL_SECONDS) -> asyncio.Task[None]:
    return spawn(_delete_after(message, delay), name="delete-ephemeral")


def background_tag(background_id: int | None) -> str:
    return f"**[bg #{background_id}]** " if background_id is not None else ""
