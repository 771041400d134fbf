"""Chat-surface interface.

The bridge never talks to a chat platform directly.  A platform adapter (the
code that logs in and receives events) implements these protocols and feeds
inbound messages and button presses into ``threadrelay.gateway``.

Rich content is expressed with the pydantic models below; adapters translate
them to their platform's native embed/button representation.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

# -- Errors --------------------------------------------------------------------


class DeliveryError(Exception):
    """A send/edit/delete against the chat platform failed."""


class MessageDeletedError(DeliveryError):
    """The target message no longer exists (deleted outside the bridge)."""


# -- Rich content --------------------------------------------------------------


class EmbedField(BaseModel):
    name: str
    value: str
    inline: bool = False


class Embed(BaseModel):
    title: str | None = None
    description: str | None = None
    color: int | None = None
    fields: list[EmbedField] = Field(default_factory=list)
    footer: str | None = None


class ButtonStyle(StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    SUCCESS = "success"
    DANGER = "danger"


class Button(BaseModel):
    """A clickable button.  ``custom_id`` comes back in ``ButtonInteraction``."""

    custom_id: str
    label: str
    style: ButtonStyle = ButtonStyle.SECONDARY
    emoji: str | None = None


# -- Outbound ------------------------------------------------------------------


@runtime_checkable
class ChatMessage(Protocol):
    """A message the bridge sent and may later edit or delete."""

    @property
    def id(self) -> str: ...

    async def edit(
        self,
        content: str | None = None,
        *,
        embeds: Sequence[Embed] | None = None,
        buttons: Sequence[Button] | None = None,
    ) -> None:
        """Replace the message.  Raises ``MessageDeletedError`` if it is gone."""
        ...

    async def delete(self) -> None: ...


@runtime_checkable
class ChatThread(Protocol):
    """A conversation thread; the UI surface of one session."""

    @property
    def id(self) -> str: ...

    async def send(
        self,
        content: str | None = None,
        *,
        embeds: Sequence[Embed] | None = None,
        buttons: Sequence[Button] | None = None,
    ) -> ChatMessage: ...

    async def send_files(self, paths: Sequence[str], content: str | None = None) -> ChatMessage: ...

    async def send_typing(self) -> None: ...


@runtime_checkable
class ChatChannel(Protocol):
    """A watched top-level channel."""

    @property
    def name(self) -> str: ...

    async def create_thread(self, name: str, starter: InboundMessage) -> ChatThread: ...


# -- Inbound -------------------------------------------------------------------


@runtime_checkable
class InboundAttachment(Protocol):
    @property
    def filename(self) -> str: ...

    @property
    def url(self) -> str: ...


@runtime_checkable
class InboundMessage(Protocol):
    """A user message received by the platform adapter.

    Exactly one of ``thread`` (message posted inside a thread) and
    ``channel`` (top-level message) is set.
    """

    @property
    def id(self) -> str: ...

    @property
    def content(self) -> str: ...

    @property
    def author_is_bot(self) -> bool: ...

    @property
    def attachments(self) -> Sequence[InboundAttachment]: ...

    @property
    def thread(self) -> ChatThread | None: ...

    @property
    def channel(self) -> ChatChannel | None: ...

    async def reply(self, content: str) -> ChatMessage: ...

    async def delete(self) -> None: ...


@runtime_checkable
class ButtonInteraction(Protocol):
    """A button press."""

    @property
    def custom_id(self) -> str: ...

    async def update(
        self,
        content: str | None = None,
        *,
        embeds: Sequence[Embed] | None = None,
        buttons: Sequence[Button] | None = None,
    ) -> None:
        """Edit the message the button belongs to."""
        ...

    async def reply(self, content: str, *, ephemeral: bool = False) -> None: ...

    async def follow_up(self, content: str, *, ephemeral: bool = False) -> None: ...
