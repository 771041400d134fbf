"""Chat gateway -- routes inbound chat traffic into the bridge.

A chat client adapter (the part that speaks the platform's protocol) calls
``handle_message`` for every inbound message and ``handle_button`` for every
button press.  Routing:

- top-level message in a watched channel: open a thread and start a session;
- message in a thread: commands, then a pending plan approval, then a pending
  question, then the busy gate (inject / queue), then an idle follow-up;
- anything else is ignored.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from threadrelay.bridge.chat import ButtonInteraction, ChatChannel, ChatThread, DeliveryError, InboundMessage
from threadrelay.bridge.execution.attachments import download_attachments, with_attachment_note
from threadrelay.bridge.execution.diffs import handle_diff_button, is_diff_button
from threadrelay.bridge.execution.plans import PlanPrompt, handle_plan_reply
from threadrelay.bridge.execution.questions import InteractivePrompt, handle_question_reply
from threadrelay.gateway.commands import CommandHandler

if TYPE_CHECKING:
    import httpx

    from threadrelay.bridge.context import ConversationSession
    from threadrelay.bridge.service import RelayService

logger = logging.getLogger(__name__)

THREAD_NAME_LENGTH = 95
DEFAULT_THREAD_NAME = "Agent session"

NOT_FOUND_REPLY = (
    "Session not found - it may have been lost in a restart. Please start a new conversation in the channel."
)
UNKNOWN_DIR_REPLY = (
    "Session found but working directory is unknown. Please start a new conversation in the channel."
)
EXPIRED_REPLY = "Session expired. Please start a new conversation in the channel."


def thread_name(content: str) -> str:
    return content[:THREAD_NAME_LENGTH].strip() or DEFAULT_THREAD_NAME


class ThreadGateway:
    """Entry point for the chat client adapter."""

    def __init__(self, service: RelayService, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.service = service
        self.settings = service.settings
        self.channels = service.settings.channel_map()
        self.commands = CommandHandler(service)
        self._http = http_client

    # -- Messages --------------------------------------------------------------

    async def handle_message(self, message: InboundMessage) -> None:
        if message.author_is_bot:
            return
        if message.thread is not None:
            logger.debug("Routing message %s to thread %s", message.id, message.thread.id)
            await self._handle_thread_message(message, message.thread)
            return
        channel = message.channel
        if channel is not None and channel.name in self.channels:
            logger.debug("Routing message %s to new session (channel %s)", message.id, channel.name)
            await self._handle_new_message(message, channel, self.channels[channel.name])
            return
        logger.debug("Ignoring message %s in unwatched channel", message.id)

    async def _handle_new_message(self, message: InboundMessage, channel: ChatChannel, working_dir: str) -> None:
        if await self.commands.handle(message, None):
            return

        name = thread_name(message.content)
        try:
            thread = await channel.create_thread(name, message)
        except DeliveryError:
            logger.exception("Failed to create thread for message %s", message.id)
            return
        logger.info("New session thread %s for %r (working_dir=%s)", thread.id, name, working_dir)

        session = self.service.registry.create(thread.id, thread, working_dir)
        prompt = await self._build_prompt(message, working_dir)
        self.service.submit(session, prompt)

    async def _handle_thread_message(self, message: InboundMessage, thread: ChatThread) -> None:
        session = await self._resident_session(message, thread)
        if session is None:
            return
        self.service.registry.touch(thread.id)

        if await self.commands.handle(message, thread.id):
            return

        if isinstance(session.pending_plan, PlanPrompt):
            await handle_plan_reply(session.pending_plan, message)
            return
        if isinstance(session.pending_question, InteractivePrompt):
            await handle_question_reply(session.pending_question, message)
            return

        if not session.busy and session.remote_session_id is None:
            await message.reply(EXPIRED_REPLY)
            return

        prompt = await self._build_prompt(message, session.working_dir)
        outcome = self.service.submit(session, prompt)
        logger.debug("Follow-up in thread %s: %s", thread.id, outcome)

    async def _resident_session(self, message: InboundMessage, thread: ChatThread) -> ConversationSession | None:
        """Return the thread's session, rehydrating it from the durable record if needed."""
        registry = self.service.registry
        session = registry.get(thread.id)
        if session is not None:
            return session

        record = await self.service.store.get(thread.id)
        if record is None:
            if await self.commands.handle(message, thread.id):
                return None
            await message.reply(NOT_FOUND_REPLY)
            return None
        if not record.working_dir:
            await message.reply(UNKNOWN_DIR_REPLY)
            return None
        return registry.restore(thread.id, thread, record)

    async def _build_prompt(self, message: InboundMessage, working_dir: str) -> str:
        upload_dir = self.settings.upload_dir_name
        saved = await download_attachments(message.attachments, working_dir, upload_dir, http_client=self._http)
        return with_attachment_note(message.content, saved, upload_dir)

    # -- Buttons ---------------------------------------------------------------

    async def handle_button(self, interaction: ButtonInteraction) -> bool:
        """Handle a button press.  Returns ``False`` for buttons we don't own."""
        if is_diff_button(interaction.custom_id):
            return await handle_diff_button(interaction, self.service.diff_store)
        return False
