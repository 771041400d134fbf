"""``!command`` handling for watched channels and threads."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from threadrelay.bridge.chat import InboundMessage
    from threadrelay.bridge.service import RelayService

logger = logging.getLogger(__name__)

PROGRESS_BAR_WIDTH = 20
CONTEXT_WARNING_RATIO = 0.8

THREAD_ONLY = "Use this command inside a thread."

HELP_TEXT = "\n".join(
    [
        "**Commands:**",
        "`!clear` - Reset session, start fresh in this thread",
        "`!abort` - Stop the current response",
        "`!model [name]` - Show available models or switch model",
        "`!cost` - Show session and total API costs",
        "`!context` - Show context window usage for this session",
        "`!bg [label]` - Move the current response to the background",
        "`!jobs` - List background tasks in this thread",
        "`!kill <id|all>` - Abort a background task",
        "`!help` - Show this message",
    ]
)


def progress_bar(ratio: float) -> str:
    filled = max(0, min(PROGRESS_BAR_WIDTH, round(ratio * PROGRESS_BAR_WIDTH)))
    warning = " ⚠️" if ratio >= CONTEXT_WARNING_RATIO else ""
    return f"`[{'=' * filled}{' ' * (PROGRESS_BAR_WIDTH - filled)}]`{warning}"


def _elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s" if minutes else f"{secs}s"


class CommandHandler:
    """Parse and run ``!commands``.  Returns ``False`` for anything else."""

    def __init__(self, service: RelayService) -> None:
        self.service = service

    async def handle(self, message: InboundMessage, thread_id: str | None) -> bool:
        text = message.content.strip()
        if not text.startswith("!"):
            return False
        command, _, args = text[1:].partition(" ")
        command = command.lower()
        args = args.strip()

        handler = {
            "clear": self._clear,
            "abort": self._abort,
            "model": self._model,
            "cost": self._cost,
            "context": self._context,
            "bg": self._background,
            "jobs": self._jobs,
            "kill": self._kill,
            "help": self._help,
        }.get(command)
        if handler is None:
            return False

        logger.debug("Command !%s in thread %s", command, thread_id)
        reply = await handler(thread_id, args)
        await message.reply(reply)
        return True

    # -- Session ---------------------------------------------------------------

    async def _clear(self, thread_id: str | None, args: str) -> str:
        if thread_id is None:
            return THREAD_ONLY
        await self.service.reset(thread_id)
        return "Session cleared. Your next message will start a fresh conversation."

    async def _abort(self, thread_id: str | None, args: str) -> str:
        if thread_id is None:
            return THREAD_ONLY
        if not self.service.abort(thread_id):
            return "Nothing is running."
        return "Aborted the current response."

    async def _model(self, thread_id: str | None, args: str) -> str:
        if args:
            self.service.set_model(args)
            return f"Model switched to `{args}` for new queries."

        current = self.service.current_model or "default"
        lines = [f"**Current model:** `{current}`"]
        models = self.service.models
        if models:
            lines += ["", "**Available models:**"]
            for model in models:
                marker = " ✅" if model.value == current else ""
                description = f" - *{model.description}*" if model.description else ""
                lines.append(f"- `{model.value}` - {model.display_name or model.value}{description}{marker}")
        lines += ["", "Usage: `!model <name>`"]
        return "\n".join(lines)

    async def _cost(self, thread_id: str | None, args: str) -> str:
        report = await self.service.get_cost(thread_id)
        lines = []
        if report.thread_cost is not None:
            lines.append(f"**This session:** ${report.thread_cost:.4f}")
        lines.append(f"**All sessions:** ${report.total_cost:.4f}")
        return "\n".join(lines)

    async def _context(self, thread_id: str | None, args: str) -> str:
        if thread_id is None:
            return THREAD_ONLY
        usage = self.service.get_context_usage(thread_id)
        if usage is None or usage.window == 0:
            return "No context data yet - send a message first."
        return (
            f"**Context:** {usage.tokens / 1000:.1f}k / {usage.window / 1000:.0f}k tokens "
            f"({usage.ratio * 100:.1f}%)\n{progress_bar(usage.ratio)}"
        )

    # -- Background tasks ------------------------------------------------------

    async def _background(self, thread_id: str | None, args: str) -> str:
        if thread_id is None:
            return THREAD_ONLY
        task = self.service.background(thread_id, args or None)
        if task is None:
            return "Nothing is running."
        return (
            f"Moved to background as **bg #{task.id}** ({task.label}). "
            "Questions and plans in that task are answered automatically. "
            "You can keep chatting here."
        )

    async def _jobs(self, thread_id: str | None, args: str) -> str:
        if thread_id is None:
            return THREAD_ONLY
        tasks = self.service.jobs(thread_id)
        if not tasks:
            return "No background tasks."
        now = time.time()
        lines = ["**Background tasks:**"]
        lines += [f"- **#{t.id}** {t.label} ({_elapsed(now - t.started_at)})" for t in tasks]
        return "\n".join(lines)

    async def _kill(self, thread_id: str | None, args: str) -> str:
        if thread_id is None:
            return THREAD_ONLY
        target = args.lstrip("#").lower()
        if target == "all":
            count = self.service.kill(thread_id)
            return f"Aborted {count} background task(s)." if count else "No background tasks."
        if not target.isdigit():
            return "Usage: `!kill <id|all>`"
        if not self.service.kill(thread_id, int(target)):
            return f"No background task #{target}."
        return f"Aborted background task #{target}."

    async def _help(self, thread_id: str | None, args: str) -> str:
        return HELP_TEXT
