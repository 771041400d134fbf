"""Plan approval prompts."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from loguru import logger

from threadrelay.bridge.chat import Embed, EmbedField, InboundMessage
from threadrelay.bridge.context import PromptAbortedError
from threadrelay.bridge.execution.ui import best_effort
from threadrelay.bridge.models.permissions import PlanApprovalResult

PLAN_COLOR = 0x5865F2

_APPROVE_CLEAR = frozenset({"1", "clear", "clear context"})
_APPROVE = frozenset(
    {"2", "approve", "approved", "yes", "y", "lgtm", "looks good", "ok", "go", "go ahead", "proceed"}
)
_REJECT = frozenset({"3", "reject", "rejected", "no", "n", "revise"})

IMPLEMENT_PLAN_PROMPT = "Implement the following plan:\n\n{plan}"


def parse_plan_approval(text: str) -> PlanApprovalResult:
    normalized = text.strip().lower()
    if normalized in _APPROVE_CLEAR:
        return PlanApprovalResult(approved=True, clear_context=True)
    if normalized in _APPROVE:
        return PlanApprovalResult(approved=True)
    if normalized in _REJECT:
        return PlanApprovalResult(approved=False)
    return PlanApprovalResult(approved=False, feedback=text.strip())


def rejection_message(result: PlanApprovalResult) -> str:
    if result.feedback:
        return f"The user rejected the plan with feedback: {result.feedback}"
    return "The user rejected the plan. Please revise."


def find_latest_plan(plans_dir: Path, max_age: float, now: float | None = None) -> str | None:
    """Return the newest ``*.md`` plan in *plans_dir* if modified within *max_age* seconds.

    Blocking; run it in a worker thread.
    """
    if not plans_dir.is_dir():
        return None
    try:
        candidates = [(p.stat().st_mtime, p) for p in plans_dir.glob("*.md") if p.is_file()]
    except OSError:
        logger.opt(exception=True).debug("Plans: failed to list {}", plans_dir)
        return None
    if not candidates:
        return None

    mtime, newest = max(candidates)
    now = time.time() if now is None else now
    if now - mtime > max_age:
        logger.debug("Plans: newest plan {} is {:.0f}s old, ignoring", newest.name, now - mtime)
        return None
    try:
        return newest.read_text(encoding="utf-8")
    except OSError:
        logger.opt(exception=True).debug("Plans: failed to read {}", newest)
        return None


def plan_review_embed(has_plan: bool) -> Embed:
    description = (
        "Review the plan above. Reply to approve or reject."
        if has_plan
        else "The agent wants to proceed with its plan. Reply to approve or reject."
    )
    options = "\n".join(
        [
            "**1.** Approve & clear context: approve, then start fresh",
            "**2.** Approve: proceed with full context",
            "**3.** Reject: ask the agent to revise",
            "Or type feedback to send back to the agent",
        ]
    )
    return Embed(
        title="Plan Review",
        description=description,
        color=PLAN_COLOR,
        fields=[EmbedField(name="Options", value=options)],
        footer='Reply "1"/"clear", "2"/"approve", "3"/"reject", or type feedback.',
    )


class PlanPrompt:
    """A pending plan approval."""

    def __init__(self, plan: str | None) -> None:
        self.plan = plan
        self.auto_resolved = False
        self._future: asyncio.Future[PlanApprovalResult] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, result: PlanApprovalResult) -> None:
        if not self._future.done():
            self._future.set_result(result)

    def resolve_default(self) -> bool:
        """Approve and keep the context, as a background session would."""
        if self._future.done():
            return False
        self.auto_resolved = True
        self._future.set_result(PlanApprovalResult(approved=True))
        return True

    def cancel(self) -> None:
        if not self._future.done():
            self._future.set_exception(PromptAbortedError("plan approval cancelled"))
            self._future.exception()

    async def wait(self) -> PlanApprovalResult:
        return await self._future


async def handle_plan_reply(prompt: PlanPrompt, message: InboundMessage) -> PlanApprovalResult:
    """Resolve a pending plan approval from a thread reply."""
    result = parse_plan_approval(message.content)
    logger.debug(
        "Plan reply: approved={} clear_context={} feedback={!r}", result.approved, result.clear_context, result.feedback
    )
    if result.feedback is None:
        await best_effort(message.delete(), "delete plan reply")
    prompt.resolve(result)
    return result
