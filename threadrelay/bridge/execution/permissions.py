"""Permission gate.

Every tool call the agent wants to make is routed here before it runs.
Questions and plan approvals block until the user answers in the thread;
anything else is allowed (optionally after a small random delay so a burst
of parallel tool calls does not flood the runtime's transport).
"""

from __future__ import annotations

import asyncio
import random
from pathlib import Path
from typing import Any, Protocol, assert_never

from anyio import to_thread
from loguru import logger

from threadrelay.bridge.chat import DeliveryError
from threadrelay.bridge.context import AbortHandle, ConversationSession, PromptAbortedError
from threadrelay.bridge.execution.plans import (
    PlanPrompt,
    find_latest_plan,
    plan_review_embed,
    rejection_message,
)
from threadrelay.bridge.execution.questions import InteractivePrompt, default_answers
from threadrelay.bridge.execution.text import split_message
from threadrelay.bridge.execution.ui import background_tag, best_effort
from threadrelay.bridge.models.permissions import (
    GenericToolRequest,
    InteractiveQuestionRequest,
    PermissionAllow,
    PermissionDecision,
    PermissionDeny,
    PlanApprovalRequest,
    classify_tool_request,
)

ABORTED_MESSAGE = "The user aborted the request."
UNDELIVERABLE_MESSAGE = "The prompt could not be shown to the user."


class GateHooks(Protocol):
    """Callbacks into the run that owns the gate."""

    def on_tool_use(self, tool_name: str, tool_input: dict[str, Any], tool_use_id: str | None) -> None:
        """A generic tool is about to run (card upsert, diff capture, image tracking)."""
        ...

    async def pause(self) -> None:
        """Clear status and ephemeral cards before a blocking prompt takes over the UI."""
        ...


class PermissionGate:
    """Callable permission handler bound to one run of one session."""

    def __init__(
        self,
        session: ConversationSession,
        abort: AbortHandle,
        hooks: GateHooks,
        *,
        plans_dir: Path,
        plan_max_age: float = 300.0,
        tool_accept_delay_ms: int = 0,
    ) -> None:
        self._session = session
        self._abort = abort
        self._hooks = hooks
        self._plans_dir = plans_dir
        self._plan_max_age = plan_max_age
        self._tool_accept_delay_ms = tool_accept_delay_ms
        self._blocking = asyncio.Lock()

    async def __call__(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_use_id: str | None = None,
    ) -> PermissionDecision:
        request = classify_tool_request(tool_name, tool_input, tool_use_id)
        logger.debug("Gate: {} ({}) -> {}", tool_name, tool_use_id, request.kind)
        match request:
            case InteractiveQuestionRequest():
                async with self._blocking:
                    await self._hooks.pause()
                    return await self._ask(request)
            case PlanApprovalRequest():
                async with self._blocking:
                    await self._hooks.pause()
                    return await self._review_plan(request)
            case GenericToolRequest():
                return await self._allow(request)
            case _:
                assert_never(request)

    # -- Generic ---------------------------------------------------------------

    async def _allow(self, request: GenericToolRequest) -> PermissionDecision:
        self._hooks.on_tool_use(request.tool_name, request.input, request.tool_use_id)
        if self._tool_accept_delay_ms > 0:
            await asyncio.sleep(random.uniform(0, self._tool_accept_delay_ms) / 1000)
        return PermissionAllow(updated_input=request.input)

    # -- Questions -------------------------------------------------------------

    async def _ask(self, request: InteractiveQuestionRequest) -> PermissionDecision:
        session = self._session
        if session.is_background:
            answers = default_answers(request.questions)
            await self._notify_auto_answers(answers)
            return PermissionAllow(updated_input={**request.input, "answers": answers})

        prompt = InteractivePrompt(request.questions)
        try:
            prompt.message = await session.thread.send(embeds=[prompt.render()])
        except DeliveryError:
            logger.exception("Gate: failed to render question in thread {}", session.thread_id)
            return PermissionDeny(message=UNDELIVERABLE_MESSAGE)

        session.pending_question = prompt
        logger.info("Gate: waiting on {} question(s) in thread {}", len(request.questions), session.thread_id)
        try:
            answers = await prompt.wait()
        except PromptAbortedError:
            return PermissionDeny(message=ABORTED_MESSAGE, interrupt=True)
        finally:
            if session.pending_question is prompt:
                session.pending_question = None
        if prompt.auto_resolved:
            if prompt.message is not None:
                await best_effort(prompt.message.edit(embeds=[prompt.render()]), "re-render question")
            await self._notify_auto_answers(answers)
        logger.debug("Gate: answers {}", answers)
        return PermissionAllow(updated_input={**request.input, "answers": answers})

    async def _notify_auto_answers(self, answers: dict[str, str]) -> None:
        session = self._session
        picked = ", ".join(f"{header}: {label or '?'}" for header, label in answers.items())
        await best_effort(
            session.thread.send(f"{background_tag(session.background_id)}Auto-selected defaults: {picked}"),
            "send auto-answer notice",
        )

    # -- Plans -----------------------------------------------------------------

    async def _review_plan(self, request: PlanApprovalRequest) -> PermissionDecision:
        session = self._session
        if session.is_background:
            await self._notify_auto_approval()
            return PermissionAllow(updated_input=request.input)

        plan = await to_thread.run_sync(find_latest_plan, self._plans_dir, self._plan_max_age)
        prompt = PlanPrompt(plan)
        try:
            if plan:
                for chunk in split_message(plan):
                    await session.thread.send(chunk)
            await session.thread.send(embeds=[plan_review_embed(plan is not None)])
        except DeliveryError:
            logger.exception("Gate: failed to render plan review in thread {}", session.thread_id)
            return PermissionDeny(message=UNDELIVERABLE_MESSAGE)

        session.pending_plan = prompt
        logger.info("Gate: waiting on plan approval in thread {}", session.thread_id)
        try:
            result = await prompt.wait()
        except PromptAbortedError:
            return PermissionDeny(message=ABORTED_MESSAGE, interrupt=True)
        finally:
            if session.pending_plan is prompt:
                session.pending_plan = None
        if prompt.auto_resolved:
            await self._notify_auto_approval()

        if not result.approved:
            message = rejection_message(result)
            logger.info("Gate: plan rejected in thread {}", session.thread_id)
            return PermissionDeny(message=message)

        if result.clear_context:
            # Let this call complete, then stop the run at the next event boundary.
            logger.info("Gate: plan approved with clear context in thread {}", session.thread_id)
            session.clear_context_requested = True
            session.approved_plan = plan
            self._abort.request_stop()
        return PermissionAllow(updated_input=request.input)

    async def _notify_auto_approval(self) -> None:
        session = self._session
        await best_effort(
            session.thread.send(f"{background_tag(session.background_id)}Auto-approved plan."),
            "send auto-approve notice",
        )
