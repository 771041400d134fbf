"""Interactive question prompts.

When the agent asks a structured question, every option of every question is
numbered globally (each question also gets one implicit "Other" option) and
rendered as a single embed.  The user then answers with free-text replies in
the thread:

* while an "Other" answer is awaited, the reply *is* that answer;
* ``submit`` / ``done`` / ``confirm`` finishes the prompt;
* ``<n> <text>`` selects Other option ``n`` and sets its text in one step;
* numbers (comma or space separated) toggle options;
* anything else gets a short-lived hint and changes nothing.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from threadrelay.bridge.chat import ChatMessage, Embed, EmbedField, InboundMessage
from threadrelay.bridge.context import PromptAbortedError
from threadrelay.bridge.execution.ui import best_effort, delete_later
from threadrelay.bridge.models.enums import ReplyAction
from threadrelay.bridge.models.permissions import Question

QUESTION_COLOR = 0x7C3AED
QUESTION_TITLE = "The agent needs your input"
OTHER_LABEL = "Other"
OTHER_HINT = "Provide your own answer"
ANSWERED_FOOTER = "Answers sent."
AUTO_ANSWERED_FOOTER = "Answered automatically with the defaults."

_SUBMIT_RE = re.compile(r"^(submit|done|confirm)$", re.IGNORECASE)
_OTHER_SHORTHAND_RE = re.compile(r"^(\d+)\s+(.+)$", re.DOTALL)
_NUMBERS_RE = re.compile(r"^[\d,\s]+$")


@dataclass(frozen=True)
class FlatOption:
    number: int
    question_index: int
    label: str
    is_other: bool = False


def build_flat_options(questions: Sequence[Question]) -> list[FlatOption]:
    """Number every option across all questions, starting at 1."""
    options: list[FlatOption] = []
    number = 1
    for qi, question in enumerate(questions):
        for option in question.options:
            options.append(FlatOption(number, qi, option.label))
            number += 1
        options.append(FlatOption(number, qi, OTHER_LABEL, is_other=True))
        number += 1
    return options


def default_answers(questions: Sequence[Question]) -> dict[str, str]:
    """Pick each question's first option."""
    return {q.header: q.options[0].label if q.options else "" for q in questions}


class InteractivePrompt:
    """Selection state of one pending question prompt.

    Resolves its future with a ``{header: answer}`` map on submit, or fails
    it with ``PromptAbortedError`` when cancelled.
    """

    def __init__(self, questions: Sequence[Question]) -> None:
        self.questions = list(questions)
        self.options = build_flat_options(self.questions)
        self._by_number = {o.number: o for o in self.options}
        self.selections: dict[int, list[int]] = {qi: [] for qi in range(len(self.questions))}
        self.other_text: dict[int, str] = {}
        self.touched: set[int] = set()
        self.awaiting_other: int | None = None
        self.message: ChatMessage | None = None
        self.auto_resolved = False
        self._future: asyncio.Future[dict[str, str]] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> dict[str, str]:
        return await self._future

    def cancel(self) -> None:
        if not self._future.done():
            self._future.set_exception(PromptAbortedError("question prompt cancelled"))
            # Nobody may be awaiting any more; mark the exception retrieved.
            self._future.exception()

    def resolve_default(self) -> bool:
        if self._future.done():
            return False
        self.auto_resolved = True
        self._future.set_result(default_answers(self.questions))
        return True

    # -- Reply protocol --------------------------------------------------------

    def apply_reply(self, text: str) -> ReplyAction:
        text = text.strip()

        if self.awaiting_other is not None:
            self.other_text[self.awaiting_other] = text
            self.awaiting_other = None
            return ReplyAction.OTHER_TEXT

        if _SUBMIT_RE.match(text):
            if not self._future.done():
                self._future.set_result(self.answers())
            return ReplyAction.SUBMITTED

        shorthand = _OTHER_SHORTHAND_RE.match(text)
        if shorthand:
            option = self._by_number.get(int(shorthand.group(1)))
            if option is not None and option.is_other:
                self._select_other(option, shorthand.group(2).strip())
                return ReplyAction.TOGGLED

        if _NUMBERS_RE.match(text):
            for token in re.split(r"[,\s]+", text):
                if token.isdigit() and (option := self._by_number.get(int(token))) is not None:
                    self._toggle(option)
            return ReplyAction.TOGGLED

        return ReplyAction.UNRECOGNIZED

    def _select_other(self, option: FlatOption, text: str) -> None:
        qi = option.question_index
        selected = self.selections[qi]
        self.touched.add(qi)
        if not self.questions[qi].multi_select:
            selected.clear()
        if option.number not in selected:
            selected.append(option.number)
        self.other_text[qi] = text

    def _toggle(self, option: FlatOption) -> None:
        qi = option.question_index
        selected = self.selections[qi]
        multi = self.questions[qi].multi_select
        self.touched.add(qi)

        if option.number in selected:
            selected.remove(option.number)
            if option.is_other:
                self.other_text.pop(qi, None)
            return

        if not multi:
            selected.clear()
            self.other_text.pop(qi, None)
        selected.append(option.number)
        if option.is_other and qi not in self.other_text:
            self.awaiting_other = qi

    def answers(self) -> dict[str, str]:
        """Build the ``{header: answer}`` map from the current selections.

        Labels are comma-joined in selection order.  A question nobody touched
        defaults to its first option; one that was touched and then emptied
        answers with an empty string.
        """
        result: dict[str, str] = {}
        for qi, question in enumerate(self.questions):
            labels: list[str] = []
            for number in self.selections[qi]:
                option = self._by_number[number]
                if option.is_other:
                    if text := self.other_text.get(qi):
                        labels.append(text)
                else:
                    labels.append(option.label)
            if labels:
                result[question.header] = ", ".join(labels)
            elif qi in self.touched:
                result[question.header] = ""
            else:
                result[question.header] = question.options[0].label if question.options else ""
        return result

    # -- Rendering -------------------------------------------------------------

    def render(self) -> Embed:
        fields = []
        for qi, question in enumerate(self.questions):
            selected = self.selections[qi]
            descriptions = {o.label: o.description for o in question.options}
            lines = []
            for option in (o for o in self.options if o.question_index == qi):
                checked = option.number in selected
                if question.multi_select:
                    bullet = "☑" if checked else "☐"
                else:
                    bullet = "●" if checked else "○"
                line = f"{bullet} **{option.number}.** {option.label}"
                if option.is_other:
                    line += f" - {OTHER_HINT}"
                    if checked and self.other_text.get(qi):
                        line += f"\n    *{self.other_text[qi]}*"
                elif descriptions.get(option.label):
                    line += f" - {descriptions[option.label]}"
                lines.append(line)
            fields.append(EmbedField(name=f"{question.header}: {question.question}", value="\n".join(lines)))

        if self.done:
            footer = AUTO_ANSWERED_FOOTER if self.auto_resolved else ANSWERED_FOOTER
        elif self.awaiting_other is not None:
            footer = f'Type your custom answer for "{self.questions[self.awaiting_other].header}"...'
        else:
            footer = "Type a number to toggle, or 'submit' to confirm."
        return Embed(title=QUESTION_TITLE, color=QUESTION_COLOR, fields=fields, footer=footer)

    def hint(self) -> str:
        has_other = any(o.is_other for o in self.options)
        example = " (e.g. `3 your answer` for Other)" if has_other else ""
        return f'Didn\'t understand that input. Type a **number** to toggle an option{example}, or **"submit"** to confirm.'


async def handle_question_reply(prompt: InteractivePrompt, message: InboundMessage) -> ReplyAction:
    """Apply a thread reply to a pending prompt and update the UI."""
    action = prompt.apply_reply(message.content)
    logger.debug("Question reply {!r} -> {}", message.content[:40], action)

    if action is ReplyAction.UNRECOGNIZED:
        hint = await best_effort(message.reply(prompt.hint()), "send question hint")
        if hint is not None:
            delete_later(hint)
        return action

    # Selection-only replies are clutter; freeform answers stay for context.
    if action in (ReplyAction.TOGGLED, ReplyAction.SUBMITTED) and not _is_freeform(message.content):
        await best_effort(message.delete(), "delete selection reply")

    if prompt.message is not None:
        await best_effort(prompt.message.edit(embeds=[prompt.render()]), "re-render question")
    return action


def _is_freeform(text: str) -> bool:
    text = text.strip()
    return bool(_OTHER_SHORTHAND_RE.match(text)) and not _NUMBERS_RE.match(text)
