"""Permission-gate requests and decisions.

Every tool call the agent wants to make passes through the gate as one of three
tagged requests.  Two of them are *blocking* (they pause the run until a human
answers); everything else is a generic request that is auto-allowed.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from threadrelay.bridge.models.enums import PermissionBehavior, PermissionKind

ASK_USER_QUESTION_TOOL = "AskUserQuestion"
EXIT_PLAN_MODE_TOOL = "ExitPlanMode"


# -- Questions ---------------------------------------------------------------


class QuestionOption(BaseModel):
    label: str
    description: str = ""


class Question(BaseModel):
    """One question of an interactive prompt, as the agent sends it."""

    model_config = ConfigDict(populate_by_name=True)

    question: str
    header: str
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")


# -- Requests ----------------------------------------------------------------


class InteractiveQuestionRequest(BaseModel):
    kind: Literal[PermissionKind.INTERACTIVE_QUESTION] = PermissionKind.INTERACTIVE_QUESTION
    tool_use_id: str | None = None
    questions: list[Question]
    input: dict[str, Any] = Field(default_factory=dict)


class PlanApprovalRequest(BaseModel):
    kind: Literal[PermissionKind.PLAN_APPROVAL] = PermissionKind.PLAN_APPROVAL
    tool_use_id: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)


class GenericToolRequest(BaseModel):
    kind: Literal[PermissionKind.GENERIC] = PermissionKind.GENERIC
    tool_name: str
    tool_use_id: str | None = None
    input: dict[str, Any] = Field(default_factory=dict)


PermissionRequest = Annotated[
    InteractiveQuestionRequest | PlanApprovalRequest | GenericToolRequest,
    Field(discriminator="kind"),
]


def classify_tool_request(
    tool_name: str,
    tool_input: dict[str, Any],
    tool_use_id: str | None = None,
) -> InteractiveQuestionRequest | PlanApprovalRequest | GenericToolRequest:
    """Map a raw tool call onto its tagged permission request.

    An ``AskUserQuestion`` call without any well-formed question degrades to a
    generic request so it is simply allowed through.
    """
    if tool_name == ASK_USER_QUESTION_TOOL:
        raw_questions = tool_input.get("questions") or []
        try:
            questions = [Question.model_validate(q) for q in raw_questions]
        except ValidationError:
            questions = []
        if questions:
            return InteractiveQuestionRequest(tool_use_id=tool_use_id, questions=questions, input=tool_input)
    elif tool_name == EXIT_PLAN_MODE_TOOL:
        return PlanApprovalRequest(tool_use_id=tool_use_id, input=tool_input)
    return GenericToolRequest(tool_name=tool_name, tool_use_id=tool_use_id, input=tool_input)


# -- Decisions ---------------------------------------------------------------


class PermissionAllow(BaseModel):
    behavior: Literal[PermissionBehavior.ALLOW] = PermissionBehavior.ALLOW
    updated_input: dict[str, Any] = Field(default_factory=dict)


class PermissionDeny(BaseModel):
    behavior: Literal[PermissionBehavior.DENY] = PermissionBehavior.DENY
    message: str
    interrupt: bool = False


PermissionDecision = PermissionAllow | PermissionDeny


# -- Plan approval -----------------------------------------------------------


class PlanApprovalResult(BaseModel):
    """Outcome of a plan-approval prompt."""

    approved: bool
    clear_context: bool = False
    feedback: str | None = None
