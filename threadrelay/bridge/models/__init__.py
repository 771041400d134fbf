"""Domain models for the bridge.

Re-exports the most commonly used types so callers can write::

    from threadrelay.bridge.models import AgentEvent, SessionRecord
"""

from threadrelay.bridge.models.enums import (
    DispatchOutcome,
    EventType,
    PermissionBehavior,
    PermissionKind,
    ReplyAction,
    ResultSubtype,
    RunPhase,
    ToolCardStatus,
)
from threadrelay.bridge.models.events import (
    AgentEvent,
    AssistantTurnEvent,
    BlockStopEvent,
    CompactionEvent,
    InitEvent,
    RunResultEvent,
    TextDeltaEvent,
    ToolInputDeltaEvent,
    ToolProgressEvent,
    ToolResultEvent,
    ToolUse,
    ToolUseStartEvent,
)
from threadrelay.bridge.models.permissions import (
    GenericToolRequest,
    InteractiveQuestionRequest,
    PermissionAllow,
    PermissionDecision,
    PermissionDeny,
    PermissionRequest,
    PlanApprovalRequest,
    PlanApprovalResult,
    Question,
    QuestionOption,
    classify_tool_request,
)
from threadrelay.bridge.models.session import ContextUsage, CostReport, ModelInfo, SessionRecord

__all__ = [
    "AgentEvent",
    "AssistantTurnEvent",
    "BlockStopEvent",
    "CompactionEvent",
    "ContextUsage",
    "CostReport",
    "DispatchOutcome",
    "EventType",
    "GenericToolRequest",
    "InitEvent",
    "InteractiveQuestionRequest",
    "ModelInfo",
    "PermissionAllow",
    "PermissionBehavior",
    "PermissionDecision",
    "PermissionDeny",
    "PermissionKind",
    "PermissionRequest",
    "PlanApprovalRequest",
    "PlanApprovalResult",
    "Question",
    "QuestionOption",
    "ReplyAction",
    "ResultSubtype",
    "RunPhase",
    "RunResultEvent",
    "SessionRecord",
    "TextDeltaEvent",
    "ToolCardStatus",
    "ToolInputDeltaEvent",
    "ToolProgressEvent",
    "ToolResultEvent",
    "ToolUse",
    "ToolUseStartEvent",
    "classify_tool_request",
]
