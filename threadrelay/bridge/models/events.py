"""Agent run events.

A run yields an ordered stream of these models.  They are a transport-neutral
projection of the agent runtime's own message protocol: the runtime adapter in
``execution/runtime.py`` maps SDK messages onto them and the orchestrator only
ever sees this module's types.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from threadrelay.bridge.models.enums import EventType, ResultSubtype


class InitEvent(BaseModel):
    """The runtime reported (or re-reported) its session handle."""

    type: Literal[EventType.INIT] = EventType.INIT
    session_id: str
    model: str | None = None


class CompactionEvent(BaseModel):
    type: Literal[EventType.COMPACTION] = EventType.COMPACTION
    pre_tokens: int | None = None


class TextDeltaEvent(BaseModel):
    type: Literal[EventType.TEXT_DELTA] = EventType.TEXT_DELTA
    index: int = 0
    text: str


class ToolUseStartEvent(BaseModel):
    """A tool_use content block opened in the model's streamed response."""

    type: Literal[EventType.TOOL_USE_START] = EventType.TOOL_USE_START
    index: int
    tool_use_id: str
    name: str


class ToolInputDeltaEvent(BaseModel):
    """A fragment of a tool's JSON arguments."""

    type: Literal[EventType.TOOL_INPUT_DELTA] = EventType.TOOL_INPUT_DELTA
    index: int
    partial_json: str


class BlockStopEvent(BaseModel):
    type: Literal[EventType.BLOCK_STOP] = EventType.BLOCK_STOP
    index: int


class ToolUse(BaseModel):
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class AssistantTurnEvent(BaseModel):
    """A complete (non-incremental) assistant message."""

    type: Literal[EventType.ASSISTANT] = EventType.ASSISTANT
    text: str = ""
    tool_uses: list[ToolUse] = Field(default_factory=list)


class ToolProgressEvent(BaseModel):
    type: Literal[EventType.TOOL_PROGRESS] = EventType.TOOL_PROGRESS
    tool_use_id: str
    tool_name: str | None = None
    elapsed_seconds: float = 0.0


class ToolResultEvent(BaseModel):
    type: Literal[EventType.TOOL_RESULT] = EventType.TOOL_RESULT
    tool_use_id: str
    content: str = ""
    is_error: bool = False


class RunResultEvent(BaseModel):
    """Terminal event for one submitted user turn."""

    type: Literal[EventType.RESULT] = EventType.RESULT
    subtype: ResultSubtype | str = ResultSubtype.SUCCESS
    total_cost_usd: float = 0.0
    num_turns: int = 0
    errors: list[str] = Field(default_factory=list)
    context_tokens: int | None = Field(default=None, description="Input + cache tokens of the last request.")
    context_window: int | None = None


AgentEvent = Annotated[
    InitEvent
    | CompactionEvent
    | TextDeltaEvent
    | ToolUseStartEvent
    | ToolInputDeltaEvent
    | BlockStopEvent
    | AssistantTurnEvent
    | ToolProgressEvent
    | ToolResultEvent
    | RunResultEvent,
    Field(discriminator="type"),
]
