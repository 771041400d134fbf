"""Shared enumerations used across the bridge."""

from __future__ import annotations

from enum import StrEnum

# -- Session -----------------------------------------------------------------


class RunPhase(StrEnum):
    """Single-flight state of a conversation session.

    ``RUNNING`` and ``DRAINING`` both count as busy; a session only returns to
    ``IDLE`` once teardown has confirmed its queue is empty.
    """

    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"


class DispatchOutcome(StrEnum):
    """What the busy gate did with a submitted prompt."""

    STARTED = "started"
    INJECTED = "injected"
    QUEUED = "queued"


# -- Agent events ------------------------------------------------------------


class EventType(StrEnum):
    """Discriminator for events yielded by an agent run."""

    INIT = "init"
    COMPACTION = "compaction"
    TEXT_DELTA = "text_delta"
    TOOL_USE_START = "tool_use_start"
    TOOL_INPUT_DELTA = "tool_input_delta"
    BLOCK_STOP = "block_stop"
    ASSISTANT = "assistant"
    TOOL_PROGRESS = "tool_progress"
    TOOL_RESULT = "tool_result"
    RESULT = "result"


class ResultSubtype(StrEnum):
    SUCCESS = "success"
    ERROR_MAX_TURNS = "error_max_turns"
    ERROR_DURING_EXECUTION = "error_during_execution"


# -- Permissions -------------------------------------------------------------


class PermissionKind(StrEnum):
    """Tag of a permission-gate request."""

    INTERACTIVE_QUESTION = "interactive-question"
    PLAN_APPROVAL = "plan-approval"
    GENERIC = "generic"


class PermissionBehavior(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


# -- UI ----------------------------------------------------------------------


class ToolCardStatus(StrEnum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class ReplyAction(StrEnum):
    """Effect of a free-text reply on a pending interactive prompt."""

    OTHER_TEXT = "other_text"
    TOGGLED = "toggled"
    SUBMITTED = "submitted"
    UNRECOGNIZED = "unrecognized"
