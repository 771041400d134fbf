"""API response / request schemas for the control endpoints.

Thin serialisation shapes over the resident ``ConversationSession`` and the
service's command results.  Domain models (``ContextUsage``, ``CostReport``,
``ModelInfo``) are reused where they already fit.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from threadrelay.bridge.models.enums import RunPhase
from threadrelay.bridge.models.session import ModelInfo

# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


class BackgroundTaskResponse(BaseModel):
    id: int
    label: str
    started_at: float
    phase: RunPhase


class ThreadResponse(BaseModel):
    """One resident conversation session."""

    thread_id: str
    working_dir: str
    remote_session_id: str | None = None
    phase: RunPhase
    busy: bool
    queued: int = Field(description="Prompts waiting for the current run to finish.")
    cost: float
    context_tokens: int
    context_window: int
    idle_seconds: float
    background_tasks: list[BackgroundTaskResponse] = Field(default_factory=list)


class ActionResponse(BaseModel):
    thread_id: str
    ok: bool = Field(description="Whether the action found something to act on.")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ModelListResponse(BaseModel):
    current: str | None = None
    available: list[ModelInfo] | None = Field(
        default=None, description="Cached model list; ``None`` until the first run has connected."
    )


class ModelSwitchRequest(BaseModel):
    model: str | None = Field(default=None, description="Model for new runs; ``None`` restores the default.")
