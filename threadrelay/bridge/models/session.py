"""Durable session records and read-only views over live sessions."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SessionRecord(BaseModel):
    """What survives a restart or idle eviction for one thread."""

    remote_session_id: str
    cost: float = 0.0
    working_dir: str = ""


class ModelInfo(BaseModel):
    """A selectable model identifier reported by the agent runtime."""

    value: str
    display_name: str = ""
    description: str = ""


class ContextUsage(BaseModel):
    tokens: int = 0
    window: int = 0

    @property
    def ratio(self) -> float:
        return self.tokens / self.window if self.window else 0.0


class DiffEntry(BaseModel):
    """Before/after content captured from a file-editing tool call."""

    file_path: str
    old_string: str = ""
    new_string: str = ""
    lines_added: int = 0
    lines_removed: int = 0
    is_new_file: bool = False
    working_dir: str = ""
    created_at: float = 0.0


class CostReport(BaseModel):
    thread_cost: float | None = Field(default=None, description="Spend of the thread's foreground session, if resident.")
    total_cost: float = Field(default=0.0, description="Spend across every persisted thread.")
