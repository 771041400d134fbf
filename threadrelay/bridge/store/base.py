"""Durable session-record store interface.

The store is a simple keyed map of thread id -> ``SessionRecord``.  It only
has to be read-after-write consistent for the same key within one process;
how it persists is up to the implementation.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from threadrelay.bridge.models.session import SessionRecord


@runtime_checkable
class SessionStore(Protocol):
    """Async protocol for the durable thread -> session record map."""

    async def get(self, thread_id: str) -> SessionRecord | None:
        """Return the record for a thread, or ``None``."""
        ...

    async def set_remote_session_id(self, thread_id: str, remote_session_id: str, working_dir: str) -> None:
        """Create or update a record, preserving its accumulated cost."""
        ...

    async def add_cost(self, thread_id: str, amount: float) -> None:
        """Add to a thread's accumulated cost.  No-op if no record exists."""
        ...

    async def remove(self, thread_id: str) -> None:
        """Delete a thread's record.  No-op if not found."""
        ...

    async def total_cost(self) -> float:
        """Sum of accumulated cost across every record."""
        ...

    async def all(self) -> dict[str, SessionRecord]:
        """Snapshot of every record."""
        ...
