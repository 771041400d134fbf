"""Local JSON file session store.

Keeps every record in memory and mirrors the whole map to a single file::

    {data_root}/sessions.json

Reads are served from memory, so a write is visible to the next read of the
same key immediately.  Persisting uses ``anyio.to_thread.run_sync`` for
non-blocking file I/O and is atomic: data is written to a temporary file in
the same directory, then renamed to the target path.

Two older on-disk shapes are migrated on load: a flat ``thread -> session id``
string map, and camelCase ``{sessionId, cost, cwd}`` entries.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread
from pydantic import ValidationError

from threadrelay.bridge.models.session import SessionRecord

logger = logging.getLogger(__name__)

STORE_FILENAME = "sessions.json"


class JsonSessionStore:
    """JSON-file implementation of the SessionStore protocol."""

    def __init__(self, data_root: str | Path) -> None:
        self._path = Path(data_root) / STORE_FILENAME
        self._records: dict[str, SessionRecord] = {}
        self._loaded = False
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # -- Read ------------------------------------------------------------------

    async def get(self, thread_id: str) -> SessionRecord | None:
        await self._ensure_loaded()
        record = self._records.get(thread_id)
        return record.model_copy() if record else None

    async def total_cost(self) -> float:
        await self._ensure_loaded()
        return sum(r.cost for r in self._records.values())

    async def all(self) -> dict[str, SessionRecord]:
        await self._ensure_loaded()
        return {k: v.model_copy() for k, v in self._records.items()}

    # -- Write -----------------------------------------------------------------

    async def set_remote_session_id(self, thread_id: str, remote_session_id: str, working_dir: str) -> None:
        await self._ensure_loaded()
        existing = self._records.get(thread_id)
        self._records[thread_id] = SessionRecord(
            remote_session_id=remote_session_id,
            cost=existing.cost if existing else 0.0,
            working_dir=working_dir,
        )
        await self._persist()

    async def add_cost(self, thread_id: str, amount: float) -> None:
        await self._ensure_loaded()
        record = self._records.get(thread_id)
        if record is None:
            return
        record.cost += amount
        await self._persist()

    async def remove(self, thread_id: str) -> None:
        await self._ensure_loaded()
        if self._records.pop(thread_id, None) is not None:
            await self._persist()

    # -- Internals -------------------------------------------------------------

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        raw = await to_thread.run_sync(partial(_read_json, self._path))
        # Another coroutine may have finished loading while we were reading.
        if self._loaded:
            return
        self._records = _parse_records(raw)
        self._loaded = True
        logger.debug("Loaded %d session records from %s", len(self._records), self._path)

    async def _persist(self) -> None:
        async with self._write_lock:
            data = json.dumps({k: v.model_dump() for k, v in self._records.items()}, indent=2)
            await to_thread.run_sync(partial(_atomic_write, self._path, data))


def _parse_records(raw: dict[str, Any]) -> dict[str, SessionRecord]:
    records: dict[str, SessionRecord] = {}
    for thread_id, value in raw.items():
        if isinstance(value, str):
            records[thread_id] = SessionRecord(remote_session_id=value)
            continue
        if not isinstance(value, dict):
            logger.warning("Skipping malformed session record for thread %s", thread_id)
            continue
        if "sessionId" in value:
            value = {
                "remote_session_id": value.get("sessionId"),
                "cost": value.get("cost") or 0.0,
                "working_dir": value.get("cwd") or "",
            }
        try:
            records[thread_id] = SessionRecord.model_validate(value)
        except ValidationError:
            logger.warning("Skipping malformed session record for thread %s", thread_id)
    return records


# -- Sync helpers (run in thread pool) -----------------------------------------


def _read_json(path: Path) -> dict[str, Any]:
    """Return the parsed file, or ``{}`` if it is missing or unreadable."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError):
        logger.exception("Failed to read session store %s, starting empty", path)
        return {}
    return data if isinstance(data, dict) else {}


def _atomic_write(path: Path, data: str) -> None:
    """Write data atomically: temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
