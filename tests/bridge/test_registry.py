"""Tests for the conversation registry."""

from __future__ import annotations

import pytest

from threadrelay.bridge.models.enums import RunPhase
from threadrelay.bridge.models.session import SessionRecord
from threadrelay.bridge.registry import ConversationRegistry
from threadrelay.bridge.store import JsonSessionStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> JsonSessionStore:
    return JsonSessionStore(tmp_path)


@pytest.fixture
def registry(store, clock) -> ConversationRegistry:
    return ConversationRegistry(store, idle_timeout=60.0, clock=clock)


async def test_create_and_get(registry, fakes) -> None:
    session = registry.create("t1", fakes.Thread("t1"), "/work")

    assert registry.get("t1") is session
    assert session.phase is RunPhase.IDLE
    assert session.remote_session_id is None
    assert registry.sessions() == [session]


async def test_restore_from_record(registry, fakes) -> None:
    record = SessionRecord(remote_session_id="sess-1", cost=0.3, working_dir="/repo")
    session = registry.restore("t1", fakes.Thread("t1"), record)

    assert session.remote_session_id == "sess-1"
    assert session.cost == 0.3
    assert session.working_dir == "/repo"


async def test_remote_session_id_is_persisted(registry, store, fakes) -> None:
    session = registry.create("t1", fakes.Thread("t1"), "/work")
    await registry.set_remote_session_id(session, "sess-1")
    await registry.add_cost(session, 0.2)

    record = await store.get("t1")
    assert record == SessionRecord(remote_session_id="sess-1", cost=0.2, working_dir="/work")
    assert session.cost == pytest.approx(0.2)


async def test_clear_remote_session_id(registry, store, fakes) -> None:
    session = registry.create("t1", fakes.Thread("t1"), "/work")
    await registry.set_remote_session_id(session, "sess-1")
    session.context.tokens = 500

    await registry.clear_remote_session_id(session)

    assert session.remote_session_id is None
    assert session.context.tokens == 0
    assert await store.get("t1") is None


async def test_sweep_evicts_idle_but_keeps_record(registry, store, clock, fakes) -> None:
    idle = registry.create("idle", fakes.Thread("idle"), "/work")
    await registry.set_remote_session_id(idle, "sess-idle")
    clock.now += 30
    registry.create("fresh", fakes.Thread("fresh"), "/work")
    clock.now += 45

    assert registry.sweep() == ["idle"]
    assert registry.get("idle") is None
    assert registry.get("fresh") is not None
    assert await store.get("idle") is not None


async def test_touch_defers_eviction(registry, clock, fakes) -> None:
    registry.create("t1", fakes.Thread("t1"), "/work")
    clock.now += 50
    registry.touch("t1")
    clock.now += 50

    assert registry.sweep() == []


async def test_reset_keeps_session_attached(registry, store, fakes) -> None:
    session = registry.create("t1", fakes.Thread("t1"), "/work")
    await registry.set_remote_session_id(session, "sess-1")
    session.queue.append("pending")
    old_abort = session.abort

    assert await registry.reset("t1") is True

    assert registry.get("t1") is session
    assert session.remote_session_id is None
    assert not session.queue
    assert old_abort.aborted
    assert session.abort is not old_abort
    assert await store.get("t1") is None
    assert await registry.reset("missing") is False


async def test_delete_drops_session(registry, store, fakes) -> None:
    session = registry.create("t1", fakes.Thread("t1"), "/work")
    await registry.set_remote_session_id(session, "sess-1")

    assert await registry.delete("t1") is True
    assert registry.get("t1") is None
    assert await store.get("t1") is None


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


async def test_backgroundize_requires_busy_session(registry, fakes) -> None:
    registry.create("t1", fakes.Thread("t1"), "/work")
    assert registry.backgroundize("t1", "label") is None
    assert registry.backgroundize("missing", "label") is None


async def test_backgroundize_frees_thread(registry, fakes) -> None:
    session = registry.create("t1", fakes.Thread("t1"), "/work")
    session.phase = RunPhase.RUNNING
    session.remote_session_id = "sess-1"
    session.cost = 0.4

    task = registry.backgroundize("t1", "build the thing")

    assert task is not None
    assert task.id == 1
    assert task.label == "build the thing"
    assert session.is_background
    assert session.background_id == 1
    assert registry.get("t1") is None
    assert registry.background_tasks("t1") == [task]

    foreground = registry.create_foreground(task)
    assert foreground is not session
    assert registry.get("t1") is foreground
    assert foreground.remote_session_id == "sess-1"
    assert foreground.cost == 0.4
    assert not foreground.is_background


async def test_background_ids_increment_per_thread(registry, fakes) -> None:
    for expected in (1, 2):
        session = registry.create("t1", fakes.Thread("t1"), "/work")
        session.phase = RunPhase.RUNNING
        task = registry.backgroundize("t1", f"job {expected}")
        assert task is not None
        assert task.id == expected

    other = registry.create("t2", fakes.Thread("t2"), "/work")
    other.phase = RunPhase.RUNNING
    task = registry.backgroundize("t2", "other")
    assert task is not None
    assert task.id == 1


async def test_background_identity_is_not_persisted(registry, store, fakes) -> None:
    session = registry.create("t1", fakes.Thread("t1"), "/work")
    await registry.set_remote_session_id(session, "sess-fg")
    session.phase = RunPhase.RUNNING
    task = registry.backgroundize("t1", "job")
    assert task is not None

    await registry.set_remote_session_id(task.session, "sess-bg")

    assert task.session.remote_session_id == "sess-bg"
    record = await store.get("t1")
    assert record is not None
    assert record.remote_session_id == "sess-fg"


async def test_abort_background_tasks(registry, fakes) -> None:
    tasks = []
    for _ in range(3):
        session = registry.create("t1", fakes.Thread("t1"), "/work")
        session.phase = RunPhase.RUNNING
        tasks.append(registry.backgroundize("t1", "job"))

    second_abort = tasks[1].session.abort
    assert registry.abort_background_task("t1", 2) is True
    assert second_abort.aborted
    assert [t.id for t in registry.background_tasks("t1")] == [1, 3]
    assert registry.abort_background_task("t1", 2) is False

    assert registry.abort_all_background_tasks("t1") == 2
    assert registry.background_tasks("t1") == []


async def test_shutdown_cancels_everything(registry, fakes) -> None:
    registry.start()
    session = registry.create("t1", fakes.Thread("t1"), "/work")
    abort = session.abort

    await registry.shutdown()

    assert abort.aborted
    assert registry.sessions() == []
