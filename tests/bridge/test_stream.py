"""Tests for the live stream view: text flushing, status embed and tool cards."""

from __future__ import annotations

import asyncio

import pytest

from threadrelay.bridge.chat import DeliveryError
from threadrelay.bridge.execution.diffs import DiffStore, diff_id
from threadrelay.bridge.execution.stream import COMPACTION_NOTICE, StreamView
from threadrelay.bridge.models.events import (
    AssistantTurnEvent,
    BlockStopEvent,
    ToolInputDeltaEvent,
    ToolProgressEvent,
    ToolResultEvent,
    ToolUse,
    ToolUseStartEvent,
)


@pytest.fixture
def diff_store() -> DiffStore:
    return DiffStore()


@pytest.fixture
async def view(session, diff_store) -> StreamView:
    return StreamView(session, diff_store, edit_rate_ms=0, typing_interval=60.0)


def _cards(thread):
    return [m for m in thread.messages if m.embeds and "**" in m.description]


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


async def test_flush_sends_then_edits_live_message(view, thread) -> None:
    view.append_text("Hel")
    await asyncio.sleep(0.01)
    await view.wait_flush()
    assert thread.texts() == ["Hel"]

    view.append_text("lo")
    await asyncio.sleep(0.01)
    await view.wait_flush()
    assert thread.texts() == ["Hello"]
    assert len([m for m in thread.messages if m.content]) == 1


async def test_flush_rate_is_bounded(session, diff_store, thread) -> None:
    view = StreamView(session, diff_store, edit_rate_ms=1000, typing_interval=60.0)
    for _ in range(10):
        view.append_text("x")
        await asyncio.sleep(0.005)

    live = [m for m in thread.messages if m.content]
    assert len(live) == 1
    assert len(live[0].edits) == 0

    await view.finalize(next_status=False)
    assert live[0].content == "x" * 10


async def test_first_text_clears_status(view, thread) -> None:
    await view.send_status()
    status = thread.messages[0]
    assert status.description == "*Thinking...*"

    view.append_text("answer")
    await asyncio.sleep(0.01)
    await view.wait_flush()

    assert status.deleted
    assert thread.texts() == ["answer"]


async def test_full_assistant_text_is_authoritative(view, thread) -> None:
    view.append_text("partial previ")
    await view.on_assistant(AssistantTurnEvent(text="Complete answer."))

    assert thread.texts()[0] == "Complete answer."
    assert view.last_finalized == "Complete answer."
    assert view.accumulated == ""


async def test_repeated_assistant_text_does_not_duplicate(view, thread) -> None:
    await view.on_assistant(AssistantTurnEvent(text="Once."))
    await view.on_assistant(AssistantTurnEvent(text="Once."))

    assert thread.texts().count("Once.") == 1


async def test_long_text_is_split_on_finalize(view, thread) -> None:
    view.append_text(("word " * 500).strip())
    await view.finalize(next_status=False)

    texts = thread.texts()
    assert len(texts) == 2
    assert all(len(t) <= 1950 for t in texts)


async def test_deleted_live_message_is_replaced(view, thread) -> None:
    view.append_text("first")
    await asyncio.sleep(0.01)
    await view.wait_flush()
    thread.messages[-1].deleted = True

    view.append_text(" second")
    await view.finalize(next_status=False)

    assert thread.texts() == ["first second"]


async def test_failed_final_edit_keeps_message(view, thread) -> None:
    view.append_text("first")
    await asyncio.sleep(0.01)
    await view.wait_flush()
    live = thread.messages[-1]
    live.edit_error = DeliveryError("rate limited")

    view.append_text(" second")
    await view.finalize(next_status=False)

    assert [m.content for m in thread.messages if m.content] == ["first"]


LATENCY = 0.05


@pytest.fixture
def slow_thread(fakes):
    """A thread whose text sends and edits take ``LATENCY`` and are counted while in flight."""

    class SlowMessage(fakes.Message):
        owner = None

        async def edit(self, content=None, **kwargs) -> None:
            if content is None:
                await super().edit(content, **kwargs)
                return
            self.owner.in_flight += 1
            self.owner.peak = max(self.owner.peak, self.owner.in_flight)
            try:
                await asyncio.sleep(LATENCY)
                await super().edit(content, **kwargs)
            finally:
                self.owner.in_flight -= 1

    class SlowThread(fakes.Thread):
        in_flight = 0
        peak = 0
        fail_first_text = False

        async def send(self, content=None, **kwargs):
            if content is None:
                return await super().send(content, **kwargs)
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            try:
                await asyncio.sleep(LATENCY)
                if self.fail_first_text:
                    self.fail_first_text = False
                    raise DeliveryError("transient")
                message = SlowMessage(content)
                message.owner = self
                self.messages.append(message)
                return message
            finally:
                self.in_flight -= 1

    return SlowThread("slow")


async def test_finalize_never_overlaps_a_timed_flush(service, slow_thread, workdir, diff_store) -> None:
    session = service.registry.create("slow", slow_thread, str(workdir))
    view = StreamView(session, diff_store, edit_rate_ms=20, typing_interval=60.0)

    view.append_text("a")
    await asyncio.sleep(0.01)
    view.append_text("b")
    await view.on_assistant(AssistantTurnEvent(text="ab"))
    await asyncio.sleep(2 * LATENCY)

    assert slow_thread.peak == 1
    assert slow_thread.texts() == ["ab"]
    await view.close()


async def test_failed_flush_does_not_duplicate_final_text(service, slow_thread, workdir, diff_store) -> None:
    session = service.registry.create("slow", slow_thread, str(workdir))
    view = StreamView(session, diff_store, edit_rate_ms=20, typing_interval=60.0)
    slow_thread.fail_first_text = True

    view.append_text("hello ")
    await asyncio.sleep(0.01)
    view.append_text("world")
    await view.on_assistant(AssistantTurnEvent(text="hello world"))
    await asyncio.sleep(2 * LATENCY)

    assert slow_thread.texts() == ["hello world"]
    await view.close()


async def test_finalize_reposts_status(view, thread) -> None:
    view.append_text("done")
    await view.finalize()

    assert thread.texts() == ["done"]
    assert thread.visible()[-1].description == "*Thinking...*"
    await view.close()
    assert [m.content for m in thread.visible()] == ["done"]


# ---------------------------------------------------------------------------
# Tool cards
# ---------------------------------------------------------------------------


async def test_streamed_tool_input_updates_card(view, thread) -> None:
    view.on_tool_start(ToolUseStartEvent(index=1, tool_use_id="tu1", name="Bash"))
    view.on_tool_input_delta(ToolInputDeltaEvent(index=1, partial_json='{"command": '))
    view.on_tool_input_delta(ToolInputDeltaEvent(index=1, partial_json='"ls -la"}'))
    view.on_block_stop(BlockStopEvent(index=1))
    await view.drain_ui()

    cards = _cards(thread)
    assert len(cards) == 1
    assert "`ls -la`" in cards[0].description
    assert view.tool_counts == {"Bash": 1}


async def test_card_is_created_once_per_tool_use(view, thread) -> None:
    view.on_tool_start(ToolUseStartEvent(index=0, tool_use_id="tu1", name="Read"))
    view.on_tool_use("Read", {"file_path": "notes.txt"}, "tu1")
    view.on_tool_progress(ToolProgressEvent(tool_use_id="tu1", tool_name="Read", elapsed_seconds=2.0))
    await view.drain_ui()

    assert len(_cards(thread)) == 1
    assert view.tool_counts == {"Read": 1}
    assert view.tool_log == [("Read", "")]


async def test_status_shows_tool_counts(view, thread) -> None:
    await view.send_status()
    view.on_tool_use("Read", {"file_path": "a.py"}, "tu1")
    view.on_tool_use("Read", {"file_path": "b.py"}, "tu2")
    view.on_tool_use("Bash", {"command": "make"}, "tu3")
    await view.drain_ui()

    status = thread.messages[0]
    assert status.embeds[0].description == "*Working...*"
    assert status.embeds[0].footer == "2 file reads · 1 command"


async def test_tool_result_marks_card_done(view, thread) -> None:
    view.on_tool_use("Bash", {"command": "pytest"}, "tu1")
    view.on_tool_result(ToolResultEvent(tool_use_id="tu1", content="3 passed"))
    await view.drain_ui()

    card = _cards(thread)[0]
    assert card.description.startswith("✅ **Bash**")
    assert "3 passed" in card.description


async def test_tool_error_marks_card_failed(view, thread) -> None:
    view.on_tool_use("Bash", {"command": "false"}, "tu1")
    view.on_tool_result(ToolResultEvent(tool_use_id="tu1", content="exit 1", is_error=True))
    await view.drain_ui()

    assert _cards(thread)[0].description.startswith("❌ **Bash**")


async def test_ephemeral_cards_are_swept_with_status(view, thread) -> None:
    await view.send_status()
    view.on_tool_use("Grep", {"pattern": "TODO"}, "tu1")
    await view.drain_ui()
    await view.clear_status()

    assert all(m.deleted for m in thread.messages)
    assert view.cards == {}


async def test_successful_edit_becomes_persistent_diff_card(view, thread, workdir, diff_store) -> None:
    path = str(workdir / "app.py")
    view.on_tool_use("Edit", {"file_path": path, "old_string": "a = 1", "new_string": "a = 2\nb = 3"}, "tu1")
    view.on_tool_result(ToolResultEvent(tool_use_id="tu1", content="ok"))
    await view.drain_ui()
    await view.clear_status()

    card = next(m for m in thread.messages if m.buttons)
    assert not card.deleted
    assert card.buttons[0].custom_id == diff_id("tu1")
    assert "`app.py`" in card.description
    assert "+2 added" in card.description
    assert diff_store.get(diff_id("tu1")) is not None


async def test_failed_edit_card_stays_ephemeral(view, thread, workdir) -> None:
    view.on_tool_use("Edit", {"file_path": str(workdir / "app.py"), "old_string": "x", "new_string": "y"}, "tu1")
    view.on_tool_result(ToolResultEvent(tool_use_id="tu1", content="old_string not found", is_error=True))
    await view.drain_ui()
    await view.clear_status()

    assert all(m.deleted for m in thread.messages)


async def test_card_send_failure_is_tolerated(view, thread) -> None:
    thread.fail_sends = True
    view.on_tool_use("Bash", {"command": "ls"}, "tu1")
    await view.drain_ui()

    assert "tu1" not in view.cards
    assert view.tool_counts == {"Bash": 1}


# ---------------------------------------------------------------------------
# Attachments and notices
# ---------------------------------------------------------------------------


async def test_assistant_images_are_attached(view, thread, workdir) -> None:
    chart = workdir / "chart.png"
    chart.write_bytes(b"png")
    written = workdir / "out.png"
    written.write_bytes(b"png")

    view.on_tool_use("Write", {"file_path": str(written), "content": "..."}, "tu1")
    await view.on_assistant(
        AssistantTurnEvent(text="See chart.png for details.", tool_uses=[ToolUse(id="tu1", name="Write")])
    )

    uploads = [m for m in thread.messages if m.files]
    assert len(uploads) == 1
    assert uploads[0].files == [str(chart), str(written)]
    assert view.image_files == []


async def test_compaction_notice(view, thread) -> None:
    await view.on_compaction()
    assert thread.texts() == [COMPACTION_NOTICE]


async def test_close_removes_ephemeral_ui(view, thread) -> None:
    await view.send_status()
    view.on_tool_use("Read", {"file_path": "x"}, "tu1")
    view.append_text("final words")
    await view.close()

    assert [m.content for m in thread.visible()] == ["final words"]
    assert thread.typing >= 1
