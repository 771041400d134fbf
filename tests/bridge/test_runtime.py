"""Tests for the claude-agent-sdk adapter.

No CLI is started: messages are built directly from the SDK's types.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import pytest
from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny, StreamEvent

from threadrelay.bridge.channel import HandoffChannel
from threadrelay.bridge.execution.runtime import (
    ClaudeAgentRun,
    ClaudeAgentRuntime,
    RunRequest,
    map_sdk_message,
    to_sdk_permission,
)
from threadrelay.bridge.models.events import (
    AssistantTurnEvent,
    BlockStopEvent,
    CompactionEvent,
    InitEvent,
    RunResultEvent,
    TextDeltaEvent,
    ToolInputDeltaEvent,
    ToolResultEvent,
    ToolUseStartEvent,
)
from threadrelay.bridge.models.permissions import PermissionAllow, PermissionDeny


def _stream(event: dict[str, Any]) -> StreamEvent:
    return StreamEvent(uuid="u1", session_id="s1", event=event)


def _result(**overrides: Any) -> ResultMessage:
    fields: dict[str, Any] = dict(
        subtype="success",
        duration_ms=1200,
        duration_api_ms=1000,
        is_error=False,
        num_turns=3,
        session_id="s1",
        total_cost_usd=0.0123,
        usage={"input_tokens": 100, "cache_creation_input_tokens": 20, "cache_read_input_tokens": 5000},
        result="done",
    )
    fields.update(overrides)
    return ResultMessage(**fields)


# ---------------------------------------------------------------------------
# Message mapping
# ---------------------------------------------------------------------------


def test_init_message() -> None:
    events = map_sdk_message(SystemMessage(subtype="init", data={"session_id": "s1", "model": "opus"}))
    assert events == [InitEvent(session_id="s1", model="opus")]


def test_init_without_session_is_dropped() -> None:
    assert map_sdk_message(SystemMessage(subtype="init", data={})) == []


def test_compaction_boundary() -> None:
    message = SystemMessage(subtype="compact_boundary", data={"compact_metadata": {"pre_tokens": 150000}})
    assert map_sdk_message(message) == [CompactionEvent(pre_tokens=150000)]


def test_stream_events() -> None:
    start = _stream(
        {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu1", "name": "Bash"}}
    )
    assert map_sdk_message(start) == [ToolUseStartEvent(index=1, tool_use_id="tu1", name="Bash")]

    text = _stream({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}})
    assert map_sdk_message(text) == [TextDeltaEvent(index=0, text="Hi")]

    partial = _stream(
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"a"'}}
    )
    assert map_sdk_message(partial) == [ToolInputDeltaEvent(index=1, partial_json='{"a"')]

    assert map_sdk_message(_stream({"type": "content_block_stop", "index": 1})) == [BlockStopEvent(index=1)]
    assert map_sdk_message(_stream({"type": "message_start"})) == []


def test_assistant_message() -> None:
    message = AssistantMessage(
        content=[
            TextBlock(text="Let me look. "),
            ToolUseBlock(id="tu1", name="Read", input={"file_path": "a.py"}),
            TextBlock(text="Done."),
        ],
        model="opus",
    )
    [event] = map_sdk_message(message)

    assert isinstance(event, AssistantTurnEvent)
    assert event.text == "Let me look. Done."
    assert [(t.id, t.name, t.input) for t in event.tool_uses] == [("tu1", "Read", {"file_path": "a.py"})]


def test_tool_results() -> None:
    message = UserMessage(
        content=[
            ToolResultBlock(tool_use_id="tu1", content="ok", is_error=False),
            ToolResultBlock(tool_use_id="tu2", content=[{"type": "text", "text": "boom"}], is_error=True),
        ]
    )
    assert map_sdk_message(message) == [
        ToolResultEvent(tool_use_id="tu1", content="ok"),
        ToolResultEvent(tool_use_id="tu2", content="boom", is_error=True),
    ]
    assert map_sdk_message(UserMessage(content="plain prompt echo")) == []


def test_result_message() -> None:
    [event] = map_sdk_message(_result())

    assert event == RunResultEvent(subtype="success", total_cost_usd=0.0123, num_turns=3, context_tokens=5120)


def test_error_result_carries_message() -> None:
    [event] = map_sdk_message(_result(subtype="error_during_execution", is_error=True, result="crashed", usage=None))

    assert event.errors == ["crashed"]
    assert event.context_tokens is None


def test_unknown_messages_are_ignored() -> None:
    assert map_sdk_message(object()) == []
    assert map_sdk_message(SystemMessage(subtype="status", data={})) == []


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def test_to_sdk_permission() -> None:
    allow = to_sdk_permission(PermissionAllow(updated_input={"a": 1}))
    assert isinstance(allow, PermissionResultAllow)
    assert allow.updated_input == {"a": 1}

    deny = to_sdk_permission(PermissionDeny(message="no", interrupt=True))
    assert isinstance(deny, PermissionResultDeny)
    assert (deny.message, deny.interrupt) == ("no", True)


@pytest.fixture
def calls() -> list[tuple[str, dict[str, Any], str | None]]:
    return []


@pytest.fixture
def request_(calls) -> RunRequest:
    async def handler(name: str, tool_input: dict[str, Any], tool_use_id: str | None) -> PermissionAllow:
        calls.append((name, tool_input, tool_use_id))
        return PermissionAllow(updated_input=tool_input)

    return RunRequest(prompt="hi", working_dir="/work", handoff=HandoffChannel(), permission_handler=handler)


async def test_can_use_tool_recovers_tool_use_id(request_, calls) -> None:
    run = ClaudeAgentRun(request_)
    run._observe(ToolUseStartEvent(index=1, tool_use_id="tu1", name="Bash"))
    run._observe(AssistantTurnEvent(tool_uses=[{"id": "tu1", "name": "Bash"}, {"id": "tu2", "name": "Bash"}]))

    first = await run.can_use_tool("Bash", {"command": "ls"}, SimpleNamespace(tool_use_id=None))
    second = await run.can_use_tool("Bash", {"command": "pwd"}, SimpleNamespace())

    assert isinstance(first, PermissionResultAllow)
    assert isinstance(second, PermissionResultAllow)
    assert [c[2] for c in calls] == ["tu1", "tu2"]


async def test_close_before_start_releases(request_) -> None:
    run = ClaudeAgentRun(request_)
    run.close()
    run.close()

    await run.wait_closed()
    assert request_.handoff.closed
    assert [event async for event in run.events()] == []
    assert await run.supported_models() == []


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


def test_build_options(request_, tmp_path) -> None:
    mcp = tmp_path / "mcp.json"
    mcp.write_text(json.dumps({"mcpServers": {"fs": {"command": "fs-server"}}}), encoding="utf-8")
    runtime = ClaudeAgentRuntime(api_key="sk-test", mcp_config=str(mcp))
    request_.resume = "s1"
    request_.model = "opus"
    request_.permission_mode = "plan"

    run = runtime.start(request_)
    options = run.options

    assert options.cwd == "/work"
    assert options.resume == "s1"
    assert options.model == "opus"
    assert options.permission_mode == "plan"
    assert options.include_partial_messages is True
    assert options.env["ANTHROPIC_API_KEY"] == "sk-test"
    assert options.mcp_servers == {"fs": {"command": "fs-server"}}
    assert options.can_use_tool == run.can_use_tool


def test_missing_mcp_config_is_ignored(request_, tmp_path) -> None:
    runtime = ClaudeAgentRuntime(mcp_config=str(tmp_path / "absent.json"))
    options = runtime.build_options(request_)

    assert options.mcp_servers == {}
    assert "ANTHROPIC_API_KEY" not in options.env
