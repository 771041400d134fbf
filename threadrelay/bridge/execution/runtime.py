"""Agent runtime interface and the claude-agent-sdk adapter.

The orchestrator only depends on ``AgentRuntime`` / ``AgentRun`` and the
event models in ``threadrelay.bridge.models.events``.  ``ClaudeAgentRuntime``
drives ``ClaudeSDKClient`` in streaming-input mode:

* the first user turn is the run's prompt, later turns are pulled from the
  session's handoff channel as they are pushed;
* every SDK message is mapped onto zero or more ``AgentEvent`` models;
* once each submitted user turn has produced its result, the handoff channel
  is closed and the run ends.

The SDK binds its internal task group to the task that connects, so a run's
``events()`` must be iterated (and closed) from a single task.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import defaultdict, deque
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny, StreamEvent

from threadrelay.bridge.channel import HandoffChannel
from threadrelay.bridge.models.enums import PermissionBehavior
from threadrelay.bridge.models.events import (
    AgentEvent,
    AssistantTurnEvent,
    BlockStopEvent,
    CompactionEvent,
    InitEvent,
    RunResultEvent,
    TextDeltaEvent,
    ToolInputDeltaEvent,
    ToolResultEvent,
    ToolUse,
    ToolUseStartEvent,
)
from threadrelay.bridge.models.permissions import PermissionDecision
from threadrelay.bridge.models.session import ModelInfo

logger = logging.getLogger(__name__)

PermissionHandler = Callable[[str, dict[str, Any], str | None], Awaitable[PermissionDecision]]

SETTING_SOURCES = ["user", "project", "local"]


# -- Interface -----------------------------------------------------------------


@dataclass
class RunRequest:
    """Everything needed to start one agent run."""

    prompt: str
    working_dir: str
    handoff: HandoffChannel[str]
    permission_handler: PermissionHandler
    resume: str | None = None
    model: str | None = None
    permission_mode: str | None = None
    max_turns: int | None = None
    env: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class AgentRun(Protocol):
    """One in-flight agent run."""

    def events(self) -> AsyncGenerator[AgentEvent, None]:
        """Ordered event stream.  Iterate from a single task."""
        ...

    def close(self) -> None:
        """Ask the run to stop.  Idempotent and non-blocking."""
        ...

    async def wait_closed(self) -> None:
        """Wait until the run has released its resources."""
        ...

    async def supported_models(self) -> list[ModelInfo]: ...


@runtime_checkable
class AgentRuntime(Protocol):
    def start(self, request: RunRequest) -> AgentRun: ...


# -- Message mapping -----------------------------------------------------------


def _result_errors(message: ResultMessage) -> list[str]:
    errors = getattr(message, "errors", None)
    if errors:
        return [str(e) for e in errors]
    if message.is_error and message.result:
        return [message.result]
    return []


def _context_tokens(usage: dict[str, Any] | None) -> int | None:
    if not usage:
        return None
    return (
        int(usage.get("input_tokens") or 0)
        + int(usage.get("cache_creation_input_tokens") or 0)
        + int(usage.get("cache_read_input_tokens") or 0)
    )


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(part.get("text", "")) for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return str(content)


def _stream_event(event: dict[str, Any]) -> list[AgentEvent]:
    kind = event.get("type")
    index = event.get("index", -1)
    if kind == "content_block_start":
        block = event.get("content_block") or {}
        if block.get("type") == "tool_use" and block.get("id") and block.get("name"):
            return [ToolUseStartEvent(index=index, tool_use_id=block["id"], name=block["name"])]
    elif kind == "content_block_delta":
        delta = event.get("delta") or {}
        if isinstance(delta.get("text"), str):
            return [TextDeltaEvent(index=index, text=delta["text"])]
        if isinstance(delta.get("partial_json"), str):
            return [ToolInputDeltaEvent(index=index, partial_json=delta["partial_json"])]
    elif kind == "content_block_stop":
        return [BlockStopEvent(index=index)]
    return []


def map_sdk_message(message: Any) -> list[AgentEvent]:
    """Translate one SDK message into bridge events."""
    if isinstance(message, StreamEvent):
        return _stream_event(message.event)

    if isinstance(message, SystemMessage):
        if message.subtype == "init":
            session_id = message.data.get("session_id")
            return [InitEvent(session_id=session_id, model=message.data.get("model"))] if session_id else []
        if message.subtype == "compact_boundary":
            metadata = message.data.get("compact_metadata") or {}
            return [CompactionEvent(pre_tokens=metadata.get("pre_tokens"))]
        return []

    if isinstance(message, AssistantMessage):
        text = "".join(b.text for b in message.content if isinstance(b, TextBlock))
        tool_uses = [
            ToolUse(id=b.id, name=b.name, input=b.input or {}) for b in message.content if isinstance(b, ToolUseBlock)
        ]
        return [AssistantTurnEvent(text=text, tool_uses=tool_uses)]

    if isinstance(message, UserMessage):
        if isinstance(message.content, str):
            return []
        return [
            ToolResultEvent(
                tool_use_id=b.tool_use_id,
                content=_tool_result_text(b.content),
                is_error=bool(b.is_error),
            )
            for b in message.content
            if isinstance(b, ToolResultBlock)
        ]

    if isinstance(message, ResultMessage):
        return [
            RunResultEvent(
                subtype=message.subtype,
                total_cost_usd=message.total_cost_usd or 0.0,
                num_turns=message.num_turns,
                errors=_result_errors(message),
                context_tokens=_context_tokens(message.usage),
            )
        ]

    return []


def to_sdk_permission(decision: PermissionDecision) -> PermissionResultAllow | PermissionResultDeny:
    if decision.behavior is PermissionBehavior.ALLOW:
        return PermissionResultAllow(updated_input=decision.updated_input)
    return PermissionResultDeny(message=decision.message, interrupt=decision.interrupt)


# -- Claude adapter ------------------------------------------------------------


class ClaudeAgentRun:
    """A run backed by one ``ClaudeSDKClient`` connection."""

    def __init__(self, request: RunRequest, options: ClaudeAgentOptions | None = None) -> None:
        self._request = request
        self.options = options or ClaudeAgentOptions()
        self._client: ClaudeSDKClient | None = None
        self._submitted = 1
        self._results = 0
        self._started = False
        self._closed = False
        self._released = asyncio.Event()
        # Tool-use ids seen in the stream, per tool name, for permission
        # callbacks whose context carries no id.
        self._pending_tool_ids: dict[str, deque[str]] = defaultdict(deque)
        self._seen_tool_ids: set[str] = set()
        self._remote_session_id = request.resume

    # -- Prompt stream ---------------------------------------------------------

    def _user_message(self, text: str) -> dict[str, Any]:
        return {
            "type": "user",
            "message": {"role": "user", "content": text},
            "parent_tool_use_id": None,
            "session_id": self._remote_session_id or "default",
        }

    async def _prompt_stream(self) -> AsyncIterator[dict[str, Any]]:
        yield self._user_message(self._request.prompt)
        async for text in self._request.handoff:
            self._submitted += 1
            logger.debug("Injecting user turn %d into running session", self._submitted)
            yield self._user_message(text)

    # -- Permission callback ---------------------------------------------------

    def _remember_tool_use(self, name: str, tool_use_id: str) -> None:
        if tool_use_id not in self._seen_tool_ids:
            self._seen_tool_ids.add(tool_use_id)
            self._pending_tool_ids[name].append(tool_use_id)

    async def can_use_tool(
        self, tool_name: str, tool_input: dict[str, Any], context: Any
    ) -> PermissionResultAllow | PermissionResultDeny:
        tool_use_id = getattr(context, "tool_use_id", None)
        pending = self._pending_tool_ids.get(tool_name)
        if tool_use_id is None and pending:
            tool_use_id = pending.popleft()
        elif tool_use_id is not None and pending and tool_use_id in pending:
            pending.remove(tool_use_id)
        decision = await self._request.permission_handler(tool_name, tool_input, tool_use_id)
        return to_sdk_permission(decision)

    # -- Events ----------------------------------------------------------------

    async def events(self) -> AsyncGenerator[AgentEvent, None]:
        if self._closed:
            self._released.set()
            return
        self._started = True
        client = ClaudeSDKClient(options=self.options)
        self._client = client
        try:
            await client.connect(prompt=self._prompt_stream())
            async for message in client.receive_messages():
                for event in map_sdk_message(message):
                    self._observe(event)
                    yield event
                if isinstance(message, ResultMessage):
                    self._results += 1
                    if self._results >= self._submitted:
                        self._request.handoff.close()
                        break
                if self._closed:
                    break
        finally:
            self._request.handoff.close()
            self._client = None
            try:
                await client.disconnect()
            except Exception:
                logger.debug("Error while disconnecting agent client", exc_info=True)
            finally:
                self._released.set()

    def _observe(self, event: AgentEvent) -> None:
        if isinstance(event, InitEvent):
            self._remote_session_id = event.session_id
        elif isinstance(event, ToolUseStartEvent):
            self._remember_tool_use(event.name, event.tool_use_id)
        elif isinstance(event, AssistantTurnEvent):
            for tool_use in event.tool_uses:
                self._remember_tool_use(tool_use.name, tool_use.id)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._request.handoff.close()
        if not self._started:
            self._released.set()

    async def wait_closed(self) -> None:
        await self._released.wait()

    async def supported_models(self) -> list[ModelInfo]:
        client = self._client
        if client is None:
            return []
        info = await client.get_server_info() or {}
        models = info.get("models") or []
        return [
            ModelInfo(
                value=str(m.get("value", "")),
                display_name=str(m.get("displayName") or m.get("display_name") or ""),
                description=str(m.get("description") or ""),
            )
            for m in models
            if isinstance(m, dict) and m.get("value")
        ]


class ClaudeAgentRuntime:
    """Starts runs against the Claude Code CLI through claude-agent-sdk."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        mcp_config: str | None = None,
        setting_sources: list[str] | None = None,
    ) -> None:
        self._api_key = api_key
        self._mcp_config = mcp_config
        self._setting_sources = setting_sources or SETTING_SOURCES
        # The CLI refuses to start when it believes it is nested in another session.
        os.environ.pop("CLAUDECODE", None)

    def _mcp_servers(self) -> dict[str, Any] | str | Path:
        if not self._mcp_config:
            return {}
        path = Path(self._mcp_config).expanduser()
        if not path.is_file():
            logger.warning("MCP config %s not found, starting without MCP servers", path)
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.exception("Failed to read MCP config %s", path)
            return {}
        return data.get("mcpServers", data) if isinstance(data, dict) else {}

    def build_options(self, request: RunRequest, run: ClaudeAgentRun | None = None) -> ClaudeAgentOptions:
        env = dict(request.env)
        if self._api_key:
            env["ANTHROPIC_API_KEY"] = self._api_key
        kwargs: dict[str, Any] = dict(
            cwd=request.working_dir,
            resume=request.resume,
            model=request.model,
            max_turns=request.max_turns,
            include_partial_messages=True,
            setting_sources=self._setting_sources,
            mcp_servers=self._mcp_servers(),
            env=env,
            stderr=lambda line: logger.debug("agent stderr: %s", line.rstrip()),
        )
        if request.permission_mode:
            kwargs["permission_mode"] = request.permission_mode
        if run is not None:
            kwargs["can_use_tool"] = run.can_use_tool
        return ClaudeAgentOptions(**kwargs)

    def start(self, request: RunRequest) -> ClaudeAgentRun:
        logger.info(
            "Starting agent run (%s, model=%s, cwd=%s)",
            f"resume={request.resume}" if request.resume else "new session",
            request.model or "default",
            request.working_dir,
        )
        run = ClaudeAgentRun(request)
        run.options = self.build_options(request, run)
        return run
