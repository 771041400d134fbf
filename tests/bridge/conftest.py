"""Fake chat and runtime collaborators for bridge tests.

The fakes record everything the bridge does to them so tests can assert on
the resulting chat state instead of on call sequences.  ``FakeRuntime`` plays
back scripted runs: each step is an ``AgentEvent`` (yielded), an exception
(raised) or an async callable taking the run (awaited; a returned list of
events is yielded).
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel

from threadrelay.bridge.app import app
from threadrelay.bridge.chat import Button, DeliveryError, Embed, MessageDeletedError
from threadrelay.bridge.context import ConversationSession
from threadrelay.bridge.execution.runtime import RunRequest
from threadrelay.bridge.models.events import RunResultEvent
from threadrelay.bridge.models.session import ModelInfo
from threadrelay.bridge.service import RelayService
from threadrelay.bridge.settings import RelaySettings

_ids = itertools.count(1)


# ---------------------------------------------------------------------------
# Chat fakes
# ---------------------------------------------------------------------------


class FakeMessage:
    def __init__(
        self,
        content: str | None = None,
        *,
        embeds: Sequence[Embed] | None = None,
        buttons: Sequence[Button] | None = None,
        files: Sequence[str] | None = None,
    ) -> None:
        self.id = f"m{next(_ids)}"
        self.content = content
        self.embeds = list(embeds or [])
        self.buttons = list(buttons or [])
        self.files = list(files or [])
        self.edits: list[str | None] = []
        self.deleted = False
        self.edit_error: DeliveryError | None = None

    async def edit(
        self,
        content: str | None = None,
        *,
        embeds: Sequence[Embed] | None = None,
        buttons: Sequence[Button] | None = None,
    ) -> None:
        if self.deleted:
            raise MessageDeletedError(self.id)
        if self.edit_error is not None:
            raise self.edit_error
        if content is not None:
            self.content = content
        if embeds is not None:
            self.embeds = list(embeds)
        if buttons is not None:
            self.buttons = list(buttons)
        self.edits.append(content)

    async def delete(self) -> None:
        self.deleted = True

    @property
    def description(self) -> str:
        return self.embeds[0].description or "" if self.embeds else ""


class FakeThread:
    def __init__(self, thread_id: str = "t1", name: str = "") -> None:
        self.id = thread_id
        self.name = name
        self.messages: list[FakeMessage] = []
        self.typing = 0
        self.fail_sends = False

    async def send(
        self,
        content: str | None = None,
        *,
        embeds: Sequence[Embed] | None = None,
        buttons: Sequence[Button] | None = None,
    ) -> FakeMessage:
        if self.fail_sends:
            raise DeliveryError("send failed")
        message = FakeMessage(content, embeds=embeds, buttons=buttons)
        self.messages.append(message)
        return message

    async def send_files(self, paths: Sequence[str], content: str | None = None) -> FakeMessage:
        message = FakeMessage(content, files=paths)
        self.messages.append(message)
        return message

    async def send_typing(self) -> None:
        self.typing += 1

    # -- Inspection ------------------------------------------------------------

    def visible(self) -> list[FakeMessage]:
        return [m for m in self.messages if not m.deleted]

    def texts(self) -> list[str]:
        """Content of every message still in the thread."""
        return [m.content for m in self.visible() if m.content]

    def all_texts(self) -> str:
        """Everything ever posted as text, deleted or not, newline-joined."""
        return "\n".join(m.content for m in self.messages if m.content)


@dataclass
class FakeAttachment:
    filename: str
    url: str


class FakeChannel:
    def __init__(self, name: str = "claude") -> None:
        self.name = name
        self.threads: list[FakeThread] = []

    async def create_thread(self, name: str, starter: Any) -> FakeThread:
        thread = FakeThread(f"thread-{next(_ids)}", name=name)
        self.threads.append(thread)
        return thread


class FakeInbound:
    def __init__(
        self,
        content: str,
        *,
        thread: FakeThread | None = None,
        channel: FakeChannel | None = None,
        attachments: Sequence[FakeAttachment] = (),
        author_is_bot: bool = False,
    ) -> None:
        self.id = f"in{next(_ids)}"
        self.content = content
        self.thread = thread
        self.channel = channel
        self.attachments = list(attachments)
        self.author_is_bot = author_is_bot
        self.replies: list[FakeMessage] = []
        self.deleted = False

    async def reply(self, content: str) -> FakeMessage:
        message = FakeMessage(content)
        self.replies.append(message)
        return message

    async def delete(self) -> None:
        self.deleted = True

    @property
    def reply_texts(self) -> list[str]:
        return [m.content or "" for m in self.replies]


class FakeInteraction:
    def __init__(self, custom_id: str) -> None:
        self.custom_id = custom_id
        self.updates: list[dict[str, Any]] = []
        self.replies: list[tuple[str, bool]] = []
        self.follow_ups: list[str] = []

    async def update(
        self,
        content: str | None = None,
        *,
        embeds: Sequence[Embed] | None = None,
        buttons: Sequence[Button] | None = None,
    ) -> None:
        self.updates.append({"content": content, "embeds": embeds, "buttons": buttons})

    async def reply(self, content: str, *, ephemeral: bool = False) -> None:
        self.replies.append((content, ephemeral))

    async def follow_up(self, content: str, *, ephemeral: bool = False) -> None:
        self.follow_ups.append(content)


# ---------------------------------------------------------------------------
# Runtime fakes
# ---------------------------------------------------------------------------


class FakeRun:
    def __init__(self, request: RunRequest, script: list[Any], models: list[ModelInfo]) -> None:
        self.request = request
        self.script = script
        self.models = models
        self.injected: list[str] = []
        self.decisions: list[Any] = []
        self.ready = asyncio.Event()
        self.closed = False
        self.released = False

    async def events(self) -> AsyncIterator[Any]:
        try:
            for step in self.script:
                if isinstance(step, BaseException):
                    raise step
                if isinstance(step, BaseModel):
                    yield step
                    continue
                result = await step(self)
                if isinstance(result, list):
                    for event in result:
                        yield event
        finally:
            self.released = True

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    async def supported_models(self) -> list[ModelInfo]:
        return list(self.models)

    # -- Step helpers ----------------------------------------------------------

    async def ask(self, tool_name: str, tool_input: dict[str, Any], tool_use_id: str | None = None) -> Any:
        """Route a tool call through the run's permission handler."""
        decision = await self.request.permission_handler(tool_name, tool_input, tool_use_id)
        self.decisions.append(decision)
        return decision

    async def next_injected(self) -> str:
        item = await self.request.handoff.__anext__()
        self.injected.append(item)
        return item

    async def hang(self) -> None:
        """Signal ``ready`` and block until cancelled."""
        self.ready.set()
        await asyncio.Event().wait()


class FakeRuntime:
    def __init__(self) -> None:
        self.scripts: deque[list[Any]] = deque()
        self.runs: list[FakeRun] = []
        self.models = [
            ModelInfo(value="default", display_name="Default", description="Recommended"),
            ModelInfo(value="opus", display_name="Opus"),
        ]

    def queue(self, *steps: Any) -> None:
        """Script the next run.  Unscripted runs just succeed."""
        self.scripts.append(list(steps))

    def start(self, request: RunRequest) -> FakeRun:
        script = self.scripts.popleft() if self.scripts else [RunResultEvent()]
        run = FakeRun(request, script, self.models)
        self.runs.append(run)
        return run

    @property
    def prompts(self) -> list[str]:
        return [run.request.prompt for run in self.runs]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, workdir: Path) -> RelaySettings:
    return RelaySettings(
        data_root=str(tmp_path / "data"),
        working_dir=str(workdir),
        watch_channel="claude",
        agent_config_dir=str(tmp_path / "agent"),
        edit_rate_ms=0,
        typing_interval_seconds=60.0,
        stop_grace_seconds=1.0,
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
async def service(settings: RelaySettings, runtime: FakeRuntime) -> AsyncIterator[RelayService]:
    svc = RelayService(settings, runtime=runtime)
    yield svc
    await svc.shutdown()


@pytest.fixture
def thread() -> FakeThread:
    return FakeThread("t1")


@pytest.fixture
def session(service: RelayService, thread: FakeThread, workdir: Path) -> ConversationSession:
    return service.registry.create("t1", thread, str(workdir))


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll *predicate* on the event loop until it holds (or fail)."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def fakes() -> Any:
    """Namespace of the fake classes, for tests that build their own."""

    class _Fakes:
        Message = FakeMessage
        Thread = FakeThread
        Channel = FakeChannel
        Inbound = FakeInbound
        Attachment = FakeAttachment
        Interaction = FakeInteraction

    return _Fakes


@pytest.fixture
async def client(service: RelayService) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app with the test service.

    The app lifespan does NOT run under ``ASGITransport``, so state fields
    are pre-set here.
    """
    app.state.service = service
    app.state.gateway = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.service = None
