"""Thread endpoints (RPC-style).

Thin HTTP adapter -- delegates to the relay service, the same command layer
the chat ``!commands`` use.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException, status

from threadrelay.bridge.context import ConversationSession
from threadrelay.bridge.deps import Service
from threadrelay.bridge.models.api import ActionResponse, BackgroundTaskResponse, ThreadResponse
from threadrelay.bridge.models.session import ContextUsage, CostReport

router = APIRouter(prefix="/threads", tags=["threads"])


def _not_found(thread_id: str) -> HTTPException:
    return HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Thread '{thread_id}' not found.")


def _to_response(service: Service, session: ConversationSession, now: float) -> ThreadResponse:
    return ThreadResponse(
        thread_id=session.thread_id,
        working_dir=session.working_dir,
        remote_session_id=session.remote_session_id,
        phase=session.phase,
        busy=session.busy,
        queued=len(session.queue),
        cost=session.cost,
        context_tokens=session.context.tokens,
        context_window=session.context.window,
        idle_seconds=max(0.0, now - session.last_activity),
        background_tasks=[
            BackgroundTaskResponse(id=t.id, label=t.label, started_at=t.started_at, phase=t.session.phase)
            for t in service.jobs(session.thread_id)
        ],
    )


@router.get("", response_model=list[ThreadResponse])
async def handle_list_threads(service: Service) -> list[ThreadResponse]:
    now = time.monotonic()
    return [_to_response(service, s, now) for s in service.registry.sessions()]


@router.post("/{thread_id}/reset", response_model=ActionResponse)
async def handle_reset_thread(thread_id: str, service: Service) -> ActionResponse:
    if not await service.reset(thread_id):
        raise _not_found(thread_id)
    return ActionResponse(thread_id=thread_id, ok=True)


@router.post("/{thread_id}/abort", response_model=ActionResponse)
async def handle_abort_thread(thread_id: str, service: Service) -> ActionResponse:
    if service.registry.get(thread_id) is None:
        raise _not_found(thread_id)
    return ActionResponse(thread_id=thread_id, ok=service.abort(thread_id))


@router.get("/{thread_id}/cost", response_model=CostReport)
async def handle_thread_cost(thread_id: str, service: Service) -> CostReport:
    report = await service.get_cost(thread_id)
    if report.thread_cost is None:
        raise _not_found(thread_id)
    return report


@router.get("/{thread_id}/context", response_model=ContextUsage)
async def handle_thread_context(thread_id: str, service: Service) -> ContextUsage:
    usage = service.get_context_usage(thread_id)
    if usage is None:
        raise _not_found(thread_id)
    return usage
