from __future__ import annotations

import asyncio
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Body, Path

from flowguard.api.schemas import (
    MAX_THREAD_ID_LENGTH,
    Envelope,
    InterruptPayloadResponse,
    ResumeRequest,
    ResumeResponse,
    ThreadInitRequest,
    ThreadInitResponse,
    ThreadListResponse,
    ThreadResponse,
)
from flowguard.logging import get_logger
from flowguard.service.errors import NotFoundError
from flowguard.service.interrupts import InterruptPayload, ResumeInput
from flowguard.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ThreadId = Annotated[
    str,
    Path(..., min_length=1, max_length=MAX_THREAD_ID_LENGTH, description="Workflow thread id"),
]


def _payload_response(payload: Optional[InterruptPayload]) -> Optional[InterruptPayloadResponse]:
    if payload is None:
        return None
    return InterruptPayloadResponse(**payload.to_dict())


@router.post("/threads/{thread_id}/init", response_model=Envelope, tags=["threads"])
async def init_thread(
    thread_id: ThreadId,
    body: Optional[ThreadInitRequest] = Body(default=None),
):
    """Start a new thread or report the checkpointed state to continue from."""

    runtime = get_runtime()
    result = await runtime.orchestrator.init_or_resume(
        thread_id, user_id=body.user_id if body else None
    )
    data = ThreadInitResponse(
        is_new=result.is_new,
        thread_id=result.thread_id,
        state=result.state,
        version=result.checkpoint.version if result.checkpoint else None,
        persisted=runtime.store.persisted,
    )
    return Envelope(status="ok", data=data.model_dump())


@router.get("/threads", response_model=Envelope, tags=["threads"])
async def list_threads():
    runtime = get_runtime()
    items = await asyncio.to_thread(runtime.store.list)
    return Envelope(status="ok", data=ThreadListResponse(items=items).model_dump())


def _thread_view(runtime, thread_id: str) -> ThreadResponse:
    thread = runtime.orchestrator.get_thread(thread_id)
    checkpoint = runtime.store.get(thread_id)
    session = runtime.store.get_session(thread_id)
    metadata: Dict[str, Any] = checkpoint.metadata.to_dict() if checkpoint else {}
    return ThreadResponse(
        thread_id=thread.thread_id,
        status=thread.status.value,
        current_checkpoint_version=thread.current_checkpoint_version,
        state=checkpoint.state if checkpoint else None,
        metadata=metadata,
        versions=runtime.store.list_versions(thread_id),
        pending_interrupt=_payload_response(runtime.interrupts.pending(thread_id)),
        user_id=session.user_id if session else None,
        component=session.component if session else None,
        start_time=session.start_time.isoformat() if session else None,
        last_activity=session.last_activity.isoformat() if session else None,
    )


@router.get("/threads/{thread_id}", response_model=Envelope, tags=["threads"])
async def get_thread(thread_id: ThreadId):
    """Current checkpoint, status and audit versions of a thread."""

    runtime = get_runtime()
    data = await asyncio.to_thread(_thread_view, runtime, thread_id)
    return Envelope(status="ok", data=data.model_dump())


@router.get("/threads/{thread_id}/interrupt", response_model=Envelope, tags=["interrupts"])
async def get_pending_interrupt(thread_id: ThreadId):
    runtime = get_runtime()
    payload = await asyncio.to_thread(runtime.interrupts.pending, thread_id)
    if payload is None:
        raise NotFoundError("no pending interrupt", detail={"thread_id": thread_id})
    return Envelope(status="ok", data=_payload_response(payload).model_dump())


@router.post("/threads/{thread_id}/resume", response_model=Envelope, tags=["interrupts"])
async def resume_thread(body: ResumeRequest, thread_id: ThreadId):
    """Answer the pending interrupt of a thread.

    Raises:
        409: If nothing is pending or the interrupt was already answered
    """
    runtime = get_runtime()
    decision = await runtime.orchestrator.resume_with_input(
        thread_id, ResumeInput(action=body.action, feedback=body.feedback)
    )
    data = ResumeResponse(
        thread_id=thread_id,
        intent=decision.intent.value,
        next_step=decision.next_step,
        feedback=decision.feedback,
        state=decision.state,
        reinterrupted=decision.reinterrupted,
        follow_up=_payload_response(decision.follow_up),
    )
    return Envelope(status="ok", data=data.model_dump())


@router.delete("/threads/{thread_id}", response_model=Envelope, tags=["threads"])
async def delete_thread(thread_id: ThreadId):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.store.delete, thread_id)
    runtime.orchestrator.forget(thread_id)
    logger.info("thread_deleted_via_api", thread_id=thread_id)
    return Envelope(status="ok", data={"thread_id": thread_id, "deleted": True})
