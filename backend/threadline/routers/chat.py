"""
Chat routes with streaming support.

Generations run independently of the HTTP response: a client that drops the
connection can pick the stream up again through the resume endpoint.
"""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from typing import AsyncIterator, Optional
import logging

import openai

from ..errors import classify_exception
from ..schemas.conversation import ThreadView
from ..schemas.message import (
    CancelResponse,
    ChatRequest,
    RetryRequest,
    StopRequest,
    StreamChunk,
)
from ..schemas.quota import Identity, QuotaResponse
from ..services.chat_controller import ChatController
from ..services.stream_session import SessionHandle
from ..utils.security import get_identity


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no"
}


def get_controller(request: Request) -> ChatController:
    return request.app.state.controller


async def stream_frames(handle: SessionHandle) -> AsyncIterator[str]:
    """SSE frames for a session: a session header, one frame per delta, a final frame."""
    yield StreamChunk(
        type="session",
        seq=handle.cursor,
        thread_id=handle.thread_id,
        stream_id=handle.stream_id,
        message_id=handle.message_id,
        message=handle.snapshot,
    ).to_sse()

    session = handle.session
    async for delta in handle.deltas():
        yield StreamChunk(
            type=delta.type.value,
            seq=delta.seq,
            phase=session.phase_at(delta.seq).value,
            delta=delta,
        ).to_sse()

    final_message = await handle.wait()
    error = session.error.user_message if session is not None and session.error else None
    yield StreamChunk(
        type="final",
        thread_id=handle.thread_id,
        stream_id=handle.stream_id,
        message_id=handle.message_id,
        message=final_message,
        unsaved_content=session.unsaved_content if session is not None else None,
        error=error,
    ).to_sse()


def sse_response(handle: SessionHandle) -> StreamingResponse:
    return StreamingResponse(
        stream_frames(handle),
        media_type="text/event-stream",
        headers=SSE_HEADERS
    )


@router.get("/models")
async def list_models(request: Request, identity: Identity = Depends(get_identity)):
    """List available LLM models from the configured API."""
    try:
        models = await request.app.state.llm.list_models()
    except openai.APIError as e:
        raise classify_exception(e)
    return {"models": models}


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    identity: Identity = Depends(get_identity),
    controller: ChatController = Depends(get_controller)
):
    """Current usage against the caller's quota window."""
    usage = await controller.usage(identity)
    return QuotaResponse(
        used=usage.used,
        limit=usage.limit,
        remaining=usage.remaining,
        reset_at=usage.reset_at,
        can_send=usage.can_send,
    )


@router.post("")
async def send_message(
    chat_request: ChatRequest,
    identity: Identity = Depends(get_identity),
    controller: ChatController = Depends(get_controller)
):
    """Send a message and stream the answer as server-sent events."""
    handle = await controller.send(
        identity,
        chat_request.content,
        thread_id=chat_request.thread_id,
        attachments=chat_request.attachments,
        options=chat_request.options,
    )
    return sse_response(handle)


@router.post("/{thread_id}/stop", response_model=CancelResponse)
async def stop_generation(
    thread_id: str,
    stop_request: Optional[StopRequest] = None,
    identity: Identity = Depends(get_identity),
    controller: ChatController = Depends(get_controller)
):
    """Stop the running generation, saving what was produced unless told otherwise."""
    persist_partial = stop_request.persist_partial if stop_request else True
    result = await controller.stop(identity, thread_id, persist_partial=persist_partial)
    return CancelResponse(
        saved=result.saved,
        already_finished=result.already_finished,
        message=result.message,
        unsaved_content=result.unsaved_content,
    )


@router.post("/{thread_id}/retry")
async def retry_generation(
    thread_id: str,
    retry_request: Optional[RetryRequest] = None,
    identity: Identity = Depends(get_identity),
    controller: ChatController = Depends(get_controller)
):
    """Replace the last answer with a fresh generation."""
    options = retry_request.options if retry_request else None
    handle = await controller.retry(identity, thread_id, options=options)
    return sse_response(handle)


@router.get("/{thread_id}/resume")
async def resume_generation(
    thread_id: str,
    stream_id: Optional[str] = Query(default=None),
    after: Optional[int] = Query(default=None, ge=0),
    identity: Identity = Depends(get_identity),
    controller: ChatController = Depends(get_controller)
):
    """Re-attach to a generation; a finished one yields only its final frame."""
    handle = await controller.resume(identity, thread_id, stream_id=stream_id, after=after)
    return sse_response(handle)


@router.get("/{thread_id}/messages", response_model=ThreadView)
async def get_messages(
    thread_id: str,
    before: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    identity: Identity = Depends(get_identity),
    controller: ChatController = Depends(get_controller)
):
    """Reconciled message list plus the live generation phase."""
    return await controller.view(identity, thread_id, before=before, limit=limit)
