from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from ...domain.models import AuthSession, ChatMessage, ChatReply, ChatRequest
from ...security.auth import get_optional_session
from ...security.tokens import TokenAuthority, get_token_authority
from ...services.channel import MessageChannel, ReplyHandle, get_message_channel, resolve_authorization
from ...services.delivery import DeliverySession, StreamingDeliveryEngine, get_delivery_engine, sse_frame

router = APIRouter(prefix="/chatbots", tags=["chat"])

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _submit(
    authority: TokenAuthority,
    channel: MessageChannel,
    session: Optional[AuthSession],
    chatbot_id: int,
    req: ChatRequest,
) -> ReplyHandle:
    # Blocking database work; callers run it in the threadpool.
    authorization = resolve_authorization(authority, session, req.token)
    return channel.submit(authorization, chatbot_id, req.message)


def _event_stream(delivery: DeliverySession) -> StreamingResponse:
    async def frames():
        async for event in delivery:
            yield sse_frame(event)

    return StreamingResponse(frames(), media_type="text/event-stream", headers=_SSE_HEADERS)


@router.post("/{chatbot_id}/chat", response_model=None)
async def chat(
    chatbot_id: int,
    req: ChatRequest,
    session: Optional[AuthSession] = Depends(get_optional_session),
    authority: TokenAuthority = Depends(get_token_authority),
    channel: MessageChannel = Depends(get_message_channel),
    engine: StreamingDeliveryEngine = Depends(get_delivery_engine),
):
    """Send a message. Buffered mode answers with JSON, streaming modes with SSE."""

    handle = await run_in_threadpool(_submit, authority, channel, session, chatbot_id, req)
    mode = req.mode or engine.config.default_mode
    delivery = engine.deliver(handle, mode)
    if mode == "buffered":
        bot_message = await delivery.reply()
        return ChatReply(user_message=handle.user_message, bot_message=bot_message)
    return _event_stream(delivery)


@router.post("/{chatbot_id}/stream")
async def stream(
    chatbot_id: int,
    req: ChatRequest,
    session: Optional[AuthSession] = Depends(get_optional_session),
    authority: TokenAuthority = Depends(get_token_authority),
    channel: MessageChannel = Depends(get_message_channel),
    engine: StreamingDeliveryEngine = Depends(get_delivery_engine),
) -> StreamingResponse:
    handle = await run_in_threadpool(_submit, authority, channel, session, chatbot_id, req)
    return _event_stream(engine.deliver(handle, "true-stream"))


@router.get("/{chatbot_id}/messages", response_model=List[ChatMessage])
def list_messages(
    chatbot_id: int,
    token: Optional[str] = Query(default=None),
    session: Optional[AuthSession] = Depends(get_optional_session),
    authority: TokenAuthority = Depends(get_token_authority),
    channel: MessageChannel = Depends(get_message_channel),
) -> List[ChatMessage]:
    authorization = resolve_authorization(authority, session, token)
    return channel.transcript(authorization, chatbot_id)
