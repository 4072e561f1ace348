"""Chat endpoints.

``POST /chat`` queues a chat job and, by default, waits for the worker's
reply up to ``CHAT_RESPONSE_TIMEOUT_SECONDS``. With ``wait: false`` it
returns 202 and the client polls ``/chat/status/{requestId}``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from delisio.api.deps import get_db, get_services
from delisio.errors import GenerationTimeoutError, NotFoundError, PaymentRequiredError, UpstreamFailure
from delisio.models import ChatMessage, Conversation
from delisio.schemas.chat import (
    ChatJobAccepted,
    ChatReply,
    ChatRequest,
    ChatStatusResponse,
    ConversationOut,
    MessageOut,
)
from delisio.schemas.recipe import QueueStatusResponse
from delisio.services import subscription_service
from delisio.services.auth import TokenData, get_current_user, get_current_user_optional
from delisio.services.context import ServiceContext
from delisio.services.job_queue import JobState

router = APIRouter()
logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20


def _prepare_chat(services: ServiceContext, body: ChatRequest, user: TokenData | None) -> tuple[str, str | None]:
    """Check limits, record the user turn and queue the job. Returns (request_id, conversation_id)."""
    owner = user.user_id if user else None
    history = [t.model_dump() for t in body.message_history]
    conversation_id = body.conversation_id

    with services.session_factory() as db:
        if owner:
            if not subscription_service.can_use(db, owner, subscription_service.AI_CHAT_REPLY):
                raise PaymentRequiredError(
                    "You have reached your AI chat limit for this period. "
                    "Upgrade your plan to keep chatting.",
                    code="AI_REPLY_LIMIT_REACHED",
                )
            if conversation_id:
                conv = db.get(Conversation, conversation_id)
                if conv is None or conv.user_id != owner:
                    raise NotFoundError("Conversation not found")
                if not history:
                    rows = (
                        db.query(ChatMessage)
                        .filter(ChatMessage.conversation_id == conv.id)
                        .order_by(ChatMessage.created_at.desc())
                        .limit(HISTORY_LIMIT)
                        .all()
                    )
                    history = [{"role": m.role, "content": m.content} for m in reversed(rows)]
            else:
                conv = Conversation(user_id=owner, title=body.message[:80])
                db.add(conv)
                db.flush()
                conversation_id = conv.id
            db.add(ChatMessage(conversation_id=conversation_id, role="user", content=body.message))
            db.commit()
        else:
            conversation_id = None

    handle = services.queue.enqueue(
        "chat",
        {"message": body.message, "history": history, "conversation_id": conversation_id},
        owner_user_id=owner,
    )
    return handle.request_id, conversation_id


def _reply_from_state(state: JobState) -> ChatReply:
    result = state.result or {}
    return ChatReply(
        reply=result.get("reply", ""),
        suggestions=result.get("suggestions"),
        conversation_id=result.get("conversation_id"),
        request_id=state.request_id,
        error=result.get("error"),
    )


@router.post("", response_model=ChatReply)
async def chat(
    body: ChatRequest,
    user: Optional[TokenData] = Depends(get_current_user_optional),
    services: ServiceContext = Depends(get_services),
):
    request_id, conversation_id = await run_in_threadpool(_prepare_chat, services, body, user)

    if not body.wait:
        accepted = ChatJobAccepted(request_id=request_id, conversation_id=conversation_id)
        return JSONResponse(status_code=202, content=accepted.model_dump(by_alias=True, mode="json"))

    settings = services.settings
    deadline = time.monotonic() + settings.CHAT_RESPONSE_TIMEOUT_SECONDS
    while True:
        state = await run_in_threadpool(services.queue.get_state, request_id)
        if state is not None and state.status == "completed":
            return _reply_from_state(state)
        if state is not None and state.status == "failed":
            raise UpstreamFailure(state.error or "Chat generation failed", requestId=request_id)
        if state is not None and state.status == "cancelled":
            return ChatReply(
                reply="",
                conversation_id=conversation_id,
                request_id=request_id,
                error="Request was cancelled",
            )
        if time.monotonic() >= deadline:
            logger.warning("Chat job %s did not finish in time", request_id[:8])
            raise GenerationTimeoutError(
                "The assistant is taking too long to respond. Check the status later.",
                requestId=request_id,
            )
        await asyncio.sleep(settings.CHAT_POLL_INTERVAL_SECONDS)


@router.get("/status/{request_id}", response_model=ChatStatusResponse)
def chat_status(request_id: str, services: ServiceContext = Depends(get_services)):
    state = services.queue.get_state(request_id)
    if state is None or state.kind != "chat":
        raise NotFoundError("Chat request not found")
    resp = ChatStatusResponse(request_id=state.request_id, status=state.status)
    if state.status == "completed":
        resp.reply = _reply_from_state(state)
    elif state.status == "failed":
        resp.error = state.error or "Chat generation failed"
    return resp


@router.get("/queue-status", response_model=QueueStatusResponse)
def chat_queue_status(
    _: TokenData = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    return QueueStatusResponse(
        queue_configured=services.queue.dispatcher is not None,
        queue_connected=services.queue.dispatcher.ping(),
        counts=services.queue.counts("chat"),
    )


@router.get("/conversations", response_model=list[ConversationOut])
def list_conversations(
    user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return (
        db.query(Conversation)
        .filter(Conversation.user_id == user.user_id)
        .order_by(Conversation.updated_at.desc())
        .all()
    )


@router.get("/conversations/{conversation_id}/messages", response_model=list[MessageOut])
def list_messages(
    conversation_id: str,
    user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conv = db.get(Conversation, conversation_id)
    if conv is None or conv.user_id != user.user_id:
        raise NotFoundError("Conversation not found")
    return conv.messages
