"""Chat request / response schemas."""
from datetime import datetime
from typing import Literal
from pydantic import Field

from delisio.schemas.common import CamelModel, JobStatus


class ChatTurn(CamelModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=4000)


class ChatRequest(CamelModel):
    message: str = Field(..., min_length=1, max_length=2000)
    conversation_id: str | None = None
    message_history: list[ChatTurn] = Field(default_factory=list, max_length=20)
    wait: bool = True


class ChatReply(CamelModel):
    reply: str
    suggestions: list[str] | None = None
    conversation_id: str | None = None
    request_id: str | None = None
    error: str | None = None


class ChatJobAccepted(CamelModel):
    request_id: str
    status: JobStatus = JobStatus.QUEUED
    conversation_id: str | None = None


class ChatStatusResponse(CamelModel):
    request_id: str
    status: JobStatus
    reply: ChatReply | None = None
    error: str | None = None


class MessageOut(CamelModel):
    id: str
    role: str
    content: str
    suggestions: list[str] | None = None
    created_at: datetime


class ConversationOut(CamelModel):
    id: str
    title: str | None = None
    created_at: datetime
    updated_at: datetime
