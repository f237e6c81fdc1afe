"""Wire frames exchanged between the client session and the agent server."""
from __future__ import annotations

import json
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_USER_ID = "guest"


class InboundMessage(BaseModel):
    """Client → server chat frame. ``message``/``text``/``content`` are aliases."""

    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    message: Optional[str] = None
    text: Optional[str] = None
    content: Optional[str] = None
    userId: str = Field(default=DEFAULT_USER_ID)

    @field_validator("userId", mode="before")
    @classmethod
    def _default_user(cls, v: Any) -> Any:
        if v is None:
            return DEFAULT_USER_ID
        return v if isinstance(v, str) else str(v)

    def resolved_text(self) -> str:
        for candidate in (self.message, self.text, self.content):
            if candidate is not None:
                return candidate
        return ""


class ChatReply(BaseModel):
    """Server → client assistant reply."""

    type: Literal["message"] = "message"
    text: str


class ConversationItem(BaseModel):
    role: Literal["user", "assistant"]
    text: str


class StateSync(BaseModel):
    """Server → client full conversation replace."""

    conversation: List[ConversationItem] = Field(default_factory=list)


class IdentityFrame(BaseModel):
    """Server → client handshake binding the socket to an agent instance."""

    type: Literal["identity"] = "identity"
    agent: str
    name: str


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    error: str


class ReplyResponse(BaseModel):
    reply: str


class ErrorResponse(BaseModel):
    error: str


def parse_inbound(raw: Any) -> InboundMessage:
    """Parse a frame or HTTP body; anything unparseable becomes an empty message."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return InboundMessage()
    if not isinstance(raw, dict):
        return InboundMessage()
    try:
        return InboundMessage.model_validate(raw)
    except ValidationError:
        return InboundMessage()
