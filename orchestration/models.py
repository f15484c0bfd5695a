"""
Conversation data model.

Messages are immutable once written; a Conversation only ever grows.
"""
from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

GUARDRAIL_RESPONDER = "guardrail"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnSource(str, Enum):
    """Where a queue item came from."""
    INITIAL = "initial"
    VOICE_TRANSCRIPTION = "voice_transcription"


@dataclass(frozen=True)
class Message:
    id: str
    role: Role
    content: str
    responder: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }
        if self.responder:
            result["responder"] = self.responder
        return result


@dataclass
class Conversation:
    id: str
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    messages: List[Message] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at.isoformat(),
            "sessionId": self.session_id,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class Attachment:
    """An uploaded file as seen by the pipeline (bytes are never written to disk)."""

    filename: str
    mime_type: str
    size: int
    data: bytes = b""

    @property
    def is_audio(self) -> bool:
        return self.mime_type.lower().startswith("audio/")

    def describe(self) -> str:
        return f"{self.filename} ({self.mime_type or 'unknown'}, {self.size} bytes)"


@dataclass(frozen=True)
class Action:
    responder: str
    instructions: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"responder": self.responder, "instructions": self.instructions}


@dataclass
class Plan:
    actions: List[Action] = field(default_factory=list)
    notes: Optional[str] = None
    usage: Optional["TokenUsage"] = None


@dataclass(frozen=True)
class AudioPayload:
    mime_type: str
    data: bytes
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mimeType": self.mime_type,
            "data": base64.b64encode(self.data).decode("ascii"),
            "description": self.description,
        }


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.prompt_tokens or self.completion_tokens or self.total_tokens)

    @classmethod
    def from_openai(cls, usage: Optional[Dict[str, Any]], model: Optional[str] = None) -> Optional["TokenUsage"]:
        if not usage:
            return None
        return cls(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0),
            model=model,
        )


@dataclass
class SpecialistResult:
    content: str
    audio: Optional[AudioPayload] = None
    debug: Optional[Dict[str, Any]] = None
    usage: Optional[TokenUsage] = None
    handoff: Optional[str] = None


@dataclass
class ResponderReply:
    """What the HTTP caller sees for each delivered assistant message."""

    message: Message
    audio: Optional[AudioPayload] = None
    debug: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "responder": self.message.responder,
            "message": self.message.to_dict(),
        }
        if self.audio:
            result["audio"] = self.audio.to_dict()
        if self.debug:
            result["debug"] = self.debug
        return result


@dataclass
class TurnResult:
    conversation: Conversation
    responses: List[ResponderReply] = field(default_factory=list)
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "conversation": self.conversation.to_dict(),
            "responses": [r.to_dict() for r in self.responses],
        }
        if self.notes:
            result["notes"] = self.notes
        return result


def format_transcript(messages: Sequence[Message]) -> str:
    """Render messages as `User: ...` / `Agent(tag): ...` lines for prompts."""
    lines = []
    for msg in messages:
        speaker = "User" if msg.role == Role.USER else f"Agent({msg.responder or 'assistant'})"
        lines.append(f"{speaker}: {msg.content}")
    return "\n".join(lines)
