"""
HTTP routes: conversations, sessions and voice.

All routes rely on the session middleware in `server.py` having put the
resolved session on `request.state`. Errors are raised as PipelineError
subclasses and rendered by the app's exception handler.
"""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Dict, List, Tuple

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from orchestration.errors import Forbidden, NotFound, QuotaExceeded, ValidationError
from orchestration.models import Attachment, Conversation, TurnSource
from usage_limits import UsageEvent

if TYPE_CHECKING:
    from .server import Services


conversations_router = APIRouter(prefix="/conversations", tags=["conversations"])
sessions_router = APIRouter(prefix="/sessions", tags=["sessions"])
voice_router = APIRouter(prefix="/voice", tags=["voice"])

DEFAULT_LOG_LIMIT = 200
MAX_LOG_LIMIT = 1000


# --- helpers ---


def _services(request: Request) -> "Services":
    return request.app.state.services


def _session_id(request: Request) -> str:
    return request.state.session.id


def _owned_conversation(request: Request, conversation_id: str) -> Conversation:
    conversation = _services(request).orchestrator.get_conversation(conversation_id)
    if conversation.session_id != _session_id(request):
        raise Forbidden("Conversation does not belong to the active session")
    return conversation


def _consume(request: Request, event: UsageEvent, conversation_id: str, units: int = 1) -> None:
    decision = _services(request).limiter.consume(
        event,
        _session_id(request),
        request.state.ip_address,
        units=units,
        conversation_id=conversation_id,
    )
    if not decision.allowed:
        raise QuotaExceeded(decision.message, event=decision.event, scope=decision.limit_type)


def _session_payload(request: Request) -> Dict[str, Any]:
    session = request.state.session
    return {
        "sessionId": session.id,
        "createdAt": session.created_at.isoformat(),
        "lastSeen": session.last_seen.isoformat(),
    }


async def _read_message(request: Request) -> Tuple[str, List[Attachment], str]:
    """Parse a JSON body or a multipart form into (content, attachments, source)."""
    content_type = request.headers.get("content-type", "")
    attachments: List[Attachment] = []

    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        content = form.get("content")
        source = form.get("source")
        upload = form.get("attachment")
        if upload is not None and not isinstance(upload, str):
            data = await upload.read()
            attachments.append(Attachment(
                filename=upload.filename or "attachment",
                mime_type=upload.content_type or "",
                size=len(data),
                data=data,
            ))
    else:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError("Request body must be JSON or multipart form data")
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        content = body.get("content")
        source = body.get("source")

    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Message content is required")
    if source is not None and not isinstance(source, str):
        raise ValidationError("Unsupported message source")
    return content, attachments, source or TurnSource.INITIAL.value


# --- conversations ---


@conversations_router.post("", status_code=201)
async def create_conversation(request: Request) -> Dict[str, Any]:
    conversation = _services(request).orchestrator.create_conversation(session_id=_session_id(request))
    return {
        "id": conversation.id,
        "createdAt": conversation.created_at.isoformat(),
        "sessionId": conversation.session_id,
    }


@conversations_router.get("/{conversation_id}/messages")
async def list_messages(conversation_id: str, request: Request) -> Dict[str, Any]:
    conversation = _owned_conversation(request, conversation_id)
    return {
        "messages": [m.to_dict() for m in conversation.messages],
        "createdAt": conversation.created_at.isoformat(),
    }


@conversations_router.post("/{conversation_id}/messages")
async def post_message(conversation_id: str, request: Request) -> Dict[str, Any]:
    """
    Submit a user message (JSON `{content, source?}` or multipart with
    `content`, `attachment` and optional `source`).
    """
    content, attachments, raw_source = await _read_message(request)
    try:
        source = TurnSource(raw_source)
    except ValueError:
        raise ValidationError("Unsupported message source")

    _owned_conversation(request, conversation_id)
    services = _services(request)

    _consume(request, UsageEvent.MESSAGE, conversation_id)
    if attachments:
        _consume(request, UsageEvent.FILE_UPLOAD, conversation_id, units=len(attachments))
        audio_count = sum(1 for a in attachments if a.is_audio)
        if audio_count:
            _consume(request, UsageEvent.AUDIO_TRANSCRIPTION, conversation_id, units=audio_count)

    result = await services.run_turn(
        conversation_id,
        content,
        attachments,
        session_id=_session_id(request),
        ip_address=request.state.ip_address,
        source=source,
    )
    payload = result.to_dict()
    payload["sessionId"] = _session_id(request)
    return payload


@conversations_router.get("/{conversation_id}/log")
async def get_log(
    conversation_id: str,
    request: Request,
    limit: int = Query(DEFAULT_LOG_LIMIT, ge=1, le=MAX_LOG_LIMIT, description="Most recent N entries"),
) -> Dict[str, Any]:
    _owned_conversation(request, conversation_id)
    entries = _services(request).event_store.query(conversation_id, limit=limit)
    return {"entries": entries}


# --- sessions ---


@sessions_router.post("/reset")
async def reset_session(request: Request) -> Dict[str, Any]:
    services = _services(request)
    session = services.sessions.reset_session(
        _session_id(request),
        ip_address=request.state.ip_address,
        user_agent=request.headers.get("user-agent"),
    )
    request.state.session = session
    request.state.session_status = "new"
    return _session_payload(request)


@sessions_router.get("/current")
async def current_session(request: Request) -> Dict[str, Any]:
    return _session_payload(request)


# --- voice ---


class VoiceSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId", min_length=1)


class VoiceOfferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId", min_length=1)
    sdp: str = Field(..., min_length=1, description="WebRTC SDP offer")


class ConnectionStateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId", min_length=1)
    state: str = Field(..., min_length=1)


def _require_live_mode(request: Request) -> None:
    if not _services(request).config.realtime.live_mode_enabled:
        raise NotFound("Live voice mode is not enabled on this server.")


async def _open_voice_session(request: Request, conversation_id: str) -> Dict[str, Any]:
    _owned_conversation(request, conversation_id)
    outcome = await _services(request).voice_bridge.create_session(
        conversation_id,
        _session_id(request),
        ip_address=request.state.ip_address,
        user_agent=request.headers.get("user-agent"),
    )
    if outcome.status == "blocked":
        raise QuotaExceeded(outcome.message, event=outcome.decision.event, scope=outcome.decision.limit_type)
    return {"grant": outcome.grant}


@voice_router.post("/sessions", status_code=201)
async def create_voice_session(body: VoiceSessionRequest, request: Request) -> Dict[str, Any]:
    return await _open_voice_session(request, body.conversation_id)


@voice_router.post("/session", status_code=201)
async def create_live_voice_session(body: VoiceSessionRequest, request: Request) -> Dict[str, Any]:
    _require_live_mode(request)
    payload = await _open_voice_session(request, body.conversation_id)
    payload["status"] = "ready"
    return payload


@voice_router.post("/offer")
async def voice_offer(body: VoiceOfferRequest, request: Request) -> Dict[str, Any]:
    _require_live_mode(request)
    _owned_conversation(request, body.conversation_id)
    bridge = _services(request).voice_bridge
    answer = await bridge.handle_offer(body.conversation_id, body.sdp)
    session = bridge.get(body.conversation_id)
    return {
        "type": "answer",
        "sdp": answer,
        "status": session.state.value if session else "closed",
    }


@voice_router.post("/connection-state")
async def voice_connection_state(body: ConnectionStateRequest, request: Request) -> Dict[str, Any]:
    _owned_conversation(request, body.conversation_id)
    closed = await _services(request).voice_bridge.update_connection_state(body.conversation_id, body.state)
    return {"conversationId": body.conversation_id, "state": body.state, "closed": closed}


@voice_router.delete("/sessions/{conversation_id}")
async def delete_voice_session(conversation_id: str, request: Request) -> Dict[str, Any]:
    _owned_conversation(request, conversation_id)
    closed = await _services(request).voice_bridge.close_session(conversation_id, reason="client_stop")
    return {"conversationId": conversation_id, "closed": closed}
