"""
Realtime voice bridge.

One bridge session per conversation, moving through

    idle -> session_requested -> ready -> streaming -> closed | error

`create_session` charges one voice-session unit and opens the external
session. `handle_offer` exchanges the transport offer and starts consuming
the event stream (once per bridge session). Each finished utterance is
forwarded into the chat pipeline as a voice-transcription turn.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from logging_setup import get_logger, Component
from observability.events import EventEmitter, Severity
from orchestration.errors import NotFound, PipelineError, UpstreamFailure
from usage_limits import UsageDecision, UsageEvent, UsageLimiter
from .client import RealtimeClient
from .sse import SSEEvent

logger = get_logger(Component.VOICE_BRIDGE)

TERMINAL_CONNECTION_STATES = frozenset({"closed", "failed", "disconnected"})

# Streams whose deltas carry words; `response.audio.*` carries base64 audio
TEXT_STREAM_SUFFIXES = ("text", "transcript", "transcription")

# (conversation_id, text, usage_context) -> awaitable
ForwardTurn = Callable[[str, str, Dict[str, Any]], Awaitable[Any]]


class BridgeState(str, Enum):
    IDLE = "idle"
    SESSION_REQUESTED = "session_requested"
    READY = "ready"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class BridgeSession:
    conversation_id: str
    session_id: str
    ip_address: Optional[str] = None
    state: BridgeState = BridgeState.IDLE
    realtime_session_id: Optional[str] = None
    client_secret: Optional[str] = None
    client_secret_expires_at: Optional[int] = None
    model: Optional[str] = None
    voice: Optional[str] = None
    instructions: Optional[str] = None
    ice_servers: List[Dict[str, Any]] = field(default_factory=list)
    buffer: List[str] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def usage_context(self) -> Dict[str, Any]:
        return {"session_key": self.session_id, "origin_key": self.ip_address}

    def grant(self) -> Dict[str, Any]:
        grant: Dict[str, Any] = {
            "conversationId": self.conversation_id,
            "userSessionId": self.session_id,
            "realtimeSessionId": self.realtime_session_id,
            "model": self.model,
            "voice": self.voice,
            "clientSecret": self.client_secret,
            "expiresAt": self.client_secret_expires_at,
            "iceServers": self.ice_servers,
        }
        if self.instructions:
            grant["instructions"] = self.instructions
        return grant


@dataclass(frozen=True)
class VoiceSessionOutcome:
    status: str  # "ready" | "blocked"
    grant: Optional[Dict[str, Any]] = None
    decision: Optional[UsageDecision] = None

    @property
    def message(self) -> Optional[str]:
        return self.decision.message if self.decision else None


def extract_content_text(item: Any) -> str:
    """Pull text out of a conversation item's content blocks."""
    if not isinstance(item, dict):
        return ""
    parts = []
    for block in item.get("content") or []:
        if not isinstance(block, dict):
            continue
        text = block.get("transcript") or block.get("text")
        if isinstance(text, str) and text.strip():
            parts.append(text.strip())
    return " ".join(parts)


def text_stream_phase(event_type: str) -> Optional[str]:
    """
    Classify a realtime event as part of a text or transcript stream.

    Returns "delta" or "done" for events such as `response.text.delta` or
    `conversation.item.input_audio_transcription.completed`, None otherwise.
    """
    stream, _, phase = event_type.rpartition(".")
    if not stream.rpartition(".")[2].endswith(TEXT_STREAM_SUFFIXES):
        return None
    if phase == "delta":
        return "delta"
    if phase in ("done", "completed"):
        return "done"
    return None


class RealtimeVoiceBridge:

    def __init__(
        self,
        client: RealtimeClient,
        limiter: UsageLimiter,
        emitter: EventEmitter,
        forward_turn: Optional[ForwardTurn] = None,
    ):
        self._client = client
        self._limiter = limiter
        self._emitter = emitter
        self._forward_turn = forward_turn
        self._sessions: Dict[str, BridgeSession] = {}

    def set_forwarder(self, forward_turn: ForwardTurn) -> None:
        self._forward_turn = forward_turn

    def get(self, conversation_id: str) -> Optional[BridgeSession]:
        return self._sessions.get(conversation_id)

    def _require(self, conversation_id: str) -> BridgeSession:
        bridge = self._sessions.get(conversation_id)
        if bridge is None:
            raise NotFound("Voice session not found")
        return bridge

    # --- lifecycle ---

    async def create_session(
        self,
        conversation_id: str,
        session_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VoiceSessionOutcome:
        decision = self._limiter.consume(
            UsageEvent.VOICE_SESSION,
            session_id,
            ip_address,
            conversation_id=conversation_id,
        )
        if not decision.allowed:
            return VoiceSessionOutcome(status="blocked", decision=decision)

        if conversation_id in self._sessions:
            await self.close_session(conversation_id, reason="replaced")

        bridge = BridgeSession(
            conversation_id=conversation_id,
            session_id=session_id,
            ip_address=ip_address,
            state=BridgeState.SESSION_REQUESTED,
        )
        self._sessions[conversation_id] = bridge

        try:
            realtime = await self._client.create_session()
        except UpstreamFailure as e:
            bridge.state = BridgeState.ERROR
            self._sessions.pop(conversation_id, None)
            self._emitter.voice_session(
                conversation_id,
                state=bridge.state.value,
                severity=Severity.ERROR,
                session_id=session_id,
                category=e.category,
            )
            raise

        bridge.realtime_session_id = realtime.id
        bridge.client_secret = realtime.client_secret
        bridge.client_secret_expires_at = realtime.client_secret_expires_at
        bridge.model = realtime.model
        bridge.voice = realtime.voice
        bridge.instructions = realtime.instructions
        bridge.ice_servers = realtime.ice_servers
        bridge.state = BridgeState.READY

        self._emitter.voice_session(
            conversation_id,
            state="created",
            session_id=session_id,
            realtime_session_id=realtime.id,
            model=realtime.model,
            voice=realtime.voice,
            expires_at=realtime.client_secret_expires_at,
            user_agent=user_agent,
        )
        logger.info("Voice bridge ready", conversation_id=conversation_id, realtime_session_id=realtime.id)
        return VoiceSessionOutcome(status="ready", grant=bridge.grant(), decision=decision)

    async def handle_offer(self, conversation_id: str, offer_sdp: str) -> str:
        """Exchange the offer and make sure the event stream is being consumed."""
        bridge = self._require(conversation_id)
        if bridge.state not in (BridgeState.READY, BridgeState.STREAMING):
            raise NotFound("Voice session is not ready")
        answer = await self._client.exchange_offer(bridge.client_secret, offer_sdp)
        self.start_streaming(bridge)
        return answer

    def start_streaming(self, bridge: BridgeSession) -> bool:
        """Start the stream consumer. Returns False when it is already running."""
        if bridge.task is not None and not bridge.task.done():
            return False
        bridge.state = BridgeState.STREAMING
        bridge.task = asyncio.create_task(self._consume(bridge))
        self._emitter.voice_session(bridge.conversation_id, state="streaming", session_id=bridge.session_id)
        return True

    async def _consume(self, bridge: BridgeSession) -> None:
        try:
            async for event in self._client.stream_events(bridge.realtime_session_id, bridge.client_secret):
                await self.handle_event(bridge, event)
        except UpstreamFailure as e:
            logger.error(
                "Realtime event stream failed",
                conversation_id=bridge.conversation_id,
                category=e.category,
                error=str(e),
            )
            bridge.state = BridgeState.ERROR
            self._teardown(bridge, severity=Severity.ERROR, reason=e.category)
            return

        bridge.state = BridgeState.CLOSED
        self._teardown(bridge, reason="stream_ended")

    async def handle_event(self, bridge: BridgeSession, event: SSEEvent) -> Optional[str]:
        """
        Interpret one realtime event. Returns the forwarded utterance, if any.

        - text or transcript `*.delta` appends to the partial-utterance buffer
        - `conversation.item.completed` forwards text from its content blocks
        - text or transcript `*.done` / `*.completed` flush the buffer (or an
          explicit transcript/text field) as one utterance
        - everything else, audio payloads included, is ignored
        """
        data = event.data if isinstance(event.data, dict) else {}
        event_type = data.get("type") if isinstance(data.get("type"), str) else event.type
        phase = text_stream_phase(event_type)

        if phase == "delta":
            delta = data.get("delta")
            if isinstance(delta, str):
                bridge.buffer.append(delta)
            return None

        if event_type == "conversation.item.completed":
            text = extract_content_text(data.get("item"))
            bridge.buffer.clear()
        elif phase == "done":
            explicit = data.get("transcript") or data.get("text")
            text = explicit if isinstance(explicit, str) else "".join(bridge.buffer)
            bridge.buffer.clear()
        else:
            return None

        text = text.strip()
        if not text:
            return None
        await self._forward(bridge, text)
        return text

    async def _forward(self, bridge: BridgeSession, text: str) -> None:
        context = dict(bridge.usage_context, source="voice_transcription")
        self._emitter.voice_utterance(
            bridge.conversation_id,
            text=text,
            session_id=bridge.session_id,
            **bridge.usage_context,
        )
        if self._forward_turn is None:
            return
        try:
            await self._forward_turn(bridge.conversation_id, text, context)
        except PipelineError as e:
            logger.warning(
                "Forwarded voice turn failed",
                conversation_id=bridge.conversation_id,
                error=e.message,
                error_type=type(e).__name__,
            )

    async def update_connection_state(self, conversation_id: str, state: str) -> bool:
        """Record a client transport state. Terminal states tear the bridge down."""
        bridge = self._require(conversation_id)
        logger.info("Voice connection state", conversation_id=conversation_id, state=state)
        if state.lower() in TERMINAL_CONNECTION_STATES:
            await self.close_session(conversation_id, reason=state.lower())
            return True
        return False

    async def close_session(self, conversation_id: str, reason: str = "closed") -> bool:
        bridge = self._sessions.get(conversation_id)
        if bridge is None:
            return False
        task = bridge.task
        bridge.task = None
        bridge.state = BridgeState.CLOSED
        self._teardown(bridge, reason=reason)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return True

    def _teardown(self, bridge: BridgeSession, severity: Severity = Severity.INFO, reason: str = "closed") -> None:
        if self._sessions.get(bridge.conversation_id) is not bridge:
            return
        del self._sessions[bridge.conversation_id]
        bridge.buffer.clear()
        self._emitter.voice_session(
            bridge.conversation_id,
            state=bridge.state.value,
            severity=severity,
            session_id=bridge.session_id,
            reason=reason,
        )

    async def aclose(self) -> None:
        for conversation_id in list(self._sessions):
            await self.close_session(conversation_id, reason="shutdown")
