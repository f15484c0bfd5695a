"""
Structured audit event emission.

The EventEmitter is the only writer of the per-conversation audit log. Guard
and limiter decisions always carry `stage`, `disposition` and `reason` so a
blocked or modified turn can be reconstructed from the log alone.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from .event_store import AuditEntry, EventStore


class EventType(str, Enum):
    """Audit event kinds."""

    USER_MESSAGE = "user_message"
    PLANNER_PLAN = "planner_plan"
    SPECIALIST_RESPONSE = "specialist_response"
    GUARDRAIL = "guardrail"
    USAGE = "usage"
    VOICE_SESSION = "voice_session"
    VOICE_UTTERANCE = "voice_utterance"
    TURN_FAILED = "turn_failed"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventEmitter:
    """Emits structured audit events into an EventStore."""

    def __init__(self, store: EventStore):
        self.store = store

    def emit(
        self,
        event_type: EventType | str,
        conversation_id: str,
        severity: Severity = Severity.INFO,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        responder: Optional[str] = None,
        **payload: Any,
    ) -> Dict[str, Any]:
        entry = AuditEntry(
            event=event_type.value if isinstance(event_type, EventType) else event_type,
            conversation_id=conversation_id,
            severity=severity.value,
            session_id=session_id,
            ip_address=ip_address,
            responder=responder,
            payload=payload,
        )
        return self.store.append(entry)

    # --- Typed helpers ---

    def user_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        source: str,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.emit(
            EventType.USER_MESSAGE,
            conversation_id,
            session_id=session_id,
            ip_address=ip_address,
            message_id=message_id,
            content=content,
            source=source,
            **extra,
        )

    def planner_plan(
        self,
        conversation_id: str,
        actions: list,
        notes: Optional[str],
        defaulted: bool,
        session_id: Optional[str] = None,
    ) -> None:
        self.emit(
            EventType.PLANNER_PLAN,
            conversation_id,
            session_id=session_id,
            actions=actions,
            notes=notes,
            defaulted=defaulted,
        )

    def specialist_response(
        self,
        conversation_id: str,
        responder: str,
        message_id: str,
        content: str,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.emit(
            EventType.SPECIALIST_RESPONSE,
            conversation_id,
            session_id=session_id,
            ip_address=ip_address,
            responder=responder,
            message_id=message_id,
            content=content,
            **extra,
        )

    def guardrail(
        self,
        conversation_id: str,
        stage: str,
        disposition: str,
        reason: str,
        severity: Severity = Severity.WARN,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        responder: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.emit(
            EventType.GUARDRAIL,
            conversation_id,
            severity=severity,
            session_id=session_id,
            ip_address=ip_address,
            responder=responder,
            stage=stage,
            disposition=disposition,
            reason=reason,
            **extra,
        )

    def usage(
        self,
        conversation_id: str,
        usage_event: str,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.emit(
            EventType.USAGE,
            conversation_id,
            session_id=session_id,
            ip_address=ip_address,
            usage_event=usage_event,
            **extra,
        )

    def voice_session(
        self,
        conversation_id: str,
        state: str,
        severity: Severity = Severity.INFO,
        session_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.emit(
            EventType.VOICE_SESSION,
            conversation_id,
            severity=severity,
            session_id=session_id,
            state=state,
            **extra,
        )

    def voice_utterance(
        self,
        conversation_id: str,
        text: str,
        session_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.emit(
            EventType.VOICE_UTTERANCE,
            conversation_id,
            session_id=session_id,
            text=text,
            **extra,
        )

    def turn_failed(
        self,
        conversation_id: str,
        error_class: str,
        category: Optional[str] = None,
        session_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.emit(
            EventType.TURN_FAILED,
            conversation_id,
            severity=Severity.ERROR,
            session_id=session_id,
            error_class=error_class,
            category=category,
            **extra,
        )
