"""
Usage limiter: turns ledger counts plus configured quotas into decisions.

The session quota is checked before the origin quota. A denied request is
never recorded, so exactly-at-limit is allowed and one-over is refused.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from logging_setup import get_logger, Component
from observability.events import EventEmitter, Severity
from orchestration.config import UsageLimitConfig
from orchestration.models import TokenUsage
from .ledger import Scope, UsageEvent, UsageLedger

logger = get_logger(Component.USAGE)

EVENT_LABELS = {
    UsageEvent.MESSAGE: "messages",
    UsageEvent.FILE_UPLOAD: "file uploads",
    UsageEvent.AUDIO_TRANSCRIPTION: "audio transcriptions",
    UsageEvent.TTS_GENERATION: "text-to-speech responses",
    UsageEvent.VOICE_SESSION: "voice sessions",
}

SCOPE_LABELS = {
    Scope.SESSION: "this session",
    Scope.ORIGIN: "your network connection",
}


def limit_message(event: UsageEvent, scope: Scope) -> str:
    return (
        f"Daily {EVENT_LABELS[event]} limit reached for {SCOPE_LABELS[scope]}. "
        "Please try again tomorrow."
    )


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    event: str
    limit_type: Optional[str] = None
    limit: Optional[int] = None
    current: Optional[int] = None
    remaining: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "event": self.event,
            "limitType": self.limit_type,
            "limit": self.limit,
            "current": self.current,
            "remaining": self.remaining,
            "message": self.message,
        }


class UsageLimiter:

    def __init__(self, ledger: UsageLedger, config: UsageLimitConfig, emitter: Optional[EventEmitter] = None):
        self._ledger = ledger
        self._config = config
        self._emitter = emitter

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    def limit_for(self, event: UsageEvent, scope: Scope) -> Optional[int]:
        limits = self._config.session_limits if scope is Scope.SESSION else self._config.origin_limits
        return limits.get(event.value)

    def consume(
        self,
        event: UsageEvent | str,
        session_key: str,
        origin_key: Optional[str] = None,
        units: int = 1,
        conversation_id: Optional[str] = None,
    ) -> UsageDecision:
        """
        Check and, when allowed, record `units` of `event`.

        Check and record happen under the ledger lock so two concurrent
        callers cannot both slip past a limit.
        """
        event = UsageEvent(event)
        if units < 1:
            raise ValueError("units must be a positive integer")

        with self._ledger.transaction():
            counts = self._ledger.get_count(event, session_key, origin_key)
            checks = [(Scope.SESSION, counts.session)]
            if origin_key:
                checks.append((Scope.ORIGIN, counts.origin or 0))

            for scope, current in checks:
                limit = self.limit_for(event, scope)
                if limit is not None and current + units > limit:
                    decision = UsageDecision(
                        allowed=False,
                        event=event.value,
                        limit_type=scope.value,
                        limit=limit,
                        current=current,
                        remaining=max(0, limit - current),
                        message=limit_message(event, scope),
                    )
                    self._log_block(decision, session_key, origin_key, conversation_id)
                    return decision

            after = self._ledger.record(event, session_key, origin_key, units)

        remaining = None
        for scope, count in ((Scope.SESSION, after.session), (Scope.ORIGIN, after.origin)):
            limit = self.limit_for(event, scope)
            if limit is None or count is None:
                continue
            headroom = max(0, limit - count)
            remaining = headroom if remaining is None else min(remaining, headroom)

        if self._config.logs_enabled and self._emitter and conversation_id:
            self._emitter.usage(
                conversation_id,
                usage_event=event.value,
                session_id=session_key,
                ip_address=origin_key,
                units=units,
                session_count=after.session,
                origin_count=after.origin,
            )
        return UsageDecision(allowed=True, event=event.value, current=after.session, remaining=remaining)

    def _log_block(
        self,
        decision: UsageDecision,
        session_key: str,
        origin_key: Optional[str],
        conversation_id: Optional[str],
    ) -> None:
        logger.warning(
            "Usage limit reached",
            event=decision.event,
            limit_type=decision.limit_type,
            limit=decision.limit,
            current=decision.current,
            session_id=session_key,
        )
        if self._emitter and conversation_id:
            self._emitter.guardrail(
                conversation_id,
                stage="usage",
                disposition="blocked",
                reason="usage_limit",
                session_id=session_key,
                ip_address=origin_key,
                event=decision.event,
                limitType=decision.limit_type,
                limit=decision.limit,
                current=decision.current,
            )

    def record_tokens(
        self,
        usage: Optional[TokenUsage],
        session_key: str,
        origin_key: Optional[str] = None,
        context: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> bool:
        """Add a token usage snapshot. Empty snapshots are ignored; returns whether anything was recorded."""
        if usage is None or usage.is_empty:
            return False
        self._ledger.record_tokens(
            session_key,
            origin_key,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        if self._config.logs_enabled and self._emitter and conversation_id:
            self._emitter.usage(
                conversation_id,
                usage_event="tokens",
                session_id=session_key,
                ip_address=origin_key,
                context=context,
                model=usage.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )
        return True

    def describe_limits(self) -> Dict[str, Dict[str, Optional[int]]]:
        return {
            event.value: {
                "session": self.limit_for(event, Scope.SESSION),
                "origin": self.limit_for(event, Scope.ORIGIN),
            }
            for event in UsageEvent
        }
