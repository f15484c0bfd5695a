"""
Input guard: validates an inbound turn before any specialist sees it.

Checks run in order and the first failure wins:
1. attachment size
2. attachment type (explicit allow-list)
3. content moderation (when enabled)
4. short voice transcript confirmation (when enabled)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from logging_setup import get_logger, Component
from observability.events import EventEmitter, Severity
from orchestration.config import InputGuardConfig
from orchestration.errors import UpstreamFailure
from orchestration.models import Attachment, TurnSource
from orchestration.openai_client import OpenAIClient

logger = get_logger(Component.INPUT_GUARD)

MODERATION_FEEDBACK = "Sorry, I cannot help with that request."
SHORT_TRANSCRIPTION_FEEDBACK = (
    "I heard a very short transcription. Could you please confirm or repeat your request?"
)


class GuardStatus(str, Enum):
    ALLOW = "allow"
    BLOCKED = "blocked"
    NEEDS_CONFIRMATION = "needs_confirmation"


@dataclass(frozen=True)
class GuardDecision:
    status: GuardStatus
    reason: str
    user_feedback: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.status == GuardStatus.ALLOW


ALLOW = GuardDecision(status=GuardStatus.ALLOW, reason="ok")


@dataclass
class InputGuardRequest:
    conversation_id: str
    message: str
    attachments: List[Attachment] = field(default_factory=list)
    source: TurnSource = TurnSource.INITIAL
    session_id: Optional[str] = None
    ip_address: Optional[str] = None


class Moderator(Protocol):
    async def moderate(self, text: str) -> Dict[str, Any]:
        """Return {"flagged": bool, "category_scores": {category: score}}."""
        ...


class OpenAIModerator:

    def __init__(self, client: OpenAIClient, model: str):
        self._client = client
        self._model = model

    async def moderate(self, text: str) -> Dict[str, Any]:
        return await self._client.moderate(text, model=self._model)


def normalize_mime(mime_type: str) -> str:
    return mime_type.lower().replace(" ", "")


class InputGuard:

    def __init__(
        self,
        config: InputGuardConfig,
        moderator: Optional[Moderator] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self._config = config
        self._moderator = moderator
        self._emitter = emitter
        self._allowed_types = frozenset(normalize_mime(t) for t in config.allowed_attachment_types)

    @property
    def config(self) -> InputGuardConfig:
        return self._config

    async def evaluate(self, request: InputGuardRequest) -> GuardDecision:
        decision = self._check_attachments(request.attachments)
        if decision is None:
            decision = await self._check_moderation(request)
        if decision is None:
            decision = self._check_transcription(request)
        if decision is None:
            return ALLOW

        self._record(request, decision)
        return decision

    def _check_attachments(self, attachments: List[Attachment]) -> Optional[GuardDecision]:
        for attachment in attachments:
            if attachment.size > self._config.max_attachment_bytes:
                return GuardDecision(
                    status=GuardStatus.BLOCKED,
                    reason="attachment_size",
                    user_feedback=(
                        f"Attachment {attachment.filename} is too large. "
                        f"The current limit is {self._config.max_attachment_bytes} bytes."
                    ),
                    details={"filename": attachment.filename, "size": attachment.size,
                             "limit": self._config.max_attachment_bytes},
                )
            if not attachment.mime_type or normalize_mime(attachment.mime_type) not in self._allowed_types:
                return GuardDecision(
                    status=GuardStatus.BLOCKED,
                    reason="attachment_type",
                    user_feedback=f"Attachment {attachment.filename} is not an allowed file type.",
                    details={"filename": attachment.filename, "mime_type": attachment.mime_type},
                )
        return None

    async def _check_moderation(self, request: InputGuardRequest) -> Optional[GuardDecision]:
        if not self._config.moderation_enabled or self._moderator is None or not request.message.strip():
            return None
        try:
            result = await self._moderator.moderate(request.message)
        except UpstreamFailure as e:
            # Moderation outage does not block the turn
            logger.warning(
                "Moderation request failed; allowing message",
                conversation_id=request.conversation_id,
                category=e.category,
            )
            if self._emitter:
                self._emitter.guardrail(
                    request.conversation_id,
                    stage="input",
                    disposition="allow",
                    reason="moderation_failed",
                    session_id=request.session_id,
                    ip_address=request.ip_address,
                    category=e.category,
                )
            return None

        if not result.get("flagged"):
            return None
        scores = result.get("category_scores") or {}
        numeric = {k: float(v) for k, v in scores.items() if isinstance(v, (int, float))}
        if not numeric:
            return None
        top_category, top_score = max(numeric.items(), key=lambda item: item[1])
        if top_score < self._config.moderation_threshold:
            return None
        return GuardDecision(
            status=GuardStatus.BLOCKED,
            reason="moderation",
            user_feedback=MODERATION_FEEDBACK,
            details={"category": top_category, "score": top_score,
                     "threshold": self._config.moderation_threshold},
        )

    def _check_transcription(self, request: InputGuardRequest) -> Optional[GuardDecision]:
        if request.source != TurnSource.VOICE_TRANSCRIPTION:
            return None
        if not self._config.transcription_confirmation_enabled:
            return None
        length = len(request.message.strip())
        if length >= self._config.min_transcription_length:
            return None
        return GuardDecision(
            status=GuardStatus.NEEDS_CONFIRMATION,
            reason="short_transcription",
            user_feedback=SHORT_TRANSCRIPTION_FEEDBACK,
            details={"length": length, "minimum": self._config.min_transcription_length},
        )

    def _record(self, request: InputGuardRequest, decision: GuardDecision) -> None:
        logger.info(
            "Input guard intervened",
            conversation_id=request.conversation_id,
            disposition=decision.status.value,
            reason=decision.reason,
        )
        if self._emitter:
            self._emitter.guardrail(
                request.conversation_id,
                stage="input",
                disposition=decision.status.value,
                reason=decision.reason,
                severity=Severity.WARN,
                session_id=request.session_id,
                ip_address=request.ip_address,
                source=request.source.value,
                **decision.details,
            )
