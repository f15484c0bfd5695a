"""
Response guard: checks a specialist's reply against the user's request.

An evaluator model returns a small JSON verdict. Anything that does not
parse as that verdict is downgraded to an `error` evaluation so a malformed
evaluator reply never aborts a turn.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from logging_setup import get_logger, Component
from observability.events import EventEmitter, Severity
from orchestration.config import ResponseGuardConfig
from orchestration.errors import UpstreamFailure
from orchestration.openai_client import OpenAIClient

logger = get_logger(Component.RESPONSE_GUARD)

SYSTEM_INSTRUCTION = (
    "You review whether an assistant response satisfies the user's request. "
    'Return ONLY JSON: {"status": "ok" | "mismatch", "confidence": number between 0 and 1, '
    '"reason": string, "follow_up": string}. '
    "Use \"mismatch\" only when the response ignores or contradicts the request. "
    "If the assistant politely asks the user for information that is required to complete the "
    "request (for example a missing location, date or file), treat that as \"ok\"."
)


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    CLARIFY = "clarify"
    LOG_ONLY = "log_only"


class EvaluationStatus(str, Enum):
    OK = "ok"
    MISMATCH = "mismatch"
    ERROR = "error"


class Verdict(BaseModel):
    """Evaluator reply schema."""

    status: Literal["ok", "mismatch"]
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    reason: Optional[str] = None
    follow_up: Optional[str] = None


@dataclass(frozen=True)
class GuardEvaluation:
    status: EvaluationStatus
    reason: Optional[str] = None
    confidence: Optional[float] = None
    follow_up: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status != EvaluationStatus.MISMATCH


@dataclass
class ResponseGuardRequest:
    conversation_id: str
    responder: str
    user_message: str
    agent_response: str
    attempt: int = 1
    session_id: Optional[str] = None


class Evaluator(Protocol):
    async def evaluate(self, system_instruction: str, prompt: str) -> str:
        """Return the evaluator's raw text reply."""
        ...


class LLMEvaluator:

    def __init__(self, client: OpenAIClient, model: str):
        self._client = client
        self._model = model

    async def evaluate(self, system_instruction: str, prompt: str) -> str:
        result = await self._client.chat_completion(
            [
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": prompt},
            ],
            model=self._model,
            temperature=0,
            json_mode=True,
        )
        return result["content"]


def build_prompt(request: ResponseGuardRequest) -> str:
    return (
        f"User request:\n{request.user_message}\n\n"
        f"Agent ({request.responder}) response:\n{request.agent_response}\n\n"
        "Task: Does the response fully satisfy the user request? "
        "Return valid JSON with keys status, confidence, reason, follow_up."
    )


def parse_verdict(raw: str) -> Optional[Verdict]:
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        return Verdict.model_validate_json(text.strip())
    except PydanticValidationError:
        return None


class ResponseGuard:

    def __init__(
        self,
        config: ResponseGuardConfig,
        evaluator: Optional[Evaluator] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self._config = config
        self._evaluator = evaluator
        self._emitter = emitter
        self._recovery = RecoveryStrategy(config.recovery)

    @property
    def recovery(self) -> RecoveryStrategy:
        return self._recovery

    def should_evaluate(self, responder: str) -> bool:
        return self._config.enabled and self._evaluator is not None and responder in self._config.responders

    async def evaluate(self, request: ResponseGuardRequest) -> GuardEvaluation:
        start_ts = time.perf_counter()
        try:
            raw = await self._evaluator.evaluate(SYSTEM_INSTRUCTION, build_prompt(request))
        except Exception as e:
            # Any evaluator failure is a pass-through verdict, never a failed turn
            category = e.category if isinstance(e, UpstreamFailure) else type(e).__name__
            evaluation = GuardEvaluation(status=EvaluationStatus.ERROR, reason="evaluator_failure")
            self._record(request, evaluation, category=category)
            return evaluation

        verdict = parse_verdict(raw)
        if verdict is None:
            evaluation = GuardEvaluation(status=EvaluationStatus.ERROR, reason="parse_failure")
            self._record(request, evaluation, raw=raw[:2000] if raw else raw)
            return evaluation

        evaluation = GuardEvaluation(
            status=EvaluationStatus(verdict.status),
            reason=verdict.reason,
            confidence=verdict.confidence,
            follow_up=verdict.follow_up.strip() if verdict.follow_up and verdict.follow_up.strip() else None,
        )
        logger.info(
            "Response evaluated",
            conversation_id=request.conversation_id,
            responder=request.responder,
            status=evaluation.status.value,
            attempt=request.attempt,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        self._record(request, evaluation)
        return evaluation

    def _record(self, request: ResponseGuardRequest, evaluation: GuardEvaluation, **extra) -> None:
        if evaluation.status == EvaluationStatus.ERROR:
            logger.warning(
                "Response evaluation failed",
                conversation_id=request.conversation_id,
                responder=request.responder,
                reason=evaluation.reason,
            )
        if not self._emitter:
            return
        self._emitter.guardrail(
            request.conversation_id,
            stage="response",
            disposition=evaluation.status.value,
            reason=evaluation.reason or evaluation.status.value,
            severity=Severity.INFO if evaluation.status == EvaluationStatus.OK else Severity.WARN,
            session_id=request.session_id,
            responder=request.responder,
            attempt=request.attempt,
            confidence=evaluation.confidence,
            follow_up=evaluation.follow_up,
            **extra,
        )
