"""
Orchestrator: runs one chat turn through guard -> plan -> dispatch -> guard.

A turn is processed as a FIFO work queue. The inbound message seeds the
queue; a specialist's follow-up ("handoff") text is appended to the
conversation as a new user message and pushed onto the same queue, so it is
planned and dispatched like any other turn without a new request.

Ordering:
- actions of one plan run strictly in planner order
- queue items run strictly FIFO
- a handoff user message lands after every message its queue item produced

The orchestrator does no locking. Callers must not run two `handle_turn`
calls for the same conversation at once (see `ConversationLocks`).
"""
from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

from logging_setup import get_logger, Component, StructuredLogger
from observability.events import EventEmitter
from guards.input_guard import InputGuard, InputGuardRequest
from guards.response_guard import (
    EvaluationStatus,
    GuardEvaluation,
    RecoveryStrategy,
    ResponseGuard,
    ResponseGuardRequest,
)
from usage_limits import UsageEvent, UsageLimiter
from .config import OrchestratorConfig
from .conversation_store import ConversationStore
from .errors import NotFound, PipelineError, UpstreamFailure
from .models import (
    GUARDRAIL_RESPONDER,
    Action,
    Attachment,
    Conversation,
    ResponderReply,
    Role,
    SpecialistResult,
    TokenUsage,
    TurnResult,
    TurnSource,
)
from .planner import Planner
from .speech import SpeechSynthesisError, SpeechSynthesizer
from .specialists import Specialist, SpecialistContext, SpecialistRegistry

logger = get_logger(Component.ORCHESTRATOR)

VOICE_RESPONDER = "voice"
DOCUMENT_RESPONDER = "document_store"
GREETING_RESPONDER = "greeting"

VOICE_TRANSCRIPTION_PREFIX = (
    "Transcribed audio request (treat as typed text). "
    "Do not re-route to the voice agent unless new audio is provided.\n\n"
)
CLARIFICATION_TEXT = (
    "I want to make sure I answer the right question. Could you clarify what you need?"
)


@dataclass
class QueueItem:
    text: str
    attachments: List[Attachment] = field(default_factory=list)
    source: TurnSource = TurnSource.INITIAL
    triggered_by: Optional[str] = None


@dataclass
class TurnContext:
    """Per-turn request identity, used for audit and usage accounting."""

    conversation: Conversation
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    log: StructuredLogger = logger
    responses: List[ResponderReply] = field(default_factory=list)
    notes: Optional[str] = None


def build_planner_input(item: QueueItem) -> str:
    text = item.text
    if item.attachments:
        metadata = ", ".join(a.describe() for a in item.attachments)
        text = f"{text}\n\nAttachment metadata: {metadata}"
    if item.source == TurnSource.VOICE_TRANSCRIPTION:
        text = f"{VOICE_TRANSCRIPTION_PREFIX}{text}"
    return text


def default_actions(attachments: List[Attachment]) -> List[Action]:
    """Fallback when the planner returns nothing."""
    if not attachments:
        return [Action(responder=GREETING_RESPONDER)]
    actions = []
    if any(a.is_audio for a in attachments):
        actions.append(Action(responder=VOICE_RESPONDER))
    if any(not a.is_audio for a in attachments):
        actions.append(Action(responder=DOCUMENT_RESPONDER))
    return actions


def with_instructions(text: str, instructions: Optional[str]) -> str:
    if not instructions:
        return text
    return f"{text}\n\nPlanner instructions: {instructions}"


class ConversationLocks:
    """
    One asyncio.Lock per conversation, for callers that serialize turns.

    An entry lives while any caller holds or waits on it, so the map only
    ever holds conversations with a turn in flight.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Counted rather than `locked()`: a woken waiter has not acquired yet
            self._users[conversation_id] -= 1
            if not self._users[conversation_id]:
                del self._users[conversation_id]
                del self._locks[conversation_id]

    def __len__(self) -> int:
        return len(self._locks)


class Orchestrator:

    def __init__(
        self,
        store: ConversationStore,
        planner: Planner,
        specialists: SpecialistRegistry,
        input_guard: InputGuard,
        response_guard: ResponseGuard,
        emitter: EventEmitter,
        config: Optional[OrchestratorConfig] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        limiter: Optional[UsageLimiter] = None,
    ):
        self._store = store
        self._planner = planner
        self._specialists = specialists
        self._input_guard = input_guard
        self._response_guard = response_guard
        self._emitter = emitter
        self._config = config or OrchestratorConfig()
        self._synthesizer = synthesizer
        self._limiter = limiter

    # --- conversations ---

    def create_conversation(self, session_id: Optional[str] = None) -> Conversation:
        conversation = self._store.create(session_id=session_id)
        logger.info("Conversation created", conversation_id=conversation.id, session_id=session_id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._store.get(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        return conversation

    # --- turn loop ---

    async def handle_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: Optional[List[Attachment]] = None,
        *,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        source: TurnSource = TurnSource.INITIAL,
    ) -> TurnResult:
        """
        Process one inbound message and everything it hands off.

        Raises:
            NotFound: unknown conversation
            UpstreamFailure: planner or specialist failed; messages appended
                before the failure are kept
        """
        conversation = self.get_conversation(conversation_id)
        turn = TurnContext(
            conversation=conversation,
            session_id=session_id,
            ip_address=ip_address,
            log=logger.bind(conversation_id=conversation_id, session_id=session_id),
        )
        attachments = list(attachments or [])

        message = self._store.append_message(conversation, Role.USER, text)
        self._emitter.user_message(
            conversation_id,
            message_id=message.id,
            content=text,
            source=source.value,
            session_id=session_id,
            ip_address=ip_address,
            attachments=[a.describe() for a in attachments],
        )

        queue: Deque[QueueItem] = deque([QueueItem(text=text, attachments=attachments, source=source)])
        processed = 0
        try:
            while queue:
                if processed >= self._config.max_turn_items:
                    self._drop_remaining(turn, queue)
                    break
                item = queue.popleft()
                processed += 1
                await self._process_item(turn, item, queue)
        except PipelineError as e:
            self._fail_turn(turn, e, getattr(e, "category", None))
            raise
        except Exception as e:
            self._fail_turn(turn, e, None)
            raise UpstreamFailure(f"Turn failed: {type(e).__name__}") from e

        turn.log.info("Turn completed", items=processed, responses=len(turn.responses))
        return TurnResult(conversation=conversation, responses=turn.responses, notes=turn.notes)

    async def _process_item(self, turn: TurnContext, item: QueueItem, queue: Deque[QueueItem]) -> None:
        conversation = turn.conversation
        decision = await self._input_guard.evaluate(InputGuardRequest(
            conversation_id=conversation.id,
            message=item.text,
            attachments=item.attachments,
            source=item.source,
            session_id=turn.session_id,
            ip_address=turn.ip_address,
        ))
        if not decision.allowed:
            self._deliver_guardrail(
                turn,
                decision.user_feedback or CLARIFICATION_TEXT,
                stage="input",
                disposition=decision.status.value,
                reason=decision.reason,
            )
            return

        plan = await self._planner.plan(conversation, build_planner_input(item))
        self._record_tokens(turn, plan.usage, "planner")
        defaulted = not plan.actions
        actions = default_actions(item.attachments) if defaulted else plan.actions
        if plan.notes:
            turn.notes = plan.notes
        self._emitter.planner_plan(
            conversation.id,
            actions=[a.to_dict() for a in actions],
            notes=plan.notes,
            defaulted=defaulted,
            session_id=turn.session_id,
        )

        handoffs: List[tuple] = []
        for action in actions:
            specialist = self._specialists.get(action.responder)
            if specialist is None:
                turn.log.warning("Planner chose an unknown responder", responder=action.responder)
                continue
            handoff = await self._run_action(turn, item, action, specialist)
            if handoff:
                handoffs.append((action.responder, handoff))

        for responder, handoff in handoffs:
            message = self._store.append_message(conversation, Role.USER, handoff)
            self._emitter.user_message(
                conversation.id,
                message_id=message.id,
                content=handoff,
                source=TurnSource.VOICE_TRANSCRIPTION.value,
                session_id=turn.session_id,
                ip_address=turn.ip_address,
                triggered_by=responder,
            )
            queue.append(QueueItem(text=handoff, source=TurnSource.VOICE_TRANSCRIPTION, triggered_by=responder))

    async def _run_action(
        self,
        turn: TurnContext,
        item: QueueItem,
        action: Action,
        specialist: Specialist,
    ) -> Optional[str]:
        """Dispatch one action with response-guard recovery. Returns handoff text if delivered."""
        message_text = with_instructions(item.text, action.instructions)
        result = await self._dispatch(turn, specialist, message_text, item.attachments)
        guard_info: Dict[str, Any] = {}

        if self._response_guard.should_evaluate(specialist.id):
            evaluation = await self._evaluate(turn, specialist.id, item.text, result.content, attempt=1)
            guard_info = {"status": evaluation.status.value, "reason": evaluation.reason}

            if evaluation.status == EvaluationStatus.MISMATCH:
                strategy = self._response_guard.recovery
                guard_info["strategy"] = strategy.value

                if strategy == RecoveryStrategy.RETRY:
                    corrective = with_instructions(
                        message_text,
                        "The previous answer did not satisfy the request"
                        f"{': ' + evaluation.reason if evaluation.reason else ''}. "
                        "Address the user's request directly.",
                    )
                    retry = await self._dispatch(turn, specialist, corrective, item.attachments)
                    second = await self._evaluate(turn, specialist.id, item.text, retry.content, attempt=2)
                    if second.status == EvaluationStatus.MISMATCH:
                        self._clarify(turn, specialist.id, second)
                        return None
                    result = retry
                    guard_info.update({"retried": True, "retry_status": second.status.value})
                elif strategy == RecoveryStrategy.CLARIFY:
                    self._clarify(turn, specialist.id, evaluation)
                    return None
                else:
                    guard_info["flagged"] = True
            elif evaluation.status == EvaluationStatus.ERROR:
                guard_info["flagged"] = True

        await self._deliver(turn, specialist.id, result, guard_info)
        handoff = (result.handoff or "").strip()
        return handoff or None

    async def _dispatch(
        self,
        turn: TurnContext,
        specialist: Specialist,
        message_text: str,
        attachments: List[Attachment],
    ) -> SpecialistResult:
        result = await specialist.handle(SpecialistContext(
            conversation=turn.conversation,
            user_message=message_text,
            attachments=attachments,
            session_id=turn.session_id,
        ))
        self._record_tokens(turn, result.usage, specialist.id)
        return result

    async def _evaluate(
        self,
        turn: TurnContext,
        responder: str,
        user_message: str,
        agent_response: str,
        attempt: int,
    ) -> GuardEvaluation:
        return await self._response_guard.evaluate(ResponseGuardRequest(
            conversation_id=turn.conversation.id,
            responder=responder,
            user_message=user_message,
            agent_response=agent_response,
            attempt=attempt,
            session_id=turn.session_id,
        ))

    async def _deliver(
        self,
        turn: TurnContext,
        responder: str,
        result: SpecialistResult,
        guard_info: Dict[str, Any],
    ) -> None:
        conversation = turn.conversation
        message = self._store.append_message(conversation, Role.ASSISTANT, result.content, responder=responder)

        audio = result.audio
        tts_info: Optional[Dict[str, Any]] = None
        if audio is None and self._wants_speech(responder, result.content):
            audio, tts_info = await self._synthesize(turn, result.content, responder)

        self._emitter.specialist_response(
            conversation.id,
            responder=responder,
            message_id=message.id,
            content=result.content,
            session_id=turn.session_id,
            ip_address=turn.ip_address,
            debug=result.debug,
            guard=guard_info or None,
            tts=tts_info,
            has_audio=audio is not None,
            handoff=result.handoff,
            recent=[m.to_dict() for m in conversation.messages[-5:]],
        )
        turn.responses.append(ResponderReply(message=message, audio=audio, debug=result.debug))

    def _wants_speech(self, responder: str, content: str) -> bool:
        return (
            self._config.tts_enabled
            and self._synthesizer is not None
            and responder in self._config.tts_responders
            and bool(content.strip())
        )

    async def _synthesize(self, turn: TurnContext, text: str, responder: str):
        if self._limiter and turn.session_id:
            decision = self._limiter.consume(
                UsageEvent.TTS_GENERATION,
                turn.session_id,
                turn.ip_address,
                conversation_id=turn.conversation.id,
            )
            if not decision.allowed:
                return None, {"status": "blocked", "message": decision.message}
        try:
            audio = await self._synthesizer.synthesize(text, description=f"Spoken reply from {responder}")
        except SpeechSynthesisError as e:
            turn.log.warning("Speech synthesis failed", responder=responder, error=str(e))
            return None, {"status": "error", "error": str(e)}
        return audio, {"status": "ok", "mime_type": audio.mime_type, "bytes": len(audio.data)}

    def _clarify(self, turn: TurnContext, responder: str, evaluation: GuardEvaluation) -> None:
        self._deliver_guardrail(
            turn,
            evaluation.follow_up or CLARIFICATION_TEXT,
            stage="response",
            disposition="clarified",
            reason=evaluation.reason or "mismatch",
            suppressed_responder=responder,
        )

    def _deliver_guardrail(self, turn: TurnContext, text: str, **audit: Any) -> None:
        conversation = turn.conversation
        message = self._store.append_message(conversation, Role.ASSISTANT, text, responder=GUARDRAIL_RESPONDER)
        self._emitter.specialist_response(
            conversation.id,
            responder=GUARDRAIL_RESPONDER,
            message_id=message.id,
            content=text,
            session_id=turn.session_id,
            ip_address=turn.ip_address,
            **audit,
        )
        turn.responses.append(ResponderReply(message=message))

    def _record_tokens(self, turn: TurnContext, usage: Optional[TokenUsage], context: str) -> None:
        if self._limiter is None or not turn.session_id:
            return
        self._limiter.record_tokens(
            usage,
            turn.session_id,
            turn.ip_address,
            context=context,
            conversation_id=turn.conversation.id,
        )

    def _drop_remaining(self, turn: TurnContext, queue: Deque[QueueItem]) -> None:
        turn.log.warning("Turn item limit reached", dropped=len(queue), limit=self._config.max_turn_items)
        self._emitter.guardrail(
            turn.conversation.id,
            stage="orchestrator",
            disposition="dropped",
            reason="turn_item_limit",
            session_id=turn.session_id,
            ip_address=turn.ip_address,
            dropped=len(queue),
            limit=self._config.max_turn_items,
        )
        queue.clear()

    def _fail_turn(self, turn: TurnContext, error: Exception, category: Optional[str]) -> None:
        turn.log.error("Turn failed", error=str(error), error_type=type(error).__name__)
        self._emitter.turn_failed(
            turn.conversation.id,
            error_class=type(error).__name__,
            category=category,
            session_id=turn.session_id,
            messages=len(turn.conversation.messages),
        )
