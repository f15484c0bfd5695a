"""
Chat server application factory.

Wires configuration, persistence, guards, usage limits, the orchestrator and
the realtime voice bridge into one FastAPI app. Session identity travels in
the `x-session-id` header; the resolved id is echoed back on every response,
with `x-session-status: new|rotated` when a new id was minted.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from logging_setup import get_logger, Component
from observability.event_store import EventStore
from observability.events import EventEmitter
from guards.input_guard import InputGuard, OpenAIModerator
from guards.response_guard import LLMEvaluator, ResponseGuard
from orchestration.config import AppConfig
from orchestration.conversation_store import ConversationStore
from orchestration.errors import PipelineError
from orchestration.models import Attachment, TurnResult, TurnSource
from orchestration.openai_client import OpenAIClient
from orchestration.orchestrator import ConversationLocks, Orchestrator
from orchestration.planner import LLMPlanner
from orchestration.speech import SpeechSynthesizer, Transcriber
from orchestration.specialists import SpecialistRegistry
from orchestration.specialists.chat import ChatSpecialist, load_profiles
from orchestration.specialists.document import DocumentSpecialist
from orchestration.specialists.time_helper import TimeHelperSpecialist, ZoneInfoLocationResolver
from orchestration.specialists.voice import VoiceSpecialist
from usage_limits import UsageLedger, UsageLimiter
from voice_bridge.bridge import RealtimeVoiceBridge
from voice_bridge.client import RealtimeClient
from .api import conversations_router, sessions_router, voice_router
from .session import SessionRegistry

logger = get_logger(Component.CHAT_SERVER)

SESSION_HEADER = "x-session-id"
SESSION_STATUS_HEADER = "x-session-status"


@dataclass
class Services:
    """Everything the routes need, built once per process."""

    config: AppConfig
    sessions: SessionRegistry
    event_store: EventStore
    emitter: EventEmitter
    limiter: UsageLimiter
    orchestrator: Orchestrator
    voice_bridge: RealtimeVoiceBridge
    locks: ConversationLocks = field(default_factory=ConversationLocks)
    closers: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def run_turn(
        self,
        conversation_id: str,
        text: str,
        attachments: Optional[List[Attachment]] = None,
        *,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        source: TurnSource = TurnSource.INITIAL,
    ) -> TurnResult:
        """Run one turn while holding the conversation's lock."""
        async with self.locks.hold(conversation_id):
            return await self.orchestrator.handle_turn(
                conversation_id,
                text,
                attachments,
                session_id=session_id,
                ip_address=ip_address,
                source=source,
            )

    async def forward_voice_turn(self, conversation_id: str, text: str, context: Dict[str, Any]) -> TurnResult:
        return await self.run_turn(
            conversation_id,
            text,
            session_id=context.get("session_key"),
            ip_address=context.get("origin_key"),
            source=TurnSource.VOICE_TRANSCRIPTION,
        )

    async def aclose(self) -> None:
        for close in self.closers:
            await close()
        self.limiter.ledger.flush()


def build_services(config: AppConfig) -> Services:
    """Construct the production object graph from configuration."""
    event_store = EventStore(config.storage.log_dir)
    emitter = EventEmitter(event_store)
    ledger = UsageLedger(config.storage.usage_file)
    limiter = UsageLimiter(ledger, config.usage, emitter)
    sessions = SessionRegistry(config.storage.sessions_file)

    client = OpenAIClient(config.openai)
    realtime_client = RealtimeClient(config.openai, config.realtime)

    specialists = SpecialistRegistry(ChatSpecialist(profile, client) for profile in load_profiles())
    specialists.register(DocumentSpecialist(client))
    specialists.register(TimeHelperSpecialist(client, ZoneInfoLocationResolver()))
    specialists.register(VoiceSpecialist(Transcriber(client, config.speech)))

    orchestrator = Orchestrator(
        store=ConversationStore(),
        planner=LLMPlanner(client, specialists.tags(), history_window=config.orchestrator.planner_history_window),
        specialists=specialists,
        input_guard=InputGuard(
            config.input_guard,
            moderator=OpenAIModerator(client, config.input_guard.moderation_model),
            emitter=emitter,
        ),
        response_guard=ResponseGuard(
            config.response_guard,
            evaluator=LLMEvaluator(client, config.response_guard.model),
            emitter=emitter,
        ),
        emitter=emitter,
        config=config.orchestrator,
        synthesizer=SpeechSynthesizer(client, config.speech),
        limiter=limiter,
    )
    bridge = RealtimeVoiceBridge(realtime_client, limiter, emitter)

    services = Services(
        config=config,
        sessions=sessions,
        event_store=event_store,
        emitter=emitter,
        limiter=limiter,
        orchestrator=orchestrator,
        voice_bridge=bridge,
        closers=[bridge.aclose, realtime_client.aclose, client.aclose],
    )
    bridge.set_forwarder(services.forward_voice_turn)
    return services


def client_ip(request: Request) -> Optional[str]:
    """First hop of x-forwarded-for, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no arguments the object graph is built from the environment, which
    is what `uvicorn --factory chat_server.server:create_app` does.
    """
    if services is None:
        services = build_services(AppConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Chat server started", live_voice=services.config.realtime.live_mode_enabled)
        yield
        await services.aclose()
        logger.info("Chat server stopped")

    app = FastAPI(title="Chat Pipeline Server", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def session_middleware(request: Request, call_next):
        ip_address = client_ip(request)
        session, was_created, was_rotated = services.sessions.ensure_session(
            requested_id=request.headers.get(SESSION_HEADER),
            ip_address=ip_address,
            user_agent=request.headers.get("user-agent"),
        )
        request.state.session = session
        request.state.ip_address = ip_address
        request.state.session_status = ("rotated" if was_rotated else "new") if was_created else None

        response = await call_next(request)

        response.headers[SESSION_HEADER] = request.state.session.id
        if request.state.session_status:
            response.headers[SESSION_STATUS_HEADER] = request.state.session_status
        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        # Stable error surface: no internal traces
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled request exception",
            path=request.url.path,
            error=str(exc),
            exception_type=type(exc).__name__,
        )
        return JSONResponse(status_code=500, content={"error": "internal_error"})

    app.include_router(conversations_router)
    app.include_router(sessions_router)
    app.include_router(voice_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "component": "chat_server"}

    return app
