"""
Shared fixtures and in-process fakes for the chat pipeline tests.

The fakes stand in for the model gateway: planner, specialists, evaluator,
moderator and the realtime client. Nothing here touches the network.
"""
from typing import Any, Dict, List, Optional

import pytest

from observability.event_store import EventStore
from observability.events import EventEmitter
from guards.input_guard import InputGuard
from guards.response_guard import ResponseGuard
from orchestration.config import (
    AppConfig,
    InputGuardConfig,
    OrchestratorConfig,
    RealtimeConfig,
    ResponseGuardConfig,
    StorageConfig,
    UsageLimitConfig,
)
from orchestration.conversation_store import ConversationStore
from orchestration.errors import UpstreamFailure
from orchestration.models import AudioPayload, Plan, SpecialistResult
from orchestration.orchestrator import Orchestrator
from orchestration.specialists import SpecialistRegistry
from usage_limits import UsageLedger, UsageLimiter
from voice_bridge.bridge import RealtimeVoiceBridge
from voice_bridge.client import RealtimeSession


class FakePlanner:
    """Returns queued plans in order; an empty plan once they run out."""

    def __init__(self, plans: Optional[List[Plan]] = None, error: Optional[Exception] = None):
        self.plans = list(plans or [])
        self.error = error
        self.calls: List[str] = []

    async def plan(self, conversation, user_message):
        self.calls.append(user_message)
        if self.error:
            raise self.error
        return self.plans.pop(0) if self.plans else Plan()


class FakeSpecialist:
    """Replies with queued results (or a canned echo) and records what it saw."""

    def __init__(self, tag: str, replies: Optional[List[Any]] = None, error: Optional[Exception] = None):
        self.id = tag
        self.name = tag.title()
        self.replies = list(replies or [])
        self.error = error
        self.calls: List[str] = []

    async def handle(self, context):
        self.calls.append(context.user_message)
        if self.error:
            raise self.error
        if self.replies:
            reply = self.replies.pop(0)
            return reply if isinstance(reply, SpecialistResult) else SpecialistResult(content=reply)
        return SpecialistResult(content=f"{self.id} reply")


class FakeEvaluator:
    """Returns queued raw verdicts; raises UpstreamFailure when told to."""

    def __init__(self, replies: Optional[List[str]] = None, fail: bool = False):
        self.replies = list(replies or [])
        self.fail = fail
        self.prompts: List[str] = []

    async def evaluate(self, system_instruction, prompt):
        self.prompts.append(prompt)
        if self.fail:
            raise UpstreamFailure("evaluator down")
        return self.replies.pop(0) if self.replies else '{"status": "ok"}'


class FakeModerator:

    def __init__(self, result: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.result = result or {"flagged": False, "category_scores": {}}
        self.error = error
        self.calls: List[str] = []

    async def moderate(self, text):
        self.calls.append(text)
        if self.error:
            raise self.error
        return self.result


class FakeSynthesizer:

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[str] = []

    async def synthesize(self, text, description=None):
        self.calls.append(text)
        if self.error:
            raise self.error
        return AudioPayload(mime_type="audio/mpeg", data=b"mp3-bytes", description=description)


class FakeRealtimeClient:
    """Realtime client double: fixed session, fixed answer, scripted event stream."""

    def __init__(self, events: Optional[List[Any]] = None, create_error: Optional[Exception] = None):
        self.events = list(events or [])
        self.create_error = create_error
        self.offers: List[str] = []
        self.created = 0

    async def create_session(self):
        if self.create_error:
            raise self.create_error
        self.created += 1
        return RealtimeSession(
            id=f"rt-{self.created}",
            model="gpt-4o-realtime-preview",
            client_secret="secret-value",
            voice="verse",
            client_secret_expires_at=1700000000,
        )

    async def exchange_offer(self, client_secret, offer_sdp):
        self.offers.append(offer_sdp)
        return "v=0 answer"

    async def stream_events(self, session_id, client_secret):
        for event in self.events:
            yield event

    async def aclose(self):
        pass


@pytest.fixture
def event_store(tmp_path):
    return EventStore(tmp_path / "logs")


@pytest.fixture
def emitter(event_store):
    return EventEmitter(event_store)


@pytest.fixture
def usage_config():
    return UsageLimitConfig(logs_enabled=True)


@pytest.fixture
def ledger(tmp_path):
    return UsageLedger(tmp_path / "storage" / "usage.json")


@pytest.fixture
def limiter(ledger, usage_config, emitter):
    return UsageLimiter(ledger, usage_config, emitter)


@pytest.fixture
def make_orchestrator(emitter, limiter):
    """Build an Orchestrator around fakes; every part can be overridden."""

    def _make(
        planner=None,
        specialists=None,
        input_config=None,
        moderator=None,
        guard_config=None,
        evaluator=None,
        config=None,
        synthesizer=None,
    ):
        registry = SpecialistRegistry(specialists or [FakeSpecialist("greeting")])
        return Orchestrator(
            store=ConversationStore(),
            planner=planner or FakePlanner(),
            specialists=registry,
            input_guard=InputGuard(input_config or InputGuardConfig(), moderator=moderator, emitter=emitter),
            response_guard=ResponseGuard(
                guard_config or ResponseGuardConfig(),
                evaluator=evaluator,
                emitter=emitter,
            ),
            emitter=emitter,
            config=config or OrchestratorConfig(),
            synthesizer=synthesizer,
            limiter=limiter,
        )

    return _make


@pytest.fixture
def make_app_config(tmp_path):
    def _make(usage=None, live_mode=False):
        return AppConfig(
            storage=StorageConfig(storage_dir=tmp_path / "storage", log_dir=tmp_path / "logs"),
            usage=usage or UsageLimitConfig(),
            realtime=RealtimeConfig(live_mode_enabled=live_mode),
        )

    return _make


@pytest.fixture
def make_services(make_app_config, make_orchestrator, event_store, emitter):
    """Assemble chat_server Services from fakes, with a fresh ledger per call."""
    from chat_server.server import Services
    from chat_server.session import SessionRegistry

    def _make(orchestrator=None, usage=None, live_mode=False, realtime_client=None):
        config = make_app_config(usage=usage, live_mode=live_mode)
        limiter = UsageLimiter(UsageLedger(config.storage.usage_file), config.usage, emitter)
        bridge = RealtimeVoiceBridge(realtime_client or FakeRealtimeClient(), limiter, emitter)
        services = Services(
            config=config,
            sessions=SessionRegistry(config.storage.sessions_file),
            event_store=event_store,
            emitter=emitter,
            limiter=limiter,
            orchestrator=orchestrator or make_orchestrator(),
            voice_bridge=bridge,
        )
        bridge.set_forwarder(services.forward_voice_turn)
        return services

    return _make
