"""
Pipeline configuration.

All feature flags and limits are read once at startup by `AppConfig.from_env()`
and handed to each component's constructor. Values come from environment
variables; `.env_local` / `.env` in the project root are loaded first without
overriding variables that are already set.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv


def load_env_files(root: Optional[Path] = None) -> None:
    """Load .env_local / .env (local dev convenience, never overrides)."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """
    Read an environment variable, stripping inline comments and whitespace.

    Handles cases like:
    - "300  # comment" -> "300"
    - "   " -> None
    """
    value = os.environ.get(key)
    if value is None:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: int) -> int:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool = False) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_list_env(key: str, default: Tuple[str, ...]) -> FrozenSet[str]:
    value = _clean_env(key)
    if value is None:
        return frozenset(default)
    return frozenset(item.strip() for item in value.split(",") if item.strip())


def _parse_limit_env(key: str, default: int) -> Optional[int]:
    """
    Parse a usage limit.

    Unset or empty -> default; non-positive or unparsable -> None (unlimited).
    """
    value = _clean_env(key)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


DEFAULT_ALLOWED_ATTACHMENT_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
    "text/markdown",
    "audio/webm",
    "audio/webm;codecs=opus",
    "audio/mpeg",
    "audio/mp3",
)

# event -> (env suffix, per-session default, per-origin default)
USAGE_LIMIT_DEFAULTS: Dict[str, Tuple[str, int, int]] = {
    "message": ("MESSAGES", 200, 400),
    "file_upload": ("FILE_UPLOADS", 20, 40),
    "audio_transcription": ("AUDIO_TRANSCRIPTIONS", 50, 80),
    "tts_generation": ("TTS", 200, 400),
    "voice_session": ("VOICE_SESSIONS", 40, 60),
}


@dataclass(frozen=True)
class OpenAIConfig:
    """Model gateway access."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: float = 30.0
    chat_model: str = "gpt-4o-mini"
    use_prompt_security: bool = False
    prompt_security_app_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "OpenAIConfig":
        use_ps = _parse_bool_env("USE_PROMPT_SECURITY")
        app_id = _clean_env("PROMPT_SECURITY_APP_ID")
        if use_ps and not app_id:
            raise ValueError("PROMPT_SECURITY_APP_ID is required when USE_PROMPT_SECURITY is enabled")
        return cls(
            api_key=_clean_env("OPENAI_API_KEY") or "",
            base_url=(_clean_env("OPENAI_BASE_URL") or cls.base_url).rstrip("/"),
            timeout_seconds=_parse_float_env("OPENAI_TIMEOUT_SECONDS", cls.timeout_seconds),
            chat_model=_clean_env("OPENAI_CHAT_MODEL") or cls.chat_model,
            use_prompt_security=use_ps,
            prompt_security_app_id=app_id,
        )


@dataclass(frozen=True)
class StorageConfig:
    """Where persisted state lives."""

    storage_dir: Path = Path("storage")
    log_dir: Path = Path("logs")

    @property
    def usage_file(self) -> Path:
        return self.storage_dir / "usage.json"

    @property
    def sessions_file(self) -> Path:
        return self.storage_dir / "sessions.json"

    @classmethod
    def from_env(cls) -> "StorageConfig":
        return cls(
            storage_dir=Path(_clean_env("STORAGE_DIR") or "storage"),
            log_dir=Path(_clean_env("LOG_DIR") or "logs"),
        )


@dataclass(frozen=True)
class InputGuardConfig:
    max_attachment_bytes: int = 10 * 1024 * 1024
    allowed_attachment_types: FrozenSet[str] = frozenset(DEFAULT_ALLOWED_ATTACHMENT_TYPES)
    moderation_enabled: bool = False
    moderation_threshold: float = 0.5
    moderation_model: str = "omni-moderation-latest"
    transcription_confirmation_enabled: bool = False
    min_transcription_length: int = 6

    def __post_init__(self):
        # Clamp without breaking frozen semantics
        object.__setattr__(self, "moderation_threshold", min(1.0, max(0.0, self.moderation_threshold)))

    @classmethod
    def from_env(cls) -> "InputGuardConfig":
        return cls(
            max_attachment_bytes=_parse_int_env("INPUT_ATTACHMENT_MAX_BYTES", cls.max_attachment_bytes),
            allowed_attachment_types=frozenset(
                t.lower() for t in _parse_list_env("INPUT_ALLOWED_ATTACHMENT_TYPES", DEFAULT_ALLOWED_ATTACHMENT_TYPES)
            ),
            moderation_enabled=_parse_bool_env("ENABLE_INPUT_MODERATION"),
            moderation_threshold=_parse_float_env("INPUT_MODERATION_THRESHOLD", cls.moderation_threshold),
            moderation_model=_clean_env("INPUT_MODERATION_MODEL") or cls.moderation_model,
            transcription_confirmation_enabled=_parse_bool_env("ENABLE_TRANSCRIPTION_CONFIRMATION"),
            min_transcription_length=_parse_int_env("MIN_TRANSCRIPTION_LENGTH", cls.min_transcription_length),
        )


@dataclass(frozen=True)
class ResponseGuardConfig:
    enabled: bool = False
    responders: FrozenSet[str] = frozenset({"summarizer"})
    recovery: str = "clarify"
    model: str = "gpt-4o-mini"

    @classmethod
    def from_env(cls) -> "ResponseGuardConfig":
        recovery = (_clean_env("RESPONSE_GUARD_RECOVERY") or "clarify").lower()
        if recovery not in ("retry", "clarify", "log_only"):
            recovery = "clarify"
        return cls(
            enabled=_parse_bool_env("ENABLE_RESPONSE_GUARD"),
            responders=_parse_list_env("RESPONSE_GUARD_RESPONDERS", ("summarizer",)),
            recovery=recovery,
            model=_clean_env("RESPONSE_GUARD_MODEL") or cls.model,
        )


@dataclass(frozen=True)
class UsageLimitConfig:
    """Per-event quotas. None means unlimited for that scope."""

    session_limits: Dict[str, Optional[int]] = field(
        default_factory=lambda: {event: d[1] for event, d in USAGE_LIMIT_DEFAULTS.items()}
    )
    origin_limits: Dict[str, Optional[int]] = field(
        default_factory=lambda: {event: d[2] for event, d in USAGE_LIMIT_DEFAULTS.items()}
    )
    logs_enabled: bool = False

    @classmethod
    def from_env(cls) -> "UsageLimitConfig":
        session_limits: Dict[str, Optional[int]] = {}
        origin_limits: Dict[str, Optional[int]] = {}
        for event, (suffix, session_default, origin_default) in USAGE_LIMIT_DEFAULTS.items():
            session_limits[event] = _parse_limit_env(f"USAGE_LIMIT_{suffix}_PER_SESSION", session_default)
            origin_limits[event] = _parse_limit_env(f"USAGE_LIMIT_{suffix}_PER_ORIGIN", origin_default)
        return cls(
            session_limits=session_limits,
            origin_limits=origin_limits,
            logs_enabled=_parse_bool_env("ENABLE_USAGE_LOGS"),
        )


@dataclass(frozen=True)
class OrchestratorConfig:
    tts_enabled: bool = False
    tts_responders: FrozenSet[str] = frozenset({"summarizer"})
    max_turn_items: int = 8
    planner_history_window: int = 8

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        return cls(
            tts_enabled=_parse_bool_env("ENABLE_TTS_RESPONSES"),
            tts_responders=_parse_list_env("TTS_RESPONSE_RESPONDERS", ("summarizer",)),
            max_turn_items=max(1, _parse_int_env("MAX_TURN_ITEMS", cls.max_turn_items)),
            planner_history_window=max(1, _parse_int_env("PLANNER_HISTORY_WINDOW", cls.planner_history_window)),
        )


@dataclass(frozen=True)
class SpeechConfig:
    model: str = "gpt-4o-mini-tts"
    voice: str = "alloy"
    response_format: str = "mp3"
    transcription_model: str = "gpt-4o-mini-transcribe"

    @classmethod
    def from_env(cls) -> "SpeechConfig":
        return cls(
            model=_clean_env("OPENAI_SPEECH_MODEL") or cls.model,
            voice=_clean_env("OPENAI_SPEECH_VOICE") or cls.voice,
            response_format=(_clean_env("OPENAI_SPEECH_FORMAT") or cls.response_format).lower(),
            transcription_model=_clean_env("OPENAI_TRANSCRIPTION_MODEL") or cls.transcription_model,
        )


@dataclass(frozen=True)
class RealtimeConfig:
    live_mode_enabled: bool = False
    model: str = "gpt-4o-realtime-preview"
    voice: str = "verse"
    modalities: Tuple[str, ...] = ("audio", "text")
    instructions: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RealtimeConfig":
        modalities = _clean_env("OPENAI_REALTIME_MODALITIES")
        return cls(
            live_mode_enabled=_parse_bool_env("ENABLE_VOICE_LIVE_MODE"),
            model=_clean_env("OPENAI_REALTIME_MODEL") or cls.model,
            voice=_clean_env("OPENAI_REALTIME_VOICE") or cls.voice,
            modalities=tuple(m.strip() for m in modalities.split(",") if m.strip()) if modalities else cls.modalities,
            instructions=os.environ.get("OPENAI_REALTIME_INSTRUCTIONS") or None,
        )


@dataclass(frozen=True)
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=_clean_env("HOST") or cls.host,
            port=_parse_int_env("PORT", cls.port),
            log_level=(_clean_env("LOG_LEVEL") or cls.log_level).upper(),
        )


@dataclass(frozen=True)
class AppConfig:
    """Everything the process needs, built once at startup."""

    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    input_guard: InputGuardConfig = field(default_factory=InputGuardConfig)
    response_guard: ResponseGuardConfig = field(default_factory=ResponseGuardConfig)
    usage: UsageLimitConfig = field(default_factory=UsageLimitConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    realtime: RealtimeConfig = field(default_factory=RealtimeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls, load_files: bool = True) -> "AppConfig":
        """Load configuration from environment variables."""
        if load_files:
            load_env_files()
        return cls(
            openai=OpenAIConfig.from_env(),
            storage=StorageConfig.from_env(),
            input_guard=InputGuardConfig.from_env(),
            response_guard=ResponseGuardConfig.from_env(),
            usage=UsageLimitConfig.from_env(),
            orchestrator=OrchestratorConfig.from_env(),
            speech=SpeechConfig.from_env(),
            realtime=RealtimeConfig.from_env(),
            server=ServerConfig.from_env(),
        )
