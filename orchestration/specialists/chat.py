"""
Prompt-based specialists.

Each profile (greeting, summarizer, input_coach, ...) is a YAML file in
`profiles/` holding the system instruction, temperature, history window and
a prompt template with `{history}` and `{user_message}` placeholders.

Implementation note:
- We use PyYAML's safe_load; a profile must be a mapping at top-level.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from logging_setup import get_logger, Component
from ..models import SpecialistResult, TokenUsage, format_transcript
from ..openai_client import OpenAIClient
from .base import SpecialistContext

logger = get_logger(Component.SPECIALIST)

LANGUAGE_RULE = (
    "Always respond in English unless the user explicitly requests another language. "
    "Do not switch languages based on location or inference."
)


def _get_profiles_dir() -> Path:
    return Path(__file__).parent / "profiles"


@dataclass(frozen=True)
class ChatProfile:
    id: str
    name: str
    system_instruction: str
    prompt: str
    temperature: float = 0.5
    history_window: int = 8
    model: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "<dict>") -> "ChatProfile":
        missing = [key for key in ("id", "system_instruction", "prompt") if not data.get(key)]
        if missing:
            raise ValueError(f"Profile {source} is missing required keys: {', '.join(missing)}")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            system_instruction=str(data["system_instruction"]).strip(),
            prompt=str(data["prompt"]),
            temperature=float(data.get("temperature", 0.5)),
            history_window=int(data.get("history_window", 8)),
            model=data.get("model"),
        )


def load_profile(path: Path) -> ChatProfile:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Profile file {path} must contain a mapping at top-level")
    return ChatProfile.from_dict(data, source=str(path))


def load_profiles(profiles_dir: Optional[Path] = None) -> List[ChatProfile]:
    """Load every *.yaml / *.yml profile, sorted by file name."""
    profiles_dir = profiles_dir or _get_profiles_dir()
    paths = sorted(list(profiles_dir.glob("*.yaml")) + list(profiles_dir.glob("*.yml")))
    return [load_profile(p) for p in paths]


class ChatSpecialist:
    """A specialist that answers with one chat completion."""

    def __init__(self, profile: ChatProfile, client: OpenAIClient):
        self.profile = profile
        self.id = profile.id
        self.name = profile.name
        self._client = client

    def build_prompt(self, context: SpecialistContext) -> str:
        window = self.profile.history_window
        messages = context.conversation.messages[-window:] if window > 0 else []
        history = format_transcript(messages)
        return self.profile.prompt.format(
            history=history or "No previous conversation.",
            user_message=context.user_message,
        )

    async def handle(self, context: SpecialistContext) -> SpecialistResult:
        prompt = self.build_prompt(context)
        start_ts = time.perf_counter()
        result = await self._client.chat_completion(
            [
                {"role": "system", "content": f"{self.profile.system_instruction}\n\n{LANGUAGE_RULE}"},
                {"role": "user", "content": prompt},
            ],
            model=self.profile.model,
            temperature=self.profile.temperature,
        )
        logger.info(
            "Specialist replied",
            responder=self.id,
            conversation_id=context.conversation.id,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return SpecialistResult(
            content=result["content"],
            debug={"prompt": prompt},
            usage=TokenUsage.from_openai(result.get("usage"), result.get("model")),
        )
