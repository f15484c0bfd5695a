"""
Time helper specialist: reports the current local time for a place.

One JSON-mode completion pulls the place out of the user message, then a
LocationResolver maps it to IANA zones. A single match is answered with
the local time; several matches, or none, get a clarifying question
instead of a guess.
"""
from __future__ import annotations

import json
import time
import zoneinfo
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from logging_setup import get_logger, Component
from ..models import SpecialistResult, TokenUsage, format_transcript
from ..openai_client import OpenAIClient
from .base import SpecialistContext

logger = get_logger(Component.SPECIALIST)

HISTORY_WINDOW = 4
MAX_OPTIONS = 5
EXACT_CONFIDENCE = 0.9
PARTIAL_CONFIDENCE = 0.6
MIN_PARTIAL_QUERY = 3

EXTRACTION_INSTRUCTION = (
    "You extract the place whose current local time the user is asking about. "
    'Reply with JSON only: {"location": string | null}. Use the place name as the user wrote it, '
    "including any country or region they gave. Use null when no place is named in the message "
    "or the recent conversation."
)

NO_LOCATION_REPLY = "I could not determine the time. Could you share more about the location (city and country)?"
NO_MATCH_REPLY = (
    "I could not map that location to a timezone. "
    "Could you share a nearby major city or the country as well?"
)


@dataclass(frozen=True)
class LocationMatch:
    city: str
    region: str
    timezone: str
    province: Optional[str] = None
    confidence: float = PARTIAL_CONFIDENCE

    def label(self) -> str:
        place = f"{self.city}, {self.province}" if self.province else self.city
        return f"{place} ({self.region})"


class LocationResolver(Protocol):
    async def resolve(self, query: str) -> List[LocationMatch]:
        """Candidate zones for free-form place text, best first."""
        ...


class ZoneInfoLocationResolver:
    """
    Resolves place names against the IANA zone database.

    Only the city part of a zone key is matched (`America/New_York` answers
    "new york"). Exact names rank above partial ones.
    """

    def __init__(self, zones: Optional[List[str]] = None):
        self._zones = zones
        self._index: Optional[Dict[str, List[LocationMatch]]] = None

    def _build_index(self) -> Dict[str, List[LocationMatch]]:
        index: Dict[str, List[LocationMatch]] = {}
        zones = self._zones if self._zones is not None else zoneinfo.available_timezones()
        for key in sorted(zones):
            parts = key.split("/")
            if len(parts) < 2 or parts[0] in ("Etc", "SystemV"):
                continue
            city = parts[-1].replace("_", " ")
            province = parts[1].replace("_", " ") if len(parts) > 2 else None
            match = LocationMatch(city=city, region=parts[0], timezone=key, province=province)
            index.setdefault(city.lower(), []).append(match)
        return index

    async def resolve(self, query: str) -> List[LocationMatch]:
        normalized = " ".join(query.replace("_", " ").split()).lower()
        if not normalized:
            return []
        if self._index is None:
            self._index = self._build_index()

        # "Paris, France" matches on the city part only
        city_query = normalized.split(",")[0].strip()
        matches = [replace(m, confidence=EXACT_CONFIDENCE) for m in self._index.get(city_query, [])]
        if not matches and len(city_query) >= MIN_PARTIAL_QUERY:
            for name, candidates in self._index.items():
                if city_query in name:
                    matches.extend(candidates)
        return sorted(matches, key=lambda m: (-m.confidence, m.timezone))


def format_local_time(zone: str, now: datetime) -> Optional[Dict[str, str]]:
    """Render `now` in `zone`, or None when the zone key is unknown."""
    try:
        local = now.astimezone(zoneinfo.ZoneInfo(zone))
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        return None
    offset = local.strftime("%z")
    return {
        "time": local.strftime("%A, %d %b %Y %H:%M"),
        "offset": f"{local.tzname()}, UTC{offset[:3]}:{offset[3:]}",
    }


def parse_location(raw: str) -> Optional[str]:
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return None
    location = data.get("location") if isinstance(data, dict) else None
    if not isinstance(location, str) or not location.strip():
        return None
    return location.strip()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimeHelperSpecialist:
    id = "time_helper"
    name = "Time Helper"

    def __init__(
        self,
        client: OpenAIClient,
        resolver: LocationResolver,
        *,
        model: Optional[str] = None,
        now: Callable[[], datetime] = _utc_now,
    ):
        self._client = client
        self._resolver = resolver
        self._model = model
        self._now = now

    def build_prompt(self, context: SpecialistContext) -> str:
        transcript = format_transcript(context.conversation.messages[-HISTORY_WINDOW:])
        parts = [f"Recent conversation:\n{transcript}"] if transcript else []
        parts.append(f"User message: {context.user_message}")
        return "\n\n".join(parts)

    def reply_for(self, matches: List[LocationMatch]) -> str:
        if not matches:
            return NO_MATCH_REPLY

        if len(matches) > 1:
            options = "\n".join(f"- {m.label()}: {m.timezone}" for m in matches[:MAX_OPTIONS])
            return f"I found multiple matches for that location. Could you clarify which one you need?\n{options}"

        match = matches[0]
        local = format_local_time(match.timezone, self._now())
        if local is None:
            return (
                f"I found {match.label()}, but its timezone looked invalid. "
                "Could you double-check the location?"
            )
        return (
            f"Here is the current local time for {match.label()} in {match.timezone}: "
            f"{local['time']} ({local['offset']})."
        )

    async def handle(self, context: SpecialistContext) -> SpecialistResult:
        prompt = self.build_prompt(context)
        start_ts = time.perf_counter()
        result = await self._client.chat_completion(
            [
                {"role": "system", "content": EXTRACTION_INSTRUCTION},
                {"role": "user", "content": prompt},
            ],
            model=self._model,
            temperature=0,
            json_mode=True,
        )
        usage = TokenUsage.from_openai(result.get("usage"), result.get("model"))

        location = parse_location(result["content"])
        matches: List[LocationMatch] = []
        if location is None:
            content = NO_LOCATION_REPLY
        else:
            matches = await self._resolver.resolve(location)
            content = self.reply_for(matches)

        logger.info(
            "Specialist replied",
            responder=self.id,
            conversation_id=context.conversation.id,
            match_count=len(matches),
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return SpecialistResult(
            content=content,
            debug={"prompt": prompt, "location": location, "matches": [asdict(m) for m in matches]},
            usage=usage,
        )
