"""
Usage ledger: per-key, per-day counters.

Two keyspaces are tracked side by side, `session` and `origin` (network
address). Every bucket carries the UTC day it was last touched; any read or
write first compares that day with today and resets the bucket when they
differ. There is no background sweep.

Snapshot format (usage.json):
    {
      "sessions": {"<key>": {"<event>": {"day": "2024-05-01", "count": 3}}},
      "origins":  {...},
      "tokens": {
        "sessions": {"<key>": {"day": ..., "prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}},
        "origins":  {...}
      }
    }
"""
from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from logging_setup import get_logger, Component

logger = get_logger(Component.USAGE)


class UsageEvent(str, Enum):
    """Metered event types."""
    MESSAGE = "message"
    FILE_UPLOAD = "file_upload"
    AUDIO_TRANSCRIPTION = "audio_transcription"
    TTS_GENERATION = "tts_generation"
    VOICE_SESSION = "voice_session"


class Scope(str, Enum):
    SESSION = "session"
    ORIGIN = "origin"

    @property
    def store_key(self) -> str:
        return "sessions" if self is Scope.SESSION else "origins"


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


@dataclass
class CounterBucket:
    day: str
    count: int = 0


@dataclass
class TokenBucket:
    day: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class UsageCount:
    session: int
    origin: Optional[int] = None


class UsageLedger:
    """
    Thread-safe usage ledger with optional JSON persistence.

    Callers that need check-then-record atomicity hold `transaction()` across
    both steps; the lock is re-entrant.
    """

    def __init__(self, path: Optional[Path] = None, today: Callable[[], str] = utc_today):
        self._path = Path(path) if path else None
        self._today = today
        self._lock = threading.RLock()
        self._dirty = False
        self._counters: Dict[str, Dict[str, Dict[str, CounterBucket]]] = {"sessions": {}, "origins": {}}
        self._tokens: Dict[str, Dict[str, TokenBucket]] = {"sessions": {}, "origins": {}}
        self._load()

    @contextmanager
    def transaction(self) -> Iterator["UsageLedger"]:
        with self._lock:
            yield self
            self.flush()

    # --- persistence ---

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Usage snapshot unreadable, starting empty", path=str(self._path), error=str(e))
            return
        if not isinstance(data, dict):
            return

        for store_key in ("sessions", "origins"):
            for key, events in (data.get(store_key) or {}).items():
                if not isinstance(events, dict):
                    continue
                for event, bucket in events.items():
                    if isinstance(bucket, dict) and isinstance(bucket.get("day"), str):
                        self._counters[store_key].setdefault(key, {})[event] = CounterBucket(
                            day=bucket["day"], count=int(bucket.get("count") or 0)
                        )
            tokens = (data.get("tokens") or {}).get(store_key) or {}
            for key, bucket in tokens.items():
                if isinstance(bucket, dict) and isinstance(bucket.get("day"), str):
                    self._tokens[store_key][key] = TokenBucket(
                        day=bucket["day"],
                        prompt_tokens=int(bucket.get("prompt_tokens") or 0),
                        completion_tokens=int(bucket.get("completion_tokens") or 0),
                        total_tokens=int(bucket.get("total_tokens") or 0),
                    )

    def flush(self) -> None:
        """Write the snapshot if anything changed since the last write."""
        with self._lock:
            if not self._dirty or not self._path:
                self._dirty = False
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self.summarize(), f, indent=2)
            tmp.replace(self._path)
            self._dirty = False

    # --- buckets ---

    def _counter_bucket(self, scope: Scope, key: str, event: str) -> CounterBucket:
        today = self._today()
        events = self._counters[scope.store_key].setdefault(key, {})
        bucket = events.get(event)
        if bucket is None:
            bucket = events[event] = CounterBucket(day=today)
            self._dirty = True
        elif bucket.day != today:
            bucket.day = today
            bucket.count = 0
            self._dirty = True
        return bucket

    def _token_bucket(self, scope: Scope, key: str) -> TokenBucket:
        today = self._today()
        buckets = self._tokens[scope.store_key]
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = TokenBucket(day=today)
            self._dirty = True
        elif bucket.day != today:
            buckets[key] = bucket = TokenBucket(day=today)
            self._dirty = True
        return bucket

    # --- counters ---

    def get_count(self, event: UsageEvent | str, session_key: str, origin_key: Optional[str] = None) -> UsageCount:
        event = UsageEvent(event).value
        with self.transaction():
            session = self._counter_bucket(Scope.SESSION, session_key, event).count
            origin = self._counter_bucket(Scope.ORIGIN, origin_key, event).count if origin_key else None
            return UsageCount(session=session, origin=origin)

    def record(self, event: UsageEvent | str, session_key: str, origin_key: Optional[str] = None,
               units: int = 1) -> UsageCount:
        if units < 1:
            raise ValueError("units must be a positive integer")
        event = UsageEvent(event).value
        with self.transaction():
            session_bucket = self._counter_bucket(Scope.SESSION, session_key, event)
            session_bucket.count += units
            origin = None
            if origin_key:
                origin_bucket = self._counter_bucket(Scope.ORIGIN, origin_key, event)
                origin_bucket.count += units
                origin = origin_bucket.count
            self._dirty = True
            return UsageCount(session=session_bucket.count, origin=origin)

    # --- tokens ---

    def get_token_usage(self, session_key: str, origin_key: Optional[str] = None) -> Dict[str, Any]:
        with self.transaction():
            result: Dict[str, Any] = {"session": asdict(self._token_bucket(Scope.SESSION, session_key))}
            if origin_key:
                result["origin"] = asdict(self._token_bucket(Scope.ORIGIN, origin_key))
            return result

    def record_tokens(self, session_key: str, origin_key: Optional[str] = None, *, prompt_tokens: int = 0,
                      completion_tokens: int = 0, total_tokens: int = 0) -> None:
        with self.transaction():
            targets = [self._token_bucket(Scope.SESSION, session_key)]
            if origin_key:
                targets.append(self._token_bucket(Scope.ORIGIN, origin_key))
            for bucket in targets:
                bucket.prompt_tokens += prompt_tokens
                bucket.completion_tokens += completion_tokens
                bucket.total_tokens += total_tokens
            self._dirty = True

    def summarize(self) -> Dict[str, Any]:
        """Serializable snapshot of every bucket, as stored on disk."""
        with self._lock:
            return {
                "sessions": {
                    key: {event: asdict(b) for event, b in events.items()}
                    for key, events in self._counters["sessions"].items()
                },
                "origins": {
                    key: {event: asdict(b) for event, b in events.items()}
                    for key, events in self._counters["origins"].items()
                },
                "tokens": {
                    "sessions": {key: asdict(b) for key, b in self._tokens["sessions"].items()},
                    "origins": {key: asdict(b) for key, b in self._tokens["origins"].items()},
                },
            }
