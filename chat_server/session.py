"""
Session registry.

Maps a client-presented identifier to a durable session record. Only a
well-formed UUID (versions 1-5) that we already know and that has not been
rotated away is reused; anything else gets a freshly minted identifier.
Records are written through to `sessions.json` after every change.
"""
from __future__ import annotations

import json
import re
import threading
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from logging_setup import get_logger, Component

logger = get_logger(Component.SESSION_REGISTRY)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_session_id(value: Optional[str]) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionRecord:
    """A browser/client session."""

    id: str
    created_at: datetime
    last_seen: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    expired_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        return self.expired_at is not None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "last_seen", "expired_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        expired = data.get("expired_at")
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_seen=datetime.fromisoformat(data["last_seen"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            expired_at=datetime.fromisoformat(expired) if expired else None,
        )


class SessionRegistry:

    def __init__(self, path: Optional[Path] = None, now: Callable[[], datetime] = _utc_now):
        self._path = Path(path) if path else None
        self._now = now
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionRecord] = {}
        self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            with open(self._path, encoding="utf-8") as f:
                records = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Session file unreadable, starting empty", path=str(self._path), error=str(e))
            return
        if not isinstance(records, list):
            return
        for raw in records:
            if not isinstance(raw, dict):
                continue
            try:
                record = SessionRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                continue
            if is_session_id(record.id):
                self._sessions[record.id] = record

    def _persist(self) -> None:
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in self._sessions.values()], f, indent=2)
        tmp.replace(self._path)

    def _mint(self, ip_address: Optional[str], user_agent: Optional[str]) -> SessionRecord:
        now = self._now()
        record = SessionRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            last_seen=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._sessions[record.id] = record
        return record

    def ensure_session(
        self,
        requested_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[SessionRecord, bool, bool]:
        """
        Resolve or create a session.

        Returns:
            (session, was_created, was_rotated). `was_rotated` means a
            well-formed identifier was presented but could not be reused.
        """
        with self._lock:
            session = None
            well_formed = is_session_id(requested_id)
            if well_formed:
                candidate = self._sessions.get(requested_id.lower())
                if candidate is not None and not candidate.is_expired:
                    session = candidate

            was_created = session is None
            was_rotated = was_created and well_formed
            if session is None:
                session = self._mint(ip_address, user_agent)
                logger.info("Session created", session_id=session.id, rotated=was_rotated)

            session.last_seen = self._now()
            if ip_address:
                session.ip_address = ip_address
            if user_agent:
                session.user_agent = user_agent
            self._persist()
            return session, was_created, was_rotated

    def reset_session(
        self,
        previous_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord:
        """Expire `previous_id` (if known) and mint a replacement."""
        with self._lock:
            prior = self._sessions.get(previous_id) if previous_id else None
            if prior is not None and not prior.is_expired:
                prior.expired_at = self._now()
            session = self._mint(ip_address, user_agent)
            self._persist()
            logger.info("Session reset", session_id=session.id, previous_session_id=previous_id)
            return session

    def touch_session(self, session_id: str, ip_address: Optional[str] = None) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            session.last_seen = self._now()
            if ip_address:
                session.ip_address = ip_address
            self._persist()

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Live session by id; expired sessions are hidden."""
        session = self._sessions.get(session_id)
        if session is None or session.is_expired:
            return None
        return session

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self._sessions.values()]
