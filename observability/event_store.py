"""
Append-only audit log, one file per conversation.

Each conversation gets `<log_dir>/<conversation_id>.log` holding one JSON
object per line. Entries are never rewritten; readers tail the file.
"""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from logging_setup import get_logger, Component

logger = get_logger(Component.CHAT_SERVER)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class AuditEntry:
    """A single audit event as written to disk."""

    event: str
    conversation_id: str
    severity: str = "info"
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    responder: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "ts": self.ts.isoformat(),
            "event": self.event,
            "conversation_id": self.conversation_id,
            "severity": self.severity,
        }
        if self.session_id:
            result["session_id"] = self.session_id
        if self.ip_address:
            result["ip_address"] = self.ip_address
        if self.responder:
            result["responder"] = self.responder
        result["payload"] = self.payload
        return result


class EventStore:
    """
    File-backed event store.

    Writes are serialized with a lock so concurrent turns for different
    conversations never interleave partial lines.
    """

    def __init__(self, log_dir: str | Path):
        self._log_dir = Path(log_dir)
        self._lock = threading.Lock()

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def _path_for(self, conversation_id: str) -> Path:
        return self._log_dir / f"{_SAFE_NAME.sub('_', conversation_id)}.log"

    def append(self, entry: AuditEntry) -> Dict[str, Any]:
        """Append an entry and return the serialized dict."""
        record = entry.to_dict()
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(self._path_for(entry.conversation_id), "a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")
        return record

    def query(
        self,
        conversation_id: str,
        event_type: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> List[Dict[str, Any]]:
        """
        Return the most recent entries for a conversation (oldest first).

        Args:
            conversation_id: Conversation whose log to read
            event_type: Only return entries with this event kind
            limit: Maximum number of entries (None for all)
        """
        path = self._path_for(conversation_id)
        if not path.exists():
            return []

        with self._lock:
            with open(path, encoding="utf-8") as f:
                lines = f.readlines()

        results: List[Dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable audit line", conversation_id=conversation_id)
                continue
            if event_type and entry.get("event") != event_type:
                continue
            results.append(entry)

        if limit is not None:
            results = results[-limit:] if limit > 0 else []
        return results
