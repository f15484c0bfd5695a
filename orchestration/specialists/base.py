"""
Specialist dispatch contract.

A specialist turns conversation context plus one user message into a reply.
Specialists are looked up by tag; adding one means registering it, never
touching the orchestrator loop.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol

from ..models import Attachment, Conversation, SpecialistResult


@dataclass
class SpecialistContext:
    conversation: Conversation
    user_message: str
    attachments: List[Attachment] = field(default_factory=list)
    session_id: Optional[str] = None


class Specialist(Protocol):
    id: str
    name: str

    async def handle(self, context: SpecialistContext) -> SpecialistResult:
        ...


class SpecialistRegistry:
    """Lookup of specialists by responder tag."""

    def __init__(self, specialists: Optional[Iterable[Specialist]] = None):
        self._specialists: Dict[str, Specialist] = {}
        for specialist in specialists or []:
            self.register(specialist)

    def register(self, specialist: Specialist) -> None:
        if specialist.id in self._specialists:
            raise ValueError(f"Specialist already registered: {specialist.id}")
        self._specialists[specialist.id] = specialist

    def get(self, tag: str) -> Optional[Specialist]:
        return self._specialists.get(tag)

    def __contains__(self, tag: str) -> bool:
        return tag in self._specialists

    def tags(self) -> List[str]:
        return list(self._specialists)
