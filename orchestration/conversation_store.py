"""
In-memory conversation store.

Conversations live for the lifetime of the process. The only mutation is
`append_message`; messages are never edited or removed.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from .models import Conversation, Message, Role, new_id


class ConversationStore:

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}

    def create(self, session_id: Optional[str] = None) -> Conversation:
        conversation = Conversation(id=new_id(), session_id=session_id)
        self._conversations[conversation.id] = conversation
        return conversation

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def append_message(
        self,
        conversation: Conversation,
        role: Role,
        content: str,
        responder: Optional[str] = None,
    ) -> Message:
        message = Message(id=new_id(), role=role, content=content, responder=responder)
        conversation.messages.append(message)
        return message

    def list(self, session_id: Optional[str] = None) -> List[Conversation]:
        conversations = list(self._conversations.values())
        if session_id:
            conversations = [c for c in conversations if c.session_id == session_id]
        return conversations
