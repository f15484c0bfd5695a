"""Conversation audit trail: typed event emitter and per-conversation log files."""
