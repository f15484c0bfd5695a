"""HTTP surface of the chat pipeline: sessions, conversations and voice."""
