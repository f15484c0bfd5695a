"""
Document specialist: summarizes a text-like attachment.

Uploaded bytes are never written to disk; only text formats are decoded.
"""
from __future__ import annotations

from typing import Optional

from ..models import Attachment, SpecialistResult, TokenUsage
from ..openai_client import OpenAIClient
from .base import SpecialistContext

MAX_SUMMARY_INPUT = 6000  # characters
TEXT_EXTENSIONS = (".txt", ".md", ".markdown")


def extract_text(attachment: Attachment) -> Optional[str]:
    """Return decoded text for text-like attachments, None otherwise."""
    mime = attachment.mime_type.lower()
    if mime.startswith("text/") or attachment.filename.lower().endswith(TEXT_EXTENSIONS):
        return attachment.data.decode("utf-8", errors="replace")
    return None


def readable_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


class DocumentSpecialist:
    id = "document_store"
    name = "Document Store"

    def __init__(self, client: OpenAIClient):
        self._client = client

    async def _summarize(self, text: str):
        trimmed = f"{text[:MAX_SUMMARY_INPUT]}..." if len(text) > MAX_SUMMARY_INPUT else text
        return await self._client.chat_completion(
            [
                {"role": "system", "content": "You summarize documents for storage metadata. Keep it under 120 words."},
                {"role": "user", "content": f"Summarize the following document:\n\n{trimmed}"},
            ],
            temperature=0.4,
        )

    async def handle(self, context: SpecialistContext) -> SpecialistResult:
        attachment = next((a for a in context.attachments if not a.is_audio), None)
        if attachment is None:
            return SpecialistResult(content="No document was provided.", debug={"attachments": []})

        text = extract_text(attachment)
        usage = None
        summary = "Summary unavailable for this file type."
        if text and text.strip():
            result = await self._summarize(text)
            summary = result["content"] or "Summary unavailable."
            usage = TokenUsage.from_openai(result.get("usage"), result.get("model"))

        content = (
            "# Document Analysis\n\n"
            f"- Filename: {attachment.filename}\n"
            f"- MIME type: {attachment.mime_type}\n"
            f"- File size: {readable_size(attachment.size)}\n\n"
            f"## Summary\n{summary}"
        )
        return SpecialistResult(
            content=content,
            debug={
                "mimetype": attachment.mime_type,
                "size": attachment.size,
                "summary": summary,
                "session_id": context.session_id,
                "conversation_id": context.conversation.id,
            },
            usage=usage,
        )
