"""
Voice specialist: transcribes an uploaded audio clip.

The transcript is handed back as a follow-up so the rest of the pipeline
treats it like typed text.
"""
from __future__ import annotations

from ..models import SpecialistResult
from ..speech import Transcriber
from .base import SpecialistContext

SUPPORTED_AUDIO_TYPES = frozenset({
    "audio/webm",
    "audio/webm;codecs=opus",
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/ogg",
})


class VoiceSpecialist:
    id = "voice"
    name = "Voice"

    def __init__(self, transcriber: Transcriber):
        self._transcriber = transcriber

    async def handle(self, context: SpecialistContext) -> SpecialistResult:
        attachment = next((a for a in context.attachments if a.is_audio), None)
        if attachment is None:
            return SpecialistResult(
                content="I did not receive an audio attachment to process.",
                debug={"attachments": [a.mime_type for a in context.attachments]},
            )

        mime = attachment.mime_type.lower().replace(" ", "")
        if mime not in SUPPORTED_AUDIO_TYPES:
            return SpecialistResult(
                content=(
                    f"I cannot process this audio type yet ({attachment.mime_type}). "
                    "Please upload one of the supported formats."
                ),
                debug={"reason": "unsupported_audio_type"},
            )

        transcript = await self._transcriber.transcribe(attachment)
        if not transcript:
            return SpecialistResult(
                content=f"I could not hear any speech in {attachment.filename}.",
                debug={"filename": attachment.filename},
            )

        return SpecialistResult(
            content=f'Transcribed your audio clip ({attachment.filename}): "{transcript}"',
            debug={"filename": attachment.filename, "chars": len(transcript)},
            handoff=transcript,
        )
