"""
Speech synthesis and transcription on top of the model gateway.
"""
from __future__ import annotations

import time
from typing import Optional

from logging_setup import get_logger, Component
from .config import SpeechConfig
from .errors import UpstreamFailure
from .models import Attachment, AudioPayload
from .openai_client import OpenAIClient

logger = get_logger(Component.SPECIALIST)

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "opus": "audio/ogg",
    "pcm": "audio/pcm",
    "aac": "audio/aac",
}


class SpeechSynthesisError(Exception):
    """Text-to-speech failed; the turn continues without audio."""


class SpeechSynthesizer:

    def __init__(self, client: OpenAIClient, config: SpeechConfig):
        self._client = client
        self._config = config

    async def synthesize(self, text: str, description: Optional[str] = None) -> AudioPayload:
        if not text.strip():
            raise SpeechSynthesisError("Cannot synthesize empty text")
        start_ts = time.perf_counter()
        try:
            data = await self._client.synthesize_speech(
                text,
                model=self._config.model,
                voice=self._config.voice,
                response_format=self._config.response_format,
            )
        except UpstreamFailure as e:
            raise SpeechSynthesisError(f"Speech synthesis failed: {e.category}") from e
        logger.info(
            "Speech synthesized",
            bytes=len(data),
            voice=self._config.voice,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return AudioPayload(
            mime_type=MIME_TYPES.get(self._config.response_format, "audio/mpeg"),
            data=data,
            description=description,
        )


class Transcriber:

    def __init__(self, client: OpenAIClient, config: SpeechConfig):
        self._client = client
        self._config = config

    async def transcribe(self, attachment: Attachment) -> str:
        start_ts = time.perf_counter()
        text = await self._client.transcribe(
            attachment.data,
            filename=attachment.filename,
            mime_type=attachment.mime_type,
            model=self._config.transcription_model,
        )
        logger.info(
            "Audio transcribed",
            file_name=attachment.filename,
            chars=len(text),
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return text
