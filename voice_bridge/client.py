"""
HTTP client for the external realtime speech service.

- POST /realtime/sessions            create a session, returns a client secret
- POST /realtime/sdp                 exchange a WebRTC offer for an answer
- GET  /realtime/sessions/{id}/events  server-sent event stream
"""
from __future__ import annotations

import asyncio
import codecs
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from logging_setup import get_logger, Component
from orchestration.config import OpenAIConfig, RealtimeConfig
from orchestration.errors import UpstreamErrorCategory, UpstreamFailure, classify_upstream_error
from .sse import SSEDecoder, SSEEvent

logger = get_logger(Component.VOICE_BRIDGE)

REALTIME_BETA_HEADER = "realtime=v1"


@dataclass
class RealtimeSession:
    id: str
    model: str
    client_secret: str
    voice: Optional[str] = None
    instructions: Optional[str] = None
    client_secret_expires_at: Optional[int] = None
    expires_at: Optional[int] = None
    ice_servers: List[Dict[str, Any]] = field(default_factory=list)


async def _raise_for_status(resp: aiohttp.ClientResponse, message: str) -> None:
    if resp.status < 400:
        return
    detail = await resp.text()
    try:
        parsed = json.loads(detail)
        if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
            detail = parsed["error"].get("message") or detail
    except json.JSONDecodeError:
        pass
    raise UpstreamFailure(
        f"{message}: {detail} (status {resp.status})" if detail else f"{message} (status {resp.status})",
        category=classify_upstream_error(resp.status, detail),
        status=resp.status,
    )


class RealtimeClient:

    def __init__(self, openai: OpenAIConfig, realtime: RealtimeConfig):
        if not openai.api_key:
            raise ValueError("OPENAI_API_KEY is required for the realtime client")
        self._openai = openai
        self._realtime = realtime
        self._http_session: Optional[aiohttp.ClientSession] = None

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
        return self._http_session

    async def aclose(self) -> None:
        """Close the HTTP session. Safe to call multiple times."""
        if self._http_session is not None:
            try:
                await self._http_session.close()
            except aiohttp.ClientError as e:
                logger.warning("Error closing realtime HTTP session", error=str(e), error_type=type(e).__name__)
            finally:
                self._http_session = None

    def _headers(self, token: str, content_type: Optional[str] = "application/json") -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {token}", "OpenAI-Beta": REALTIME_BETA_HEADER}
        if content_type:
            headers["Content-Type"] = content_type
        if self._openai.use_prompt_security and self._openai.prompt_security_app_id:
            headers["ps-app-id"] = self._openai.prompt_security_app_id
        return headers

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self._openai.timeout_seconds)

    async def create_session(self) -> RealtimeSession:
        payload: Dict[str, Any] = {
            "model": self._realtime.model,
            "voice": self._realtime.voice,
            "modalities": list(self._realtime.modalities) or ["audio", "text"],
        }
        if self._realtime.instructions:
            payload["instructions"] = self._realtime.instructions

        start_ts = time.perf_counter()
        try:
            async with self._get_or_create_session().post(
                f"{self._openai.base_url}/realtime/sessions",
                json=payload,
                headers=self._headers(self._openai.api_key),
                timeout=self._timeout(),
            ) as resp:
                await _raise_for_status(resp, "Failed to create realtime session")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamFailure(
                f"Failed to create realtime session: {type(e).__name__}",
                category=UpstreamErrorCategory.NETWORK_ERROR,
            ) from e

        secret = (body.get("client_secret") or {}) if isinstance(body, dict) else {}
        if not secret.get("value"):
            raise UpstreamFailure(
                "Realtime session response missing client secret",
                category=UpstreamErrorCategory.BAD_RESPONSE,
            )

        logger.info(
            "Realtime session created",
            realtime_session_id=body.get("id"),
            model=body.get("model"),
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return RealtimeSession(
            id=body.get("id", ""),
            model=body.get("model") or self._realtime.model,
            voice=body.get("voice") or self._realtime.voice,
            instructions=body.get("instructions") or self._realtime.instructions,
            client_secret=secret["value"],
            client_secret_expires_at=secret.get("expires_at"),
            expires_at=body.get("expires_at"),
            ice_servers=body.get("ice_servers") or [],
        )

    async def exchange_offer(self, client_secret: str, offer_sdp: str) -> str:
        """Send an SDP offer, return the SDP answer."""
        try:
            async with self._get_or_create_session().post(
                f"{self._openai.base_url}/realtime/sdp",
                data=offer_sdp,
                headers=self._headers(client_secret, content_type="application/sdp"),
                timeout=self._timeout(),
            ) as resp:
                await _raise_for_status(resp, "Failed to exchange WebRTC offer")
                return await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamFailure(
                f"Failed to exchange WebRTC offer: {type(e).__name__}",
                category=UpstreamErrorCategory.NETWORK_ERROR,
            ) from e

    async def stream_events(self, session_id: str, client_secret: str) -> AsyncIterator[SSEEvent]:
        """
        Yield decoded events until the server closes the stream.

        Only the connect phase is time-limited; the stream itself stays open
        until the server ends it or the consuming task is cancelled.
        """
        headers = self._headers(client_secret, content_type=None)
        headers["Accept"] = "text/event-stream"
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._openai.timeout_seconds)
        decoder = SSEDecoder()
        text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            async with self._get_or_create_session().get(
                f"{self._openai.base_url}/realtime/sessions/{session_id}/events",
                headers=headers,
                timeout=timeout,
            ) as resp:
                await _raise_for_status(resp, "Failed to subscribe to realtime events")
                async for chunk in resp.content.iter_any():
                    for event in decoder.feed(text_decoder.decode(chunk)):
                        yield event
                tail = text_decoder.decode(b"", final=True)
                for event in decoder.feed(tail) + decoder.flush():
                    yield event
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamFailure(
                f"Realtime event stream failed: {type(e).__name__}",
                category=UpstreamErrorCategory.NETWORK_ERROR,
            ) from e
