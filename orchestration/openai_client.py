"""
Model gateway client (chat completions, moderation, speech, transcription).

A single pooled aiohttp session is shared by the planner, the specialists,
both guards and the speech synthesizer. When the prompt-security gateway is
enabled its app id is sent with every request.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

import aiohttp

from logging_setup import get_logger, Component
from .config import OpenAIConfig
from .errors import UpstreamFailure, UpstreamErrorCategory, classify_upstream_error

logger = get_logger(Component.OPENAI_CLIENT)


class OpenAIClient:

    def __init__(self, config: OpenAIConfig, pool_size: int = 10):
        if not config.api_key:
            raise ValueError("OpenAI client requires a valid API key in OPENAI_API_KEY")
        self._config = config
        self._pool_size = pool_size
        self._http_session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

    @property
    def config(self) -> OpenAIConfig:
        return self._config

    def _headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self._config.api_key}"}
        if self._config.use_prompt_security and self._config.prompt_security_app_id:
            headers["ps-app-id"] = self._config.prompt_security_app_id
        return headers

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        """
        Get or create the shared HTTP session with connection pooling.

        Reuses TCP connections between requests to reduce latency.
        """
        if self._http_session is None or self._http_session.closed:
            self._connector = aiohttp.TCPConnector(
                limit=self._pool_size,
                limit_per_host=self._pool_size,
                ttl_dns_cache=300,
                force_close=False,
            )
            self._http_session = aiohttp.ClientSession(
                connector=self._connector,
                timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
            )
            logger.info(
                "Model gateway connection pool created",
                pool_size=self._pool_size,
                total_timeout_ms=int(self._config.timeout_seconds * 1000),
            )
        return self._http_session

    async def aclose(self) -> None:
        """
        Best-effort cleanup of HTTP session and connector.
        Safe to call multiple times.
        """
        if self._http_session is not None:
            try:
                await self._http_session.close()
                logger.info("Model gateway connection pool closed")
            except Exception as e:
                logger.warning(
                    "Error closing model gateway HTTP session",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._http_session = None
                self._connector = None

    async def _request(
        self,
        operation: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        form: Optional[aiohttp.FormData] = None,
        expect: str = "json",
    ) -> Any:
        url = f"{self._config.base_url}{path}"
        session = self._get_or_create_session()
        start_ts = time.perf_counter()
        try:
            async with session.post(url, json=json_body, data=form, headers=self._headers()) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    category = classify_upstream_error(resp.status, detail)
                    logger.warning(
                        "Model gateway request rejected",
                        operation=operation,
                        status=resp.status,
                        category=category,
                        detail=detail[:500],
                        latency_ms=int((time.perf_counter() - start_ts) * 1000),
                    )
                    raise UpstreamFailure(
                        f"{operation} failed with status {resp.status}",
                        category=category,
                        status=resp.status,
                    )
                if expect == "bytes":
                    result = await resp.read()
                elif expect == "text":
                    result = await resp.text()
                else:
                    result = await resp.json(content_type=None)
        except UpstreamFailure:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            category = classify_upstream_error(None, f"{type(e).__name__} {e} connection")
            logger.warning(
                "Model gateway request failed",
                operation=operation,
                category=category,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.perf_counter() - start_ts) * 1000),
            )
            raise UpstreamFailure(f"{operation} failed: {type(e).__name__}", category=category) from e
        except ValueError as e:
            raise UpstreamFailure(
                f"{operation} returned an unreadable body",
                category=UpstreamErrorCategory.BAD_RESPONSE,
            ) from e

        logger.debug(
            "Model gateway request completed",
            operation=operation,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return result

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> Dict[str, Any]:
        """
        Run a chat completion.

        Returns:
            {"content": str, "usage": dict | None, "model": str}
        """
        body: Dict[str, Any] = {"model": model or self._config.chat_model, "messages": messages}
        if temperature is not None:
            body["temperature"] = temperature
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        data = await self._request("chat_completion", "/chat/completions", json_body=body)
        try:
            content = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise UpstreamFailure(
                "chat_completion returned no choices",
                category=UpstreamErrorCategory.BAD_RESPONSE,
            ) from e
        return {"content": content, "usage": data.get("usage"), "model": data.get("model", body["model"])}

    async def moderate(self, text: str, *, model: str) -> Dict[str, Any]:
        """Return the first moderation result ({flagged, category_scores, ...})."""
        data = await self._request("moderation", "/moderations", json_body={"model": model, "input": text})
        results = data.get("results") or []
        if not results:
            raise UpstreamFailure("moderation returned no results", category=UpstreamErrorCategory.BAD_RESPONSE)
        return results[0]

    async def synthesize_speech(self, text: str, *, model: str, voice: str, response_format: str) -> bytes:
        body = {"model": model, "voice": voice, "input": text, "response_format": response_format}
        return await self._request("speech", "/audio/speech", json_body=body, expect="bytes")

    async def transcribe(self, data: bytes, *, filename: str, mime_type: str, model: str) -> str:
        form = aiohttp.FormData()
        form.add_field("model", model)
        form.add_field("response_format", "text")
        form.add_field("file", data, filename=filename, content_type=mime_type or "application/octet-stream")
        text = await self._request("transcription", "/audio/transcriptions", form=form, expect="text")
        return text.strip()
