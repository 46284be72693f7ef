from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from typing import Any, AsyncIterator, Dict, List

import aiohttp

from ..errors import StreamInterrupted
from .streaming import SSELineDecoder, StreamEvent, parse_sse_line

logger = logging.getLogger("persona_learning.llm")

_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


class CompletionClient:
    """OpenAI-compatible ``/chat/completions`` client (OpenRouter by default)."""

    backend_name = "openai_compatible"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://openrouter.ai/api/v1",
        app_title: str = "",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = int(timeout_seconds)
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self.app_title = app_title
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers())

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self.app_title:
            headers["X-Title"] = self.app_title
        return headers

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    @staticmethod
    def _map_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        mapped: List[Dict[str, str]] = []
        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = str(message.get("content", "")).strip()
            if not content:
                continue
            if role in {"agent", "assistant", "model"}:
                role = "assistant"
            elif role != "system":
                role = "user"
            mapped.append({"role": role, "content": content})
        return mapped

    def _payload(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float | None,
        max_output_tokens: int | None,
        model: str | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self.model,
            "messages": self._map_messages(messages),
            "temperature": self.temperature if temperature is None else temperature,
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            payload["max_tokens"] = int(selected_tokens)
        return payload

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = self._endpoint()
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)
                    if response.status not in _RETRIABLE_STATUSES:
                        raise RuntimeError(f"Completion error {response.status}: {text[:500]}")
                    last_error = RuntimeError(f"Completion retriable error {response.status}: {text[:500]}")
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
                last_error = exc

            if attempt < retries:
                logger.debug("Completion request retry %s/%s after: %s", attempt, retries, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise RuntimeError(f"Completion request failed after retries: {last_error}")
        raise RuntimeError("Completion request failed without explicit error")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise RuntimeError(f"Completion provider error: {message}")
        choices = data.get("choices") or []
        if not choices:
            raise RuntimeError("Completion returned no choices")
        first = choices[0]
        message = first.get("message") or {}
        content = message.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()
        finish_reason = first.get("finish_reason")
        if finish_reason:
            raise RuntimeError(f"Completion empty response (finish_reason={finish_reason})")
        raise RuntimeError("Completion empty response")

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        model: str | None = None,
    ) -> str:
        payload = self._payload(messages, temperature=temperature, max_output_tokens=max_output_tokens, model=model)
        data = await self._request(payload)
        return self._extract_text(data)

    @staticmethod
    def _strip_json_fences(text: str) -> str:
        cleaned = (text or "").strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
            cleaned = re.sub(r"```$", "", cleaned).strip()
        if not cleaned.startswith("{"):
            start = cleaned.find("{")
            end = cleaned.rfind("}")
            if start >= 0 and end > start:
                cleaned = cleaned[start : end + 1].strip()
        return cleaned

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
        model: str | None = None,
    ) -> Dict[str, Any] | None:
        strict_messages = list(messages)
        strict_messages.append(
            {
                "role": "system",
                "content": (
                    "Return only valid JSON object with no markdown and no additional commentary. "
                    f"Schema hint: {schema_hint}"
                ),
            }
        )
        payload = self._payload(
            strict_messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            model=model,
        )
        payload["response_format"] = {"type": "json_object"}
        data = await self._request(payload)
        cleaned = self._strip_json_fences(self._extract_text(data))
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        model: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as ``delta`` events ending in one ``done`` or ``error`` event.

        Never raises for provider or transport failures; those end the stream
        with an ``error`` event that carries the text received so far.
        """
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        payload = self._payload(messages, temperature=temperature, max_output_tokens=max_output_tokens, model=model)
        payload["stream"] = True
        # Per-read timeout only; total stream duration is unbounded.
        stream_timeout = aiohttp.ClientTimeout(total=None, sock_read=self.timeout_seconds)

        decoder = SSELineDecoder()
        parts: List[str] = []
        try:
            async with self._session.post(self._endpoint(), json=payload, timeout=stream_timeout) as response:
                if response.status != 200:
                    text = await response.text()
                    raise StreamInterrupted(f"Completion stream error {response.status}: {text[:500]}")
                async for chunk in response.content.iter_any():
                    for line in decoder.feed(chunk):
                        frame = parse_sse_line(line)
                        if frame is None:
                            continue
                        if frame.error:
                            raise StreamInterrupted(f"Provider reported error mid-stream: {frame.error}")
                        if frame.done:
                            yield StreamEvent.done("".join(parts))
                            return
                        if frame.delta:
                            parts.append(frame.delta)
                            yield StreamEvent.delta(frame.delta)
            raise StreamInterrupted("Completion stream ended without [DONE]")
        except StreamInterrupted as exc:
            partial = "".join(parts)
            logger.warning("Completion stream interrupted after %s chars: %s", len(partial), exc)
            yield StreamEvent.failed(partial, str(exc), exc.kind)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            partial = "".join(parts)
            logger.warning("Completion stream transport failure after %s chars: %s", len(partial), exc)
            yield StreamEvent.failed(partial, f"Completion stream transport failure: {exc}", StreamInterrupted.kind)
