from __future__ import annotations

import json
import re
import time
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlparse, parse_qs

import httpx
from loguru import logger

from ragchat.errors import LLMError
from ragchat.logging_config import fmt_duration
from ragchat.metrics import track_llm_request

MAX_RESPONSE_BYTES = 10 * 1024 * 1024


def _sanitize_url(url: str) -> str:
    """Remove or mask sensitive query parameters from URL for logging."""
    try:
        parsed = urlparse(url)
        if not parsed.query:
            return url
        params = parse_qs(parsed.query, keep_blank_values=True)
        for sensitive_key in ("token", "key", "api_key", "password", "secret"):
            if sensitive_key in params:
                params[sensitive_key] = ["***"]
        sanitized_qs = "&".join(f"{k}={v[0]}" for k, v in params.items())
        base = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
        return f"{base}?{sanitized_qs}" if sanitized_qs else base
    except (ValueError, AttributeError) as e:
        logger.warning(f"Failed to sanitize URL: {e}")
        return url


def _redact_token(text: str) -> str:
    """Redact Bearer token values from log text."""
    return re.sub(r'Bearer\s+[^\s]+', 'Bearer ***', text, flags=re.IGNORECASE)


def _cap_response(text: str, max_len: int = 200) -> str:
    """Cap response body length for logging."""
    if len(text) > max_len:
        return text[:max_len] + f"... ({len(text)-max_len} more bytes)"
    return text


def build_http_client(timeout_seconds: float, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Shared async client for the provider APIs.

    The read timeout is the whole per-call budget; streaming reads reset it
    on every received chunk.
    """
    timeout = httpx.Timeout(connect=5.0, read=timeout_seconds, write=10.0, pool=5.0)
    limits = httpx.Limits(max_keepalive_connections=10, max_connections=50)
    return httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)


class LLMClient:
    """Async client for an OpenAI-compatible /chat/completions endpoint.

    No retries: one failed call fails the request that made it.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.2,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.chat_url = base_url.rstrip("/") + "/chat/completions"
        self._api_key = api_key
        self._client = http_client or build_http_client(timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(self, messages: List[Dict[str, str]], stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, messages: List[Dict[str, str]], request_id: str = "") -> str:
        """One blocking completion in JSON-object mode. Returns the message content."""
        payload = self._payload(messages, stream=False)
        url = _sanitize_url(self.chat_url)
        logger.debug(f"[{request_id}] chat request model={self.model} messages={len(messages)} url={url}")
        start = time.time()
        try:
            resp = await self._client.post(self.chat_url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            track_llm_request(self.model, "complete", "error", time.time() - start)
            raise LLMError(f"chat request failed: {_redact_token(str(e))}", model=self.model, cause=e) from e

        raw = resp.text[:MAX_RESPONSE_BYTES]
        took = time.time() - start
        logger.info(
            f"[{request_id}] chat response status={resp.status_code} bytes={len(raw)} took={fmt_duration(took)}"
        )
        if not 200 <= resp.status_code < 300:
            track_llm_request(self.model, "complete", "error", took)
            raise LLMError(
                f"chat http {resp.status_code}: {_cap_response(_redact_token(raw))}",
                model=self.model,
                status_code=resp.status_code,
            )

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            track_llm_request(self.model, "complete", "error", took)
            raise LLMError(f"parse chat response: {e}", model=self.model) from e

        if isinstance(data, dict) and data.get("error"):
            err = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            track_llm_request(self.model, "complete", "error", took)
            raise LLMError(f"provider error: {err.get('message')} ({err.get('type')})", model=self.model)

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            track_llm_request(self.model, "complete", "error", took)
            raise LLMError("empty choices", model=self.model)

        track_llm_request(self.model, "complete", "success", took)
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    async def stream(self, messages: List[Dict[str, str]], request_id: str = "") -> AsyncIterator[str]:
        """Yield content fragments from a streamed completion as they arrive.

        Closing the generator (client went away) closes the upstream response.
        """
        payload = self._payload(messages, stream=True)
        logger.debug(f"[{request_id}] chat stream request model={self.model} messages={len(messages)}")
        start = time.time()
        received = 0
        try:
            async with self._client.stream("POST", self.chat_url, json=payload, headers=self._headers()) as resp:
                if not 200 <= resp.status_code < 300:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise LLMError(
                        f"chat stream http {resp.status_code}: {_cap_response(_redact_token(body))}",
                        model=self.model,
                        status_code=resp.status_code,
                    )
                async for line in resp.aiter_lines():
                    received += len(line)
                    if not line.startswith("data: "):
                        continue
                    data = line[len("data: "):]
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    choices = chunk.get("choices") if isinstance(chunk, dict) else None
                    if not choices:
                        continue
                    delta = (choices[0].get("delta") or {}).get("content") or ""
                    if delta:
                        yield delta
        except httpx.HTTPError as e:
            track_llm_request(self.model, "stream", "error", time.time() - start)
            raise LLMError(f"chat stream failed: {_redact_token(str(e))}", model=self.model, cause=e) from e
        except LLMError:
            track_llm_request(self.model, "stream", "error", time.time() - start)
            raise

        took = time.time() - start
        track_llm_request(self.model, "stream", "success", took)
        logger.info(f"[{request_id}] chat stream bytes={received} took={fmt_duration(took)}")

    async def aclose(self) -> None:
        await self._client.aclose()
