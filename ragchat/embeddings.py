"""
Embedding provider client.

Provides:
- The Embedder capability the request pipeline depends on
- An async OpenAI-compatible /embeddings client (connection-pooled httpx)
- embed_missing(): offline top-up of the on-disk embedding cache
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

import httpx
import numpy as np
from loguru import logger

from ragchat.corpus import text_hash
from ragchat.errors import EmbeddingError
from ragchat.llm_client import _cap_response, _redact_token, build_http_client
from ragchat.logging_config import fmt_duration
from ragchat.metrics import track_llm_request
from ragchat.models import Chunk, EmbedCache, EmbedCacheItem


class Embedder(Protocol):
    """Turns text into vectors. `provider` and `model` take part in query-cache keys."""

    provider: str
    model: str

    async def embed_query(self, text: str, request_id: str = "") -> np.ndarray:
        ...

    async def embed_texts(self, texts: Sequence[str], request_id: str = "") -> List[np.ndarray]:
        ...


class OpenAIEmbedder:
    """Async client for an OpenAI-compatible embeddings endpoint."""

    provider = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.url = base_url.rstrip("/") + "/embeddings"
        self._api_key = api_key
        self._client = http_client or build_http_client(timeout_seconds)

    async def embed_query(self, text: str, request_id: str = "") -> np.ndarray:
        vecs = await self.embed_texts([text], request_id=request_id)
        return vecs[0]

    async def embed_texts(self, texts: Sequence[str], request_id: str = "") -> List[np.ndarray]:
        """
        Embed a batch of inputs in one request.

        Results are placed by the `index` field of each returned item; an
        input without a returned vector is an error.
        """
        if not texts:
            return []
        payload = {"model": self.model, "input": list(texts)}
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        logger.debug(f"[{request_id}] embeddings request inputs={len(texts)} model={self.model}")
        start = time.time()
        try:
            resp = await self._client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            track_llm_request(self.model, "embed", "error", time.time() - start)
            raise EmbeddingError(f"embeddings request failed: {_redact_token(str(e))}", model=self.model, cause=e) from e

        took = time.time() - start
        logger.info(
            f"[{request_id}] embeddings response status={resp.status_code} "
            f"bytes={len(resp.content)} took={fmt_duration(took)}"
        )
        try:
            vecs = self._parse(resp, len(texts))
        except EmbeddingError:
            track_llm_request(self.model, "embed", "error", took)
            raise
        track_llm_request(self.model, "embed", "success", took)
        return vecs

    def _parse(self, resp: httpx.Response, n_inputs: int) -> List[np.ndarray]:
        if not 200 <= resp.status_code < 300:
            raise EmbeddingError(
                f"embeddings http {resp.status_code}: {_cap_response(_redact_token(resp.text))}",
                model=self.model,
                status_code=resp.status_code,
            )
        try:
            data = json.loads(resp.text)
        except json.JSONDecodeError as e:
            raise EmbeddingError(f"failed to parse embeddings response: {e}", model=self.model) from e
        if not isinstance(data, dict):
            raise EmbeddingError("embeddings response is not an object", model=self.model)
        if data.get("error"):
            err = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise EmbeddingError(f"provider error: {err.get('message')} ({err.get('type')})", model=self.model)

        vecs: List[Optional[np.ndarray]] = [None] * n_inputs
        for item in data.get("data") or []:
            idx = item.get("index")
            if not isinstance(idx, int) or not 0 <= idx < n_inputs:
                continue
            vecs[idx] = np.asarray(item.get("embedding") or [], dtype=np.float32)
        for i, v in enumerate(vecs):
            if v is None or v.size == 0:
                raise EmbeddingError(f"missing embedding for index {i}", model=self.model)
        return vecs  # type: ignore[return-value]

    async def aclose(self) -> None:
        await self._client.aclose()


def embedding_input(chunk: Chunk) -> str:
    return f"{chunk.title}\n{chunk.url}\n\n{chunk.text}"


def needs_embedding(chunk: Chunk, cache: EmbedCache, model: str) -> bool:
    item = cache.items.get(chunk.chunk_id)
    if item is None or cache.model != model:
        return True
    return not (item.hash == text_hash(chunk.text) and item.dim > 0 and len(item.vector) == item.dim)


async def embed_missing(
    chunks: Sequence[Chunk],
    cache: EmbedCache,
    embedder: Embedder,
    batch_size: int = 64,
    pause_seconds: float = 0.0,
) -> int:
    """
    Embed every chunk whose cache item is missing, stale or from another
    model, updating `cache` in place. Returns the number of chunks embedded.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    if cache.model and cache.model != embedder.model:
        logger.warning(f"Embedding model changed {cache.model!r} -> {embedder.model!r}; re-embedding all chunks")
        cache.items.clear()

    todo = [ch for ch in chunks if needs_embedding(ch, cache, embedder.model)]
    logger.info(f"Embeddings missing/outdated: {len(todo)}")

    for i in range(0, len(todo), batch_size):
        batch = todo[i:i + batch_size]
        vecs = await embedder.embed_texts([embedding_input(ch) for ch in batch])
        if len(vecs) != len(batch):
            raise EmbeddingError(f"embedding count mismatch: got={len(vecs)} want={len(batch)}")
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        for ch, vec in zip(batch, vecs):
            values = [float(x) for x in vec]
            cache.items[ch.chunk_id] = EmbedCacheItem(
                id=ch.chunk_id,
                hash=text_hash(ch.text),
                dim=len(values),
                vector=values,
                updated_at=now,
            )
        logger.debug(f"Embedded batch {i // batch_size + 1}: {len(batch)} chunks")
        if pause_seconds > 0:
            await asyncio.sleep(pause_seconds)

    cache.model = embedder.model
    return len(todo)
