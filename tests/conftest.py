"""Pytest configuration and fixtures for chat service tests."""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest
from fastapi.testclient import TestClient

from ragchat.audit import ChatLogRecord
from ragchat.auth import TokenVerifier, build_token
from ragchat.cache import EmbeddingCache
from ragchat.config import ChatConfig
from ragchat.corpus import text_hash
from ragchat.index import VectorIndex
from ragchat.language import LanguageGate
from ragchat.models import Chunk, ChatResponse, EmbedCache, EmbedCacheItem, ScoredChunk, SourceItem
from ragchat.orchestrator import ChatService
from ragchat.rate_limit import RateLimiter
from ragchat.server import create_app
from ragchat.synthesizer import StreamEvent

SECRET = "test-secret"
ISSUER = "example.com"
AUDIENCE = "content-chat"
EMBED_MODEL = "test-embed"


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


# ============================================================================
# Corpus
# ============================================================================


def make_chunk(chunk_id: str, url: str, title: str = "", text: str = "") -> Chunk:
    text = text or f"text of {chunk_id}"
    return Chunk(chunk_id=chunk_id, title=title or chunk_id.title(), url=url, text=text, char_len=len(text))


@pytest.fixture
def chunks() -> List[Chunk]:
    return [
        make_chunk("airport-1", "https://example.com/airport", "Getting to the airport", "Bus C-6 runs every 20 minutes."),
        make_chunk("beach-2", "https://example.com/beaches", "Best beaches", "Postiguet beach is in the city centre."),
        make_chunk("food-3", "https://example.com/food", "Where to eat", "Try the rice dishes near the port."),
    ]


VECTORS = {
    "airport-1": [1.0, 0.0, 0.0],
    "beach-2": [0.0, 2.0, 0.0],
    "food-3": [0.0, 0.0, 3.0],
}


@pytest.fixture
def embed_cache(chunks) -> EmbedCache:
    items = {
        ch.chunk_id: EmbedCacheItem(id=ch.chunk_id, hash=text_hash(ch.text), dim=3, vector=VECTORS[ch.chunk_id])
        for ch in chunks
    }
    return EmbedCache(model=EMBED_MODEL, items=items)


@pytest.fixture
def index(chunks, embed_cache) -> VectorIndex:
    return VectorIndex.build(chunks, embed_cache, EMBED_MODEL)


# ============================================================================
# Fakes
# ============================================================================


class FakeEmbedder:
    """Keyword -> vector; anything unrecognised points away from the corpus."""

    provider = "fake"
    model = EMBED_MODEL

    def __init__(self, fail: bool = False):
        self.calls: List[str] = []
        self.fail = fail

    def vector_for(self, text: str) -> np.ndarray:
        t = text.lower()
        if "airport" in t:
            return np.array([2.0, 0.0, 0.0], dtype=np.float32)
        if "beach" in t:
            return np.array([0.0, 0.5, 0.1], dtype=np.float32)
        return np.array([-1.0, -1.0, -1.0], dtype=np.float32)

    async def embed_query(self, text: str, request_id: str = "") -> np.ndarray:
        from ragchat.errors import EmbeddingError

        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("provider down", model=self.model)
        return self.vector_for(text)

    async def embed_texts(self, texts: Sequence[str], request_id: str = "") -> List[np.ndarray]:
        return [await self.embed_query(t) for t in texts]


class FakeSynthesizer:
    """Answers with the first hit as the only source; streams the answer in two deltas."""

    def __init__(self, answer: str = "Take bus C-6.", fail: Optional[Exception] = None):
        self.answer_text = answer
        self.fail = fail
        self.calls: List[str] = []

    def _response(self, hits: Sequence[ScoredChunk]) -> ChatResponse:
        first = hits[0].chunk
        return ChatResponse(answer=self.answer_text, sources=[SourceItem(title=first.title, url=first.url)])

    async def answer(self, question, hits, request_id=""):
        self.calls.append(question)
        if self.fail is not None:
            raise self.fail
        return self._response(hits)

    async def stream(self, question, hits, request_id=""):
        self.calls.append(question)
        half = len(self.answer_text) // 2
        yield StreamEvent.delta(self.answer_text[:half])
        yield StreamEvent.delta(self.answer_text[half:])
        if self.fail is not None:
            yield StreamEvent.error("streaming error")
            return
        yield StreamEvent.result(self._response(hits))


class RecordingAudit:
    def __init__(self):
        self.records: List[ChatLogRecord] = []

    def log(self, record: ChatLogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def service(embedder, index, synthesizer, audit) -> ChatService:
    return ChatService(
        embedder=embedder,
        retriever=index,
        synthesizer=synthesizer,
        language_gate=LanguageGate(),
        cache=EmbeddingCache(16),
        audit=audit,
        top_k=3,
        max_sources=2,
        min_score=0.25,
    )


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def config() -> ChatConfig:
    return ChatConfig(
        embed_model=EMBED_MODEL,
        jwt_secret=SECRET,
        jwt_issuer=ISSUER,
        jwt_audience=AUDIENCE,
        cors_allowed_origin="https://example.com",
        rate_limit=100,
    )


@pytest.fixture
def token() -> str:
    tok, _ = build_token(SECRET, ISSUER, AUDIENCE, 300)
    return tok


@pytest.fixture
def auth_headers(token) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_client(service, config):
    """Factory: TestClient around a freshly built app; kwargs go to create_app."""

    def _make(**kwargs) -> TestClient:
        cfg = kwargs.pop("config", config)
        svc = kwargs.pop("service", service)
        kwargs.setdefault("vectors", 3)
        kwargs.setdefault("verifier", TokenVerifier(SECRET, ISSUER, AUDIENCE, leeway_seconds=10))
        kwargs.setdefault("limiter", RateLimiter(cfg.rate_limit, cfg.rate_window_seconds))
        return TestClient(create_app(svc, cfg, **kwargs))

    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()
