"""
Chat request lifecycle.

ChatService composes the gates and capabilities into one request:

    language gate -> query embedding (cached) -> top-K search
        -> score threshold -> synthesis -> audit record

Admission and credential checks happen in the HTTP layer before any of this
runs. Every collaborator is injected, so tests swap in fakes for the
Embedder, Retriever and Synthesizer.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Protocol

from loguru import logger

from ragchat import metrics
from ragchat.audit import AnswerType, ChatLogRecord
from ragchat.cache import EmbeddingCache, make_cache_key
from ragchat.embeddings import Embedder
from ragchat.index import Retriever, normalize, top_score
from ragchat.language import LanguageGate
from ragchat.logging_config import fmt_duration, log_chat
from ragchat.models import ChatResponse, ScoredChunk
from ragchat.prompt import FALLBACK_ANSWER, LANG_FALLBACK_ANSWER
from ragchat.synthesizer import EVENT_RESULT, StreamEvent, Synthesizer, is_fallback_answer


class ChatLogSink(Protocol):
    def log(self, record: ChatLogRecord) -> None:
        ...


@dataclass
class PreparedChat:
    """Outcome of everything before synthesis.

    When `fallback` is set the request is already answered and no model call
    is made.
    """

    question: str
    lang: str
    request_id: str
    started: float
    results: List[ScoredChunk] = field(default_factory=list)
    fallback: Optional[ChatResponse] = None
    reason: str = ""

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


class ChatService:
    def __init__(
        self,
        embedder: Embedder,
        retriever: Retriever,
        synthesizer: Synthesizer,
        language_gate: Optional[LanguageGate] = None,
        cache: Optional[EmbeddingCache] = None,
        audit: Optional[ChatLogSink] = None,
        top_k: int = 3,
        max_sources: int = 2,
        min_score: float = 0.25,
    ):
        self.embedder = embedder
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.language_gate = language_gate or LanguageGate()
        self.cache = cache
        self.audit = audit
        self.top_k = top_k
        self.max_sources = max_sources
        self.min_score = min_score

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def embed_question(self, question: str, lang: str, request_id: str = ""):
        """Unit-normalized query vector, served from the LRU cache when possible."""
        key = make_cache_key(self.embedder.provider, self.embedder.model, lang, question)
        t0 = time.monotonic()
        vec = self.cache.get(key) if self.cache is not None else None
        hit = vec is not None
        if vec is None:
            vec = await self.embedder.embed_query(question, request_id=request_id)
            if self.cache is not None:
                self.cache.put(key, vec)
        logger.info(f"[{request_id}] chat embed={fmt_duration(time.monotonic() - t0)} cache_hit={hit}")
        return normalize(vec)

    async def prepare(self, question: str, lang: str = "en", request_id: str = "") -> PreparedChat:
        """
        Run the language gate, embedding and retrieval.

        Raises:
            EmbeddingError: the embedding provider failed
        """
        prepared = PreparedChat(question=question, lang=lang, request_id=request_id, started=time.monotonic())

        detected = self.language_gate.detect(question)
        if detected != self.language_gate.target:
            metrics.language_rejections.labels(lang=detected).inc()
            prepared.fallback = ChatResponse(answer=LANG_FALLBACK_ANSWER, sources=[])
            prepared.reason = "non_english"
            logger.info(f"[{request_id}] chat rejected language={detected}")
            return prepared

        logger.info(f"[{request_id}] chat start question_len={len(question)}")
        qvec = await self.embed_question(question, lang, request_id)

        t0 = time.monotonic()
        results = self.retriever.search(qvec, self.top_k)
        took = time.monotonic() - t0
        metrics.search_latency.observe(took)
        prepared.results = list(results)
        logger.info(
            f"[{request_id}] chat search={fmt_duration(took)} results={len(results)} "
            f"top_score={top_score(results):.4f}"
        )

        if not results or results[0].score < self.min_score:
            prepared.fallback = ChatResponse(answer=FALLBACK_ANSWER, sources=[])
            prepared.reason = "below_threshold"
        return prepared

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def answer(self, question: str, lang: str = "en", request_id: str = "") -> ChatResponse:
        """Blocking answer: one JSON response."""
        prepared = await self.prepare(question, lang, request_id)
        if prepared.fallback is not None:
            self._finish(prepared, prepared.fallback, streamed=False)
            return prepared.fallback

        t0 = time.monotonic()
        response = await self.synthesizer.answer(question, prepared.results, request_id=request_id)
        logger.info(
            f"[{request_id}] chat answer={fmt_duration(time.monotonic() - t0)} sources={len(response.sources)}"
        )
        self._finish(prepared, response, streamed=False)
        return response

    async def stream(self, prepared: PreparedChat) -> AsyncIterator[StreamEvent]:
        """Streaming answer for an already prepared request.

        Fallbacks are sent as a single `result` event.
        """
        if prepared.fallback is not None:
            self._finish(prepared, prepared.fallback, streamed=True)
            yield StreamEvent.result(prepared.fallback)
            return

        async for event in self.synthesizer.stream(prepared.question, prepared.results, request_id=prepared.request_id):
            # Audit before handing out `result`; the consumer may stop there.
            if event.event == EVENT_RESULT and event.response is not None:
                self._finish(prepared, event.response, streamed=True)
            yield event

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def classify(self, prepared: PreparedChat, response: ChatResponse) -> AnswerType:
        if prepared.fallback is not None or is_fallback_answer(response):
            return AnswerType.NO_ANSWER
        return AnswerType.GROUNDED

    def _finish(self, prepared: PreparedChat, response: ChatResponse, streamed: bool) -> None:
        answer_type = self.classify(prepared, response)
        latency_ms = int(prepared.elapsed * 1000)
        best = top_score(prepared.results) if prepared.results else None
        metrics.track_answer(answer_type.value, streamed, best)

        if self.audit is not None:
            record = ChatLogRecord.build(
                prepared.question, answer_type, prepared.results, self.max_sources, latency_ms
            )
            self.audit.log(record)

        reason = f" reason={prepared.reason}" if prepared.reason else ""
        logger.info(
            f"[{prepared.request_id}] chat done={fmt_duration(prepared.elapsed)} "
            f"fallback={answer_type is AnswerType.NO_ANSWER}{reason} streamed={streamed}"
        )
        log_chat(prepared.request_id, answer_type.value, latency_ms, len(response.sources), best, streamed)
