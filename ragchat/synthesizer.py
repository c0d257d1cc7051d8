"""
Answer synthesis over retrieved passages.

Blocking mode asks the model for one JSON object; streaming mode forwards
every content fragment as a `delta` event, then parses the accumulated text
exactly like the blocking reply and emits one `result` event. Upstream
failures in streaming mode surface as a single `error` event.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import orjson
from loguru import logger

from ragchat.errors import LLMError, SynthesisError
from ragchat.llm_client import LLMClient, _cap_response
from ragchat.models import ChatResponse, ScoredChunk, SourceItem
from ragchat.prompt import FALLBACK_ANSWER, PromptSource, RAGPrompt, filter_sources

EVENT_DELTA = "delta"
EVENT_RESULT = "result"
EVENT_ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One server-sent event. `response` is set on `result` events."""

    event: str
    data: Dict[str, Any]
    response: Optional[ChatResponse] = field(default=None, compare=False)

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(EVENT_DELTA, {"delta": text})

    @classmethod
    def result(cls, response: ChatResponse) -> "StreamEvent":
        return cls(EVENT_RESULT, response.model_dump(), response)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(EVENT_ERROR, {"error": message})

    def encode(self) -> bytes:
        return b"event: " + self.event.encode() + b"\ndata: " + orjson.dumps(self.data) + b"\n\n"


class Synthesizer(Protocol):
    """Composes an answer from a question and its retrieval hits."""

    async def answer(self, question: str, hits: Sequence[ScoredChunk], request_id: str = "") -> ChatResponse:
        ...

    def stream(self, question: str, hits: Sequence[ScoredChunk], request_id: str = "") -> AsyncIterator[StreamEvent]:
        ...


def parse_answer(raw: str, offered: Sequence[PromptSource], max_sources: int) -> ChatResponse:
    """
    Parse the model's JSON reply into a ChatResponse.

    Sources are restricted to offered URLs; an empty answer becomes the
    fallback phrase with no sources.

    Raises:
        SynthesisError: the reply is not a JSON object with the expected fields
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SynthesisError(f"invalid model json: {e}", raw_text=raw) from e
    if not isinstance(data, dict):
        raise SynthesisError("model json is not an object", raw_text=raw)

    answer = data.get("answer")
    if answer is None:
        answer = ""
    if not isinstance(answer, str):
        raise SynthesisError("model answer is not a string", raw_text=raw)
    answer = answer.strip()

    raw_sources = data.get("sources") or []
    if not isinstance(raw_sources, list):
        raise SynthesisError("model sources is not an array", raw_text=raw)
    picked: List[SourceItem] = []
    for src in raw_sources:
        if not isinstance(src, dict):
            continue
        picked.append(SourceItem(title=str(src.get("title") or ""), url=str(src.get("url") or "")))

    sources = filter_sources(offered, picked, max_sources)
    if not answer:
        return ChatResponse(answer=FALLBACK_ANSWER, sources=[])
    return ChatResponse(answer=answer, sources=sources)


def is_fallback_answer(response: ChatResponse) -> bool:
    return response.answer.strip() == FALLBACK_ANSWER and not response.sources


class AnswerSynthesizer:
    """Synthesizer backed by an OpenAI-compatible chat-completions client."""

    def __init__(self, llm: LLMClient, top_k: int = 3, max_sources: int = 2):
        self.llm = llm
        self.top_k = top_k
        self.max_sources = max_sources

    def _messages(self, question: str, hits: Sequence[ScoredChunk]):
        prompt, offered = RAGPrompt.build(question, hits, self.top_k)
        return RAGPrompt.get_messages(prompt), offered

    async def answer(self, question: str, hits: Sequence[ScoredChunk], request_id: str = "") -> ChatResponse:
        messages, offered = self._messages(question, hits)
        raw = await self.llm.complete(messages, request_id=request_id)
        try:
            return parse_answer(raw, offered, self.max_sources)
        except SynthesisError as e:
            logger.error(f"[{request_id}] {e.message}; raw={_cap_response(raw)!r}")
            raise

    async def stream(self, question: str, hits: Sequence[ScoredChunk], request_id: str = "") -> AsyncIterator[StreamEvent]:
        messages, offered = self._messages(question, hits)
        parts: List[str] = []
        try:
            async for delta in self.llm.stream(messages, request_id=request_id):
                parts.append(delta)
                yield StreamEvent.delta(delta)
        except LLMError as e:
            logger.error(f"[{request_id}] stream failed: {e.message}")
            yield StreamEvent.error("streaming error")
            return

        raw = "".join(parts)
        try:
            response = parse_answer(raw, offered, self.max_sources)
        except SynthesisError as e:
            logger.error(f"[{request_id}] {e.message}; raw={_cap_response(raw)!r}")
            yield StreamEvent.error("generation error")
            return
        yield StreamEvent.result(response)
