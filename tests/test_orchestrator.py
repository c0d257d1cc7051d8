"""Test the chat request lifecycle with fake collaborators."""

import pytest

from ragchat.audit import AnswerType
from ragchat.errors import EmbeddingError
from ragchat.models import ChatResponse
from ragchat.orchestrator import ChatService, PreparedChat
from ragchat.prompt import FALLBACK_ANSWER, LANG_FALLBACK_ANSWER
from ragchat.synthesizer import EVENT_DELTA, EVENT_ERROR, EVENT_RESULT

from tests.conftest import FakeEmbedder, FakeSynthesizer, RecordingAudit

AIRPORT_Q = "How do I get to the airport?"
UNKNOWN_Q = "What time does the museum open on Sunday?"
SPANISH_Q = "¿Dónde está la playa?"


class TestAnswer:
    @pytest.mark.asyncio
    async def test_grounded_answer(self, service, synthesizer, audit):
        resp = await service.answer(AIRPORT_Q, "en", "req-1")

        assert resp.answer == "Take bus C-6."
        assert resp.sources[0].url == "https://example.com/airport"
        assert synthesizer.calls == [AIRPORT_Q]

        [rec] = audit.records
        assert rec.answer_type == "grounded"
        assert rec.top_sources[0] == "https://example.com/airport"
        assert len(rec.top_sources) == 2
        assert rec.top_scores[0] == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_low_score_skips_synthesis(self, service, synthesizer, audit):
        resp = await service.answer(UNKNOWN_Q, "en", "req-2")

        assert resp == ChatResponse(answer=FALLBACK_ANSWER, sources=[])
        assert synthesizer.calls == []
        assert audit.records[0].answer_type == "no_answer"

    @pytest.mark.asyncio
    async def test_non_english_skips_providers(self, service, embedder, synthesizer, audit):
        resp = await service.answer(SPANISH_Q, "en", "req-3")

        assert resp.answer == LANG_FALLBACK_ANSWER
        assert resp.sources == []
        assert embedder.calls == []
        assert synthesizer.calls == []
        [rec] = audit.records
        assert rec.answer_type == "no_answer"
        assert rec.top_sources == ()

    @pytest.mark.asyncio
    async def test_repeat_question_served_from_cache(self, service, embedder):
        await service.answer(AIRPORT_Q, "en")
        await service.answer(AIRPORT_Q, "en")
        assert embedder.calls == [AIRPORT_Q]
        assert service.cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_without_cache_every_question_is_embedded(self, index, synthesizer):
        embedder = FakeEmbedder()
        svc = ChatService(embedder, index, synthesizer, cache=None)
        await svc.answer(AIRPORT_Q)
        await svc.answer(AIRPORT_Q)
        assert len(embedder.calls) == 2

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, index, synthesizer):
        audit = RecordingAudit()
        svc = ChatService(FakeEmbedder(fail=True), index, synthesizer, audit=audit)
        with pytest.raises(EmbeddingError):
            await svc.answer(AIRPORT_Q)
        assert audit.records == []

    @pytest.mark.asyncio
    async def test_empty_index_falls_back(self, synthesizer):
        from ragchat.index import VectorIndex

        svc = ChatService(FakeEmbedder(), VectorIndex([]), synthesizer)
        resp = await svc.answer(AIRPORT_Q)
        assert resp.answer == FALLBACK_ANSWER
        assert synthesizer.calls == []


class TestStream:
    @pytest.mark.asyncio
    async def test_deltas_then_result(self, service, audit):
        prepared = await service.prepare(AIRPORT_Q, "en", "req-s")
        events = [ev async for ev in service.stream(prepared)]

        assert [ev.event for ev in events] == [EVENT_DELTA, EVENT_DELTA, EVENT_RESULT]
        assert events[-1].data["answer"] == "Take bus C-6."
        assert len(audit.records) == 1

    @pytest.mark.asyncio
    async def test_fallback_is_single_result(self, service, synthesizer):
        prepared = await service.prepare(SPANISH_Q, "en", "req-s")
        events = [ev async for ev in service.stream(prepared)]

        assert len(events) == 1
        assert events[0].event == EVENT_RESULT
        assert events[0].data == {"answer": LANG_FALLBACK_ANSWER, "sources": []}
        assert synthesizer.calls == []

    @pytest.mark.asyncio
    async def test_stream_error_not_audited(self, index, audit):
        svc = ChatService(FakeEmbedder(), index, FakeSynthesizer(fail=RuntimeError("x")), audit=audit)
        prepared = await svc.prepare(AIRPORT_Q)
        events = [ev async for ev in svc.stream(prepared)]
        assert events[-1].event == EVENT_ERROR
        assert audit.records == []

    @pytest.mark.asyncio
    async def test_consumer_leaving_at_result_still_audited(self, service, audit):
        prepared = await service.prepare(AIRPORT_Q, "en", "req-s")
        events = service.stream(prepared)
        async for ev in events:
            if ev.event == EVENT_RESULT:
                assert len(audit.records) == 1
                break
        await events.aclose()

        assert [r.answer_type for r in audit.records] == [AnswerType.GROUNDED.value]

    @pytest.mark.asyncio
    async def test_fallback_audited_before_result(self, service, audit):
        prepared = await service.prepare(SPANISH_Q, "en", "req-s")
        events = service.stream(prepared)
        first = await events.__anext__()
        await events.aclose()

        assert first.event == EVENT_RESULT
        assert [r.answer_type for r in audit.records] == [AnswerType.NO_ANSWER.value]


class TestClassify:
    def _prepared(self, fallback=None):
        return PreparedChat(question="q", lang="en", request_id="r", started=0.0, fallback=fallback)

    def test_model_fallback_phrase_is_no_answer(self, service):
        resp = ChatResponse(answer=FALLBACK_ANSWER, sources=[])
        assert service.classify(self._prepared(), resp) is AnswerType.NO_ANSWER

    def test_answer_with_sources_is_grounded(self, service):
        resp = ChatResponse(answer="Bus C-6.", sources=[{"title": "t", "url": "u"}])
        assert service.classify(self._prepared(), resp) is AnswerType.GROUNDED

    def test_gate_fallback_is_no_answer(self, service):
        fb = ChatResponse(answer=LANG_FALLBACK_ANSWER)
        assert service.classify(self._prepared(fb), fb) is AnswerType.NO_ANSWER
