#!/usr/bin/env python3
"""Grounded-answer prompt assembly.

The prompt is deterministic: a fixed instruction block, the question, then
up to top-K retrieved passages deduplicated by URL. The model must reply with
a JSON object ``{"answer": str, "sources": [{"title", "url"}]}``; returned
sources are later filtered against the passages actually offered.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from ragchat.models import ScoredChunk, SourceItem

FALLBACK_ANSWER = "I don't know based on the site content."
LANG_FALLBACK_ANSWER = "Sorry, English only for now."

SYSTEM_MESSAGE = "You must follow the instructions. Output JSON."


@dataclass(frozen=True)
class PromptSource:
    """A passage as offered to the model."""

    title: str
    url: str
    excerpt: str


class RAGPrompt:
    """Build grounded prompts for the chat widget."""

    INSTRUCTIONS = (
        "You are a helpful assistant for the site's visitors, answering questions about its content.\n"
        "Use ONLY the provided sources to answer. "
        f"If the answer is not in the sources, say \"{FALLBACK_ANSWER}\".\n"
        "Respond in JSON with keys: answer (string) and sources (array of {title,url}).\n"
        "Only include sources you actually used. Do not invent sources.\n\n"
    )

    @staticmethod
    def select_sources(hits: Sequence[ScoredChunk], top_k: int) -> List[PromptSource]:
        """First occurrence of each URL wins; stop after top_k unique URLs."""
        seen = set()
        ordered: List[PromptSource] = []
        for hit in hits:
            if len(ordered) >= top_k:
                break
            url = hit.chunk.url
            if url in seen:
                continue
            seen.add(url)
            ordered.append(PromptSource(title=hit.chunk.title, url=url, excerpt=hit.chunk.text))
        return ordered

    @classmethod
    def build(cls, question: str, hits: Sequence[ScoredChunk], top_k: int) -> Tuple[str, List[PromptSource]]:
        ordered = cls.select_sources(hits, top_k)
        parts = [cls.INSTRUCTIONS, "Question:\n", question, "\n\nSources:\n"]
        for i, src in enumerate(ordered, start=1):
            parts.append(f"\n[{i}] {src.title}\nURL: {src.url}\nExcerpt:\n{src.excerpt}\n")
        return "".join(parts), ordered

    @staticmethod
    def get_messages(prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": SYSTEM_MESSAGE},
            {"role": "user", "content": prompt},
        ]


def build_prompt(question: str, hits: Sequence[ScoredChunk], top_k: int) -> Tuple[str, List[PromptSource]]:
    return RAGPrompt.build(question, hits, top_k)


def filter_sources(offered: Sequence[PromptSource], picked: Sequence[SourceItem], max_sources: int) -> List[SourceItem]:
    """
    Keep only model-cited sources whose URL was offered.

    Empty titles are filled from the offered passage; the result is capped at
    max_sources, preserving the model's order.
    """
    titles = {src.url: src.title for src in offered}
    clean: List[SourceItem] = []
    for src in picked:
        if len(clean) >= max_sources:
            break
        if not src.url or src.url not in titles:
            continue
        clean.append(SourceItem(title=src.title or titles[src.url], url=src.url))
    return clean
