"""
Data Models for the chat service

Provides structured, type-safe definitions for:
- Corpus chunks and their cached embeddings
- Retrieval results
- Chat requests and responses (wire format)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Corpus
# ============================================================================


@dataclass(frozen=True)
class Chunk:
    """One retrievable passage of site content. Identity is chunk_id."""

    chunk_id: str
    doc_id: int = 0
    doc_type: str = ""
    slug: str = ""
    title: str = ""
    url: str = ""
    modified_gmt: str = ""
    index_page: bool = False
    text: str = ""
    char_len: int = 0

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Chunk":
        """Build from a JSON-lines chunk record."""
        text = rec.get("text") or ""
        return cls(
            chunk_id=str(rec.get("chunk_id") or ""),
            doc_id=int(rec.get("doc_id") or 0),
            doc_type=rec.get("type") or "",
            slug=rec.get("slug") or "",
            title=rec.get("title") or "",
            url=rec.get("url") or "",
            modified_gmt=rec.get("modified_gmt") or "",
            index_page=bool(rec.get("index_page", False)),
            text=text,
            char_len=int(rec.get("char_len") or len(text)),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "doc_id": self.doc_id,
            "type": self.doc_type,
            "slug": self.slug,
            "title": self.title,
            "url": self.url,
            "modified_gmt": self.modified_gmt,
            "index_page": self.index_page,
            "text": self.text,
            "char_len": self.char_len,
        }


@dataclass
class EmbedCacheItem:
    """Persisted embedding for one chunk."""

    id: str
    hash: str
    dim: int
    vector: List[float]
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbedCacheItem":
        vector = [float(x) for x in (data.get("vector") or [])]
        return cls(
            id=str(data.get("id") or ""),
            hash=data.get("hash") or "",
            dim=int(data.get("dim") or len(vector)),
            vector=vector,
            updated_at=data.get("updated_at") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hash": self.hash,
            "dim": self.dim,
            "vector": self.vector,
            "updated_at": self.updated_at,
        }


@dataclass
class EmbedCache:
    """Embedding cache container; `model` names the model that produced every item."""

    model: str = ""
    items: Dict[str, EmbedCacheItem] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoredChunk:
    """A retrieval hit: chunk plus cosine score."""

    chunk: Chunk
    score: float


# ============================================================================
# Wire models
# ============================================================================


class ChatRequest(BaseModel):
    """Body of POST /chat."""

    model_config = ConfigDict(json_schema_extra={
        "example": {"question": "How do I get to the airport?", "lang": "en"}
    })

    question: str = ""
    lang: Optional[str] = None


class SourceItem(BaseModel):
    """A cited source as returned to the widget."""

    title: str = ""
    url: str = ""


class ChatResponse(BaseModel):
    """Body of a non-streaming /chat answer and of the SSE `result` event."""

    answer: str
    sources: List[SourceItem] = Field(default_factory=list)
