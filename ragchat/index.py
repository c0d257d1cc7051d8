"""
In-memory vector index

Holds (chunk, unit-normalized embedding) pairs built once at startup from the
corpus and the embedding cache, and answers brute-force top-K queries.

Design:
- One float32 matrix of shape (N, D); a query is a single matrix-vector product
- Read-only after build, so concurrent searches need no locking
- Scores are dot products of unit vectors (cosine similarity)
- Ties keep corpus order (stable sort)
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

import numpy as np
from loguru import logger

from ragchat.corpus import text_hash
from ragchat.errors import VectorIndexError
from ragchat.models import Chunk, EmbedCache, ScoredChunk


def normalize(vec: Sequence[float]) -> np.ndarray:
    """Return a float32 unit-length copy of vec (a zero vector stays zero)."""
    v = np.array(vec, dtype=np.float32, copy=True)
    norm = float(np.linalg.norm(v.astype(np.float64)))
    if norm == 0.0:
        return v
    return v / np.float32(norm)


class Retriever(Protocol):
    """Anything that can rank chunks for a unit-normalized query vector."""

    def search(self, query: np.ndarray, k: int) -> List[ScoredChunk]:
        ...


class VectorIndex:
    """Immutable brute-force index over unit-normalized chunk embeddings."""

    def __init__(self, chunks: Sequence[Chunk], matrix: Optional[np.ndarray] = None):
        self._chunks: List[Chunk] = list(chunks)
        if matrix is None:
            matrix = np.zeros((0, 0), dtype=np.float32)
        if matrix.shape[0] != len(self._chunks):
            raise VectorIndexError(
                f"matrix rows ({matrix.shape[0]}) != chunks ({len(self._chunks)})"
            )
        self._matrix = np.ascontiguousarray(matrix, dtype=np.float32)
        self._matrix.setflags(write=False)

    @classmethod
    def build(cls, chunks: Sequence[Chunk], cache: EmbedCache, model: str) -> "VectorIndex":
        """
        Pair every chunk with its cached embedding.

        A chunk is left out when its cache item is missing, empty, stale
        (text hash differs) or was produced by a different model than the
        one currently configured.
        """
        if cache.model and cache.model != model:
            logger.warning(
                f"Embedding cache model is {cache.model!r} but embed model is {model!r}; "
                "no cached vectors are usable"
            )
        kept: List[Chunk] = []
        rows: List[np.ndarray] = []
        dim: Optional[int] = None
        skipped = {"missing": 0, "model": 0, "stale": 0, "dim": 0, "zero": 0}

        for ch in chunks:
            item = cache.items.get(ch.chunk_id)
            if item is None or not item.vector:
                skipped["missing"] += 1
                continue
            if cache.model != model:
                skipped["model"] += 1
                continue
            if item.hash and item.hash != text_hash(ch.text):
                skipped["stale"] += 1
                continue
            if dim is None:
                dim = len(item.vector)
            if len(item.vector) != dim:
                skipped["dim"] += 1
                continue
            vec = normalize(item.vector)
            if not np.any(vec):
                skipped["zero"] += 1
                continue
            kept.append(ch)
            rows.append(vec)

        matrix = np.vstack(rows) if rows else np.zeros((0, dim or 0), dtype=np.float32)
        logger.info(
            f"Vector index built: {len(kept)}/{len(chunks)} chunks (dim={dim or 0}) skipped={skipped}"
        )
        return cls(kept, matrix)

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def dim(self) -> int:
        return int(self._matrix.shape[1]) if self._matrix.ndim == 2 else 0

    @property
    def chunks(self) -> List[Chunk]:
        return list(self._chunks)

    def search(self, query: np.ndarray, k: int) -> List[ScoredChunk]:
        """Top-K by dot product, highest first, ties in corpus order."""
        if k <= 0 or not self._chunks:
            return []
        q = np.asarray(query, dtype=np.float32).reshape(-1)
        if q.shape[0] != self.dim:
            raise VectorIndexError(f"query dim {q.shape[0]} != index dim {self.dim}")

        scores = self._matrix @ q
        order = np.argsort(-scores, kind="stable")[:k]
        return [ScoredChunk(chunk=self._chunks[i], score=float(scores[i])) for i in order]


def top_k_search(index: VectorIndex, query: np.ndarray, k: int) -> List[ScoredChunk]:
    return index.search(query, k)


def top_score(results: Sequence[ScoredChunk]) -> float:
    return results[0].score if results else 0.0
