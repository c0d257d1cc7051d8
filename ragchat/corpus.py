"""
Corpus and embedding-cache loading.

Two on-disk shapes are accepted for the corpus:
- ``*.json``: an array of raw exporter records
  (id, type, slug, title, url, modified_gmt, content_text)
- anything else: JSON-lines, one already-shaped chunk record per line

The embedding cache is ``{"model": str, "items": {chunk_id: {...}}}``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import List, Union

from loguru import logger

from ragchat.models import Chunk, EmbedCache, EmbedCacheItem

PathLike = Union[str, Path]


def text_hash(text: str) -> str:
    """SHA-1 hex of the chunk text; detects stale cache items."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def read_chunks(path: PathLike) -> List[Chunk]:
    """Load chunks from a JSON array (.json) or JSON-lines file."""
    path = Path(path)
    if path.suffix.lower() == ".json":
        chunks = _read_chunks_json(path)
    else:
        chunks = _read_chunks_jsonl(path)
    logger.info(f"Loaded {len(chunks)} chunks from {path}")
    return chunks


def _read_chunks_json(path: Path) -> List[Chunk]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"failed to decode JSON array {path}: {e}") from e
    if not isinstance(raw, list):
        raise ValueError(f"expected a JSON array in {path}")

    chunks: List[Chunk] = []
    for r in raw:
        text = r.get("content_text") or ""
        doc_id = int(r.get("id") or 0)
        slug = r.get("slug") or ""
        chunks.append(Chunk(
            chunk_id=f"{slug}-{doc_id}",
            doc_id=doc_id,
            doc_type=r.get("type") or "",
            slug=slug,
            title=r.get("title") or "",
            url=r.get("url") or "",
            modified_gmt=r.get("modified_gmt") or "",
            index_page=False,
            text=text,
            char_len=len(text),
        ))
    return chunks


def _read_chunks_jsonl(path: Path) -> List[Chunk]:
    chunks: List[Chunk] = []
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"bad jsonl line {lineno} in {path}: {e}") from e
            chunks.append(Chunk.from_record(rec))
    return chunks


def load_embed_cache(path: PathLike) -> EmbedCache:
    """Load the embedding cache; a missing file yields an empty cache."""
    path = Path(path)
    if not path.exists():
        logger.warning(f"Embedding cache not found at {path}; starting empty")
        return EmbedCache()
    data = json.loads(path.read_text(encoding="utf-8"))
    items = {
        key: EmbedCacheItem.from_dict(value)
        for key, value in (data.get("items") or {}).items()
    }
    return EmbedCache(model=data.get("model") or "", items=items)


def save_embed_cache(path: PathLike, cache: EmbedCache) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "model": cache.model,
        "items": {key: item.to_dict() for key, item in cache.items.items()},
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
