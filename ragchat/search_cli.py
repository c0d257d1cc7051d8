#!/usr/bin/env python3
"""Offline retrieval console.

Tops up the embedding cache for the corpus, builds the in-memory index, then
answers questions from stdin with the top-K passages (and, optionally, the
exact prompt the chat service would send).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, TextIO

from loguru import logger

from ragchat.config import load_config, parse_duration
from ragchat.corpus import load_embed_cache, read_chunks, save_embed_cache
from ragchat.embeddings import Embedder, OpenAIEmbedder, embed_missing
from ragchat.errors import EmbeddingError
from ragchat.index import VectorIndex, normalize
from ragchat.prompt import build_prompt

PREVIEW_CHARS = 420


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    cfg = load_config()
    parser = argparse.ArgumentParser(description="Interactive top-K search over the chat corpus.")
    parser.add_argument("--chunks", type=Path, default=cfg.chunks_path, help="Chunks JSON or JSONL")
    parser.add_argument("--cache", type=Path, default=cfg.cache_path, help="Embedding cache JSON")
    parser.add_argument("--model", default=cfg.embed_model, help="Embedding model")
    parser.add_argument("--k", type=int, default=5, help="Top K chunks to retrieve")
    parser.add_argument("--batch", type=int, default=64, help="Batch size for embedding requests")
    parser.add_argument("--sleep", default="150ms", help="Pause between embedding batches")
    parser.add_argument("--timeout", default=str(cfg.timeout_seconds), help="HTTP timeout")
    parser.add_argument("--no-prompt", dest="prompt", action="store_false", help="Do not print the prompt")
    return parser.parse_args(argv)


def print_results(results, out: TextIO) -> None:
    print(f"\nTop {len(results)} results:", file=out)
    for i, r in enumerate(results, start=1):
        preview = r.chunk.text
        if len(preview) > PREVIEW_CHARS:
            preview = preview[:PREVIEW_CHARS] + "…"
        print(f"\n#{i}  score={r.score:.4f}", file=out)
        print(f"Title: {r.chunk.title}", file=out)
        print(f"URL:   {r.chunk.url}", file=out)
        print(f"Slug:  {r.chunk.slug}", file=out)
        print(f"Text:  {preview.replace(chr(10), ' ')}", file=out)


async def search_loop(
    index: VectorIndex,
    embedder: Embedder,
    k: int,
    show_prompt: bool,
    stdin: TextIO = sys.stdin,
    out: TextIO = sys.stdout,
) -> None:
    while True:
        print("\nAsk a question (or 'exit'): ", end="", file=out, flush=True)
        line = stdin.readline()
        if not line:
            return
        q = line.strip()
        if not q:
            continue
        if q in ("exit", "quit"):
            print("bye", file=out)
            return
        try:
            qvec = normalize(await embedder.embed_query(q))
        except EmbeddingError as e:
            print(f"Embedding error: {e.message}", file=out)
            continue
        results = index.search(qvec, k)
        print_results(results, out)
        if show_prompt:
            prompt, _ = build_prompt(q, results, k)
            print("\n--- Prompt (copy/paste) ---", file=out)
            print(prompt, file=out)
            print("--- End prompt ---", file=out)


async def run(args: argparse.Namespace) -> int:
    cfg = load_config()
    if not cfg.openai_api_key:
        print("ERROR: OPENAI_API_KEY is not set", file=sys.stderr)
        return 1

    chunks = read_chunks(args.chunks)
    cache = load_embed_cache(args.cache)
    embedder = OpenAIEmbedder(
        api_key=cfg.openai_api_key,
        model=args.model,
        base_url=cfg.openai_base_url,
        timeout_seconds=parse_duration(args.timeout),
    )
    try:
        added = await embed_missing(
            chunks, cache, embedder, batch_size=args.batch, pause_seconds=parse_duration(args.sleep)
        )
        if added:
            save_embed_cache(args.cache, cache)
            logger.info(f"Saved cache: {args.cache}")

        index = VectorIndex.build(chunks, cache, args.model)
        print(f"Index ready: {len(index)} vectors (normalized)")
        await search_loop(index, embedder, args.k, args.prompt)
    finally:
        await embedder.aclose()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(run(args))
    except (EmbeddingError, ValueError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
