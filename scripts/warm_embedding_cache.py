#!/usr/bin/env python3
"""
Embedding Cache Warming Script

Embeds every non-empty line of one or more text files and writes the result
as an embedding cache snapshot. The API loads the snapshot at startup, so
common concept names are never embedded twice.

Usage:
    python scripts/warm_embedding_cache.py concepts.txt [more.txt ...] [--output PATH] [--merge]

Environment:
    EMBEDDING_BACKEND / EMBEDDING_DIMENSION select the backend (see config.py)
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import settings
from knowledge_graph.embedding_cache import EmbeddingCache
from knowledge_graph.embedding_service import create_embedding_backend


def read_concepts(paths: List[str]) -> List[str]:
    """Unique stripped lines across all files, in first-seen order"""
    seen = {}
    for path in paths:
        for line in Path(path).read_text(encoding="utf-8").splitlines():
            text = line.strip()
            if text and not text.startswith("#"):
                seen.setdefault(text, None)
    return list(seen)


async def warm(concepts: List[str], output: str, merge: bool, backend_kind: Optional[str] = None) -> int:
    backend = create_embedding_backend(backend_kind)
    cache = EmbeddingCache(backend, max_entries=max(settings.EMBEDDING_CACHE_MAX_ENTRIES, len(concepts)))

    if merge and Path(output).exists():
        loaded = cache.load_snapshot(output)
        print(f"📂 Loaded {loaded} existing embeddings from {output}")

    before = len(cache)
    await cache.embed(concepts)
    print(f"🧠 Embedded {len(cache) - before} new concepts ({len(cache)} cached)")

    return cache.save_snapshot(output)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Warm the embedding cache from concept lists')
    parser.add_argument('inputs', nargs='+', help='Text files with one concept per line')
    parser.add_argument('--output', default=settings.EMBEDDING_CACHE_SNAPSHOT_PATH,
                        help=f'Snapshot path (default: {settings.EMBEDDING_CACHE_SNAPSHOT_PATH})')
    parser.add_argument('--merge', action='store_true', help='Keep entries from an existing snapshot')
    parser.add_argument('--backend', choices=['hash', 'openai'], help='Override EMBEDDING_BACKEND')

    args = parser.parse_args(argv)

    concepts = read_concepts(args.inputs)
    if not concepts:
        print("❌ Error: No concepts found in input files")
        return 1

    start = time.time()
    try:
        written = asyncio.run(warm(concepts, args.output, args.merge, args.backend))
    except KeyboardInterrupt:
        print("\n\n⚠️  Cache warming interrupted by user")
        return 1

    print(f"✅ Wrote {written} embeddings to {args.output} in {time.time() - start:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
