"""
Embedding Service

Pluggable text-embedding backends. A backend turns a batch of texts into
fixed-dimension vectors; caching and similarity live in embedding_cache.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np
from openai import AsyncOpenAI

from config import settings

logger = logging.getLogger(__name__)


class EmbeddingBackend(ABC):
    """Contract for anything that can embed text"""

    model_name: str
    dimension: int

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per input text, in input order"""


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """
    Generates semantic embeddings with OpenAI's embedding endpoint.

    Defaults to text-embedding-3-large (3072-dimensional vectors).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model_name = model or settings.EMBEDDING_MODEL
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.client = client or AsyncOpenAI(api_key=api_key or settings.OPENAI_API_KEY)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Text cannot be empty")

        response = await self.client.embeddings.create(
            model=self.model_name,
            input=texts,
            dimensions=self.dimension,
        )
        # Results carry their input index; keep input order
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]


class HashEmbeddingBackend(EmbeddingBackend):
    """
    Deterministic bag-of-tokens embedding.

    Every lowercase token is hashed into one signed bucket and the result is
    L2-normalized. Texts sharing tokens land close to each other, which is
    enough for name de-duplication and offline tests.
    """

    def __init__(self, dimension: Optional[int] = None, seed: int = 13):
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.seed = seed
        self.model_name = f"hash-{self.dimension}"

    def embed_text(self, text: str) -> List[float]:
        vec = np.zeros(self.dimension, dtype=np.float64)
        tokens = text.lower().split()
        for tok in tokens if tokens else [text]:
            digest = hashlib.blake2b(f"{self.seed}{tok}".encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest, "little") % self.dimension
            sign_bit = hashlib.blake2b(f"{tok}sign".encode("utf-8"), digest_size=1).digest()[0]
            vec[idx] += 1.0 if sign_bit % 2 == 0 else -1.0
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec.tolist()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_text(t) for t in texts]


def create_embedding_backend(kind: Optional[str] = None) -> EmbeddingBackend:
    """Build the backend selected by EMBEDDING_BACKEND"""
    kind = (kind or settings.EMBEDDING_BACKEND).lower()
    if kind == "openai":
        if not settings.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY is required for the openai embedding backend")
        logger.info(f"Using OpenAI embeddings ({settings.EMBEDDING_MODEL}, {settings.EMBEDDING_DIMENSION} dims)")
        return OpenAIEmbeddingBackend()
    if kind == "hash":
        logger.info(f"Using hash embeddings ({settings.EMBEDDING_DIMENSION} dims)")
        return HashEmbeddingBackend()
    raise ValueError(f"Unknown embedding backend: {kind}")
