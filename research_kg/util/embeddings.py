"""
MODULE: Embedding Client
DESCRIPTION: Text -> fixed-length vector, with input cleanup and an in-process cache.
"""

import asyncio
import re
from typing import Optional

import numpy as np
from langchain_core.embeddings import Embeddings

# Very rough approximation: 4 chars ~= 1 token
CHARS_PER_TOKEN = 4


def prepare_text_for_embedding(text: str, max_tokens: int = 8000) -> str:
    """Collapse whitespace and truncate to the approximate token limit."""
    if not text or not text.strip():
        return ""
    clean = re.sub(r"\s+", " ", text.strip())
    return clean[: max_tokens * CHARS_PER_TOKEN]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity between two vectors (0.0 if either is zero)."""
    if len(a) != len(b):
        raise ValueError("Embeddings must have the same dimensions")
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


class EmbeddingClient:
    """Wraps a langchain Embeddings model with cleanup and caching."""

    def __init__(self, model: Embeddings, max_tokens: int = 8000, use_cache: bool = True):
        self.model = model
        self.max_tokens = max_tokens
        self.use_cache = use_cache
        self._cache: dict[str, list[float]] = {}

    def embed(self, text: str) -> list[float]:
        clean = prepare_text_for_embedding(text, self.max_tokens)
        if not clean:
            raise ValueError("Cannot embed empty text")

        if self.use_cache and clean in self._cache:
            return self._cache[clean]

        vector = list(self.model.embed_query(clean))
        if self.use_cache:
            self._cache[clean] = vector
        return vector

    async def aembed(self, text: str, timeout: Optional[float] = None) -> list[float]:
        return await asyncio.wait_for(asyncio.to_thread(self.embed, text), timeout=timeout)

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
