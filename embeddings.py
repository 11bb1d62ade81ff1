"""
embeddings.py — descriptor text → fixed-dimension vector, via the Inference Gate.

Used both to embed incoming queries and to backfill catalog entries. For one
deployed model, identical text always yields the same vector, so results are
kept in a small LRU keyed by text; `is_match(x, x)` or a repeated query costs
a single upstream call.

Returned vectors are read-only numpy float32 arrays.
"""
from __future__ import annotations

import logging
from collections import OrderedDict

import numpy as np

from errors import ConfigurationError, InvalidInput
from inference_gate import InferenceGate
from providers.base import InferenceProvider

logger = logging.getLogger(__name__)


class EmbeddingProvider:

    def __init__(
        self,
        gate: InferenceGate,
        provider: InferenceProvider,
        dimension: int,
        cache_size: int = 2048,
    ):
        if dimension <= 0:
            raise ConfigurationError(f"Invalid vector dimension: {dimension}")
        self._gate = gate
        self._provider = provider
        self._dimension = dimension
        self._cache_size = cache_size
        self._cache: OrderedDict[str, np.ndarray] = OrderedDict()

    @property
    def dimension(self) -> int:
        return self._dimension

    def ensure_dimension(self, expected: int) -> None:
        """Startup check: the index and the embedder must agree exactly."""
        if expected != self._dimension:
            raise ConfigurationError(
                f"Embedding dimension {self._dimension} does not match "
                f"catalog index dimension {expected}"
            )

    async def embed(self, text: str) -> np.ndarray:
        key = " ".join((text or "").split())
        if not key:
            raise InvalidInput("Cannot embed empty text")

        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        values = await self._gate.submit(
            lambda: self._provider.embed(key, self._dimension),
            label="embed",
        )
        vector = np.asarray(values, dtype=np.float32)
        if vector.shape != (self._dimension,):
            raise ConfigurationError(
                f"{self._provider.full_name} returned {vector.size} dimensions; "
                f"expected {self._dimension}"
            )
        vector.setflags(write=False)

        if self._cache_size > 0:
            self._cache[key] = vector
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return vector
