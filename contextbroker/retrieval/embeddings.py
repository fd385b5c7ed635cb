from __future__ import annotations

import hashlib
import re
from typing import List

import numpy as np

_WORD = re.compile(r"[a-z0-9]+")


class HashingEmbedding:
    """
    Deterministic feature-hashing embedding for dev/tests.

    Each lowercase word token is hashed into one of `dimension` buckets with a hashed
    sign; the result is L2-normalized, so texts sharing vocabulary have positive
    cosine similarity. No model download, stable across processes.
    """

    def __init__(self, dimension: int = 256) -> None:
        if dimension < 8:
            raise ValueError("dimension must be >= 8")
        self._dimension = int(dimension)

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed_sync(self, text: str) -> List[float]:
        vec = np.zeros(self._dimension, dtype=np.float64)
        for tok in _WORD.findall((text or "").lower()):
            h = hashlib.sha256(tok.encode("utf-8")).digest()
            bucket = int.from_bytes(h[:4], "big") % self._dimension
            sign = 1.0 if h[4] & 1 else -1.0
            vec[bucket] += sign
        norm = float(np.linalg.norm(vec))
        if norm > 0:
            vec = vec / norm
        return vec.tolist()

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)
