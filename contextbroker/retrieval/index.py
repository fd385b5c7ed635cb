from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from contextbroker.retrieval.base import IndexHit, SimilarityIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Stored:
    fragment_id: str
    content: str
    timestamp: datetime
    vector: np.ndarray  # L2-normalized


class InMemorySimilarityIndex(SimilarityIndex):
    """
    Cosine-similarity index partitioned by (room, owner).

    Partitioning is the isolation boundary: a search only ever touches the partition
    named by its filters, so other owners' vectors are never ranked at all.
    """

    def __init__(self, dimension: Optional[int] = None) -> None:
        self.dimension = dimension
        self._partitions: Dict[Tuple[str, str], Dict[str, _Stored]] = {}

    def add(
        self,
        *,
        fragment_id: str,
        room_id: str,
        owner_id: str,
        content: str,
        vector: Sequence[float],
        timestamp: Optional[datetime] = None,
    ) -> None:
        arr = np.asarray(vector, dtype=np.float64)
        if self.dimension is not None and arr.shape != (self.dimension,):
            raise ValueError(f"Vector dimension {arr.shape} does not match expected dimension {self.dimension}")
        norm = float(np.linalg.norm(arr))
        if norm == 0:
            logger.warning(f"Skipping zero vector for fragment {fragment_id}")
            return
        part = self._partitions.setdefault((room_id, owner_id), {})
        part[fragment_id] = _Stored(
            fragment_id=fragment_id,
            content=content,
            timestamp=timestamp or datetime.now(timezone.utc),
            vector=arr / norm,
        )

    def remove(self, *, fragment_id: str, room_id: str, owner_id: str) -> bool:
        part = self._partitions.get((room_id, owner_id)) or {}
        return part.pop(fragment_id, None) is not None

    def remove_owner(self, *, room_id: str, owner_id: str) -> int:
        return len(self._partitions.pop((room_id, owner_id), {}) or {})

    def count(self, *, room_id: str, owner_id: str) -> int:
        return len(self._partitions.get((room_id, owner_id)) or {})

    async def search(
        self,
        vector: Sequence[float],
        *,
        owner_id: str,
        room_id: str,
        top_k: int,
    ) -> List[IndexHit]:
        part = self._partitions.get((room_id, owner_id))
        if not part or top_k <= 0:
            return []
        query = np.asarray(vector, dtype=np.float64)
        norm = float(np.linalg.norm(query))
        if norm == 0:
            return []
        query = query / norm

        stored = list(part.values())
        matrix = np.vstack([s.vector for s in stored])
        scores = matrix @ query
        # Stable sort keeps insertion order among equal scores.
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            IndexHit(
                fragment_id=stored[i].fragment_id,
                content=stored[i].content,
                similarity=float(scores[i]),
                timestamp=stored[i].timestamp,
                owner_id=owner_id,
                room_id=room_id,
            )
            for i in order
        ]
