from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Protocol, Sequence


@dataclass(frozen=True)
class IndexHit:
    fragment_id: str
    content: str
    similarity: float
    timestamp: datetime
    owner_id: str
    room_id: str


class EmbeddingProvider(Protocol):
    """
    text -> fixed-length vector.

    Deterministic for equal input within a provider version. Failures surface as
    EmbeddingUnavailable (other exceptions are wrapped by the retrieval engine).
    """

    @property
    def dimension(self) -> int:
        ...

    async def embed(self, text: str) -> List[float]:
        ...


class SimilarityIndex(Protocol):
    """
    Nearest-neighbour search scoped to (room, owner).

    The owner/room filter is applied before ranking; implementations must never rank
    vectors belonging to anyone else.
    """

    async def search(
        self,
        vector: Sequence[float],
        *,
        owner_id: str,
        room_id: str,
        top_k: int,
    ) -> List[IndexHit]:
        """Hits ordered by similarity, highest first."""
