from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from contextbroker.authz.policy import BrokerPolicy
from contextbroker.authz.redaction import redact_text
from contextbroker.core.errors import EmbeddingUnavailable, IndexUnavailable
from contextbroker.core.models import (
    ContextBundle,
    ContextFragment,
    NoRelevantContext,
    RetrievalResult,
    new_id,
)
from contextbroker.retrieval.base import EmbeddingProvider, IndexHit, SimilarityIndex

logger = logging.getLogger(__name__)


class RetrievalEngine:
    """
    Turns an approved request into a bounded, attributable, redacted context bundle.

    Only call this after a grant: it performs no authorization of its own beyond the
    owner/room scoping of the search.
    """

    def __init__(
        self,
        *,
        embedder: EmbeddingProvider,
        index: SimilarityIndex,
        policy: Optional[BrokerPolicy] = None,
    ) -> None:
        self.embedder = embedder
        self.index = index
        self.policy = policy or BrokerPolicy()

    async def _embed(self, query: str) -> List[float]:
        try:
            return list(await self.embedder.embed(query))
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            raise EmbeddingUnavailable(f"embedding provider failed: {e}") from e

    async def _search(self, vector: List[float], *, owner_id: str, room_id: str, top_k: int) -> List[IndexHit]:
        try:
            return list(await self.index.search(vector, owner_id=owner_id, room_id=room_id, top_k=top_k))
        except IndexUnavailable:
            raise
        except Exception as e:
            raise IndexUnavailable(f"similarity index failed: {e}") from e

    async def ingest(
        self,
        *,
        room_id: str,
        owner_id: str,
        content: str,
        fragment_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Embed and index one fragment owned by `owner_id` (dev ingestion path)."""
        add = getattr(self.index, "add", None)
        if add is None:
            raise TypeError(f"{type(self.index).__name__} does not support ingestion")
        fid = fragment_id or new_id()
        vector = await self._embed(content)
        add(fragment_id=fid, room_id=room_id, owner_id=owner_id, content=content, vector=vector, timestamp=timestamp)
        logger.info(f"Indexed fragment {fid} for {owner_id} in {room_id}")
        return fid

    def _to_fragment(self, hit: IndexHit) -> ContextFragment:
        content = hit.content or ""
        kinds: List[str] = []
        if self.policy.redact_sensitive:
            content, kinds = redact_text(content, redact_infrastructure=self.policy.redact_infrastructure)
        return ContextFragment(
            fragment_id=hit.fragment_id,
            content=content,
            source_timestamp=hit.timestamp,
            similarity=float(hit.similarity),
            owner_id=hit.owner_id,
            redactions=kinds,
        )

    async def retrieve(
        self,
        *,
        request_id: str,
        room_id: str,
        target_id: str,
        query: str,
        threshold: Optional[float] = None,
        max_results: Optional[int] = None,
    ) -> RetrievalResult:
        thr = self.policy.similarity_threshold if threshold is None else float(threshold)
        limit = self.policy.max_results if max_results is None else max(1, int(max_results))

        vector = await self._embed(query)
        hits = await self._search(vector, owner_id=target_id, room_id=room_id, top_k=limit)

        kept: List[IndexHit] = []
        for h in hits:
            if h.owner_id != target_id or h.room_id != room_id:
                # The index broke its filter contract; never let the fragment through.
                logger.error(
                    f"Isolation anomaly: index returned fragment {h.fragment_id} owned by "
                    f"{h.owner_id}/{h.room_id} for target {target_id}/{room_id}; dropped"
                )
                continue
            if h.similarity >= thr:
                kept.append(h)

        kept.sort(key=lambda h: h.similarity, reverse=True)
        kept = kept[:limit]

        if not kept:
            logger.info(f"No fragments above {thr} for request {request_id} (target={target_id})")
            return NoRelevantContext(request_id=request_id, room_id=room_id, target_id=target_id, threshold=thr)

        fragments = [self._to_fragment(h) for h in kept]
        redacted = sum(1 for f in fragments if f.redactions)
        logger.info(
            f"Retrieved {len(fragments)} fragment(s) for request {request_id} "
            f"(target={target_id}, redacted={redacted})"
        )
        return ContextBundle(request_id=request_id, room_id=room_id, target_id=target_id, fragments=fragments)
