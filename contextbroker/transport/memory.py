from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from contextbroker.transport.base import RealtimeTransport

logger = logging.getLogger(__name__)

_CLOSED = object()


class _QueueSubscription:
    def __init__(self, owner: "InProcessTransport", topic: str) -> None:
        self._owner = owner
        self.topic = topic
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._owner._detach(self)
        self.queue.put_nowait(_CLOSED)


class InProcessTransport(RealtimeTransport):
    """
    In-process pub/sub over asyncio queues.

    Events are round-tripped through JSON so subscribers see exactly what a network
    transport would deliver. `duplicate_delivery=True` delivers every event twice,
    which exercises at-least-once handling.
    """

    def __init__(self, *, duplicate_delivery: bool = False) -> None:
        self.duplicate_delivery = duplicate_delivery
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self._subs: Dict[str, List[_QueueSubscription]] = {}

    def _detach(self, sub: _QueueSubscription) -> None:
        subs = self._subs.get(sub.topic) or []
        if sub in subs:
            subs.remove(sub)

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        wire = json.loads(json.dumps(event, separators=(",", ":"), sort_keys=True, default=str))
        self.published.append((topic, wire))
        copies = 2 if self.duplicate_delivery else 1
        for sub in list(self._subs.get(topic) or []):
            for _ in range(copies):
                sub.queue.put_nowait(dict(wire))

    async def subscribe(self, topic: str) -> _QueueSubscription:
        sub = _QueueSubscription(self, topic)
        self._subs.setdefault(topic, []).append(sub)
        return sub

    def events_for(self, topic: str, *, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return [e for t, e in self.published if t == topic and (kind is None or e.get("kind") == kind)]
