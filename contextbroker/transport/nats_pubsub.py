from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from contextbroker.transport.base import DEFAULT_TOPIC_PREFIX, RealtimeTransport

logger = logging.getLogger(__name__)


class _NatsSubscription:
    def __init__(self, sub: Any, topic: str) -> None:
        self._sub = sub
        self.topic = topic

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[Dict[str, Any]]:
        async for msg in self._sub.messages:
            data = getattr(msg, "data", b"") or b""
            try:
                event = json.loads(data.decode("utf-8"))
            except Exception:
                logger.warning(f"Dropping undecodable event on {self.topic} ({len(data)} bytes)")
                continue
            if not isinstance(event, dict):
                logger.warning(f"Dropping non-object event on {self.topic}")
                continue
            yield event

    async def close(self) -> None:
        try:
            await self._sub.unsubscribe()
        except Exception as e:
            # Connection already gone; nothing left to release.
            logger.debug(f"Unsubscribe from {self.topic} failed: {e}")


class NatsTransport(RealtimeTransport):
    """
    NATS core pub/sub transport (async).

    Notes:
    - We keep a single cached connection per-process.
    - Core NATS is at-most-once per subscriber; the approval protocol is idempotent on
      request id, so a JetStream-backed deployment (redelivery) works unchanged.
    """

    def __init__(self, *, nats_url: str) -> None:
        self.nats_url = (nats_url or "").strip()
        self._nc = None
        self._lock = asyncio.Lock()

    async def _ensure_connected(self) -> None:
        if self._nc is not None:
            return
        async with self._lock:
            if self._nc is not None:
                return
            try:
                import nats  # type: ignore[import-not-found]
            except Exception as e:
                raise RuntimeError("Missing NATS client dependency. Install `nats-py` to use the NATS transport.") from e

            logger.info(f"Connecting to NATS at {self.nats_url}...")
            self._nc = await nats.connect(servers=[self.nats_url])
            logger.info("Connected to NATS")

    async def warmup(self) -> None:
        """
        Eagerly connect.

        Used by the API server to fail-fast at startup if NATS is unreachable.
        """
        await self._ensure_connected()

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        await self._ensure_connected()
        assert self._nc is not None
        data = json.dumps(event, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")
        await self._nc.publish(topic, data)  # type: ignore[union-attr]

    async def subscribe(self, topic: str) -> _NatsSubscription:
        await self._ensure_connected()
        assert self._nc is not None
        sub = await self._nc.subscribe(topic)  # type: ignore[union-attr]
        return _NatsSubscription(sub, topic)

    async def close(self) -> None:
        if self._nc is None:
            return
        try:
            await self._nc.drain()  # type: ignore[union-attr]
        finally:
            self._nc = None


_cache_lock = asyncio.Lock()
_cached: Optional[NatsTransport] = None
_cached_key: Optional[Tuple[str]] = None


def _env(name: str, default: str) -> str:
    return (os.getenv(name) or "").strip() or default


def topic_prefix_from_env() -> str:
    return _env("CONTEXTBROKER_TOPIC_PREFIX", DEFAULT_TOPIC_PREFIX)


async def get_transport_from_env() -> NatsTransport:
    """
    Cached NATS transport from env.

    Env:
    - NATS_URL (default: nats://127.0.0.1:4222)
    """
    global _cached, _cached_key

    nats_url = _env("NATS_URL", "nats://127.0.0.1:4222")
    key = (nats_url,)

    async with _cache_lock:
        if _cached is not None and _cached_key == key:
            return _cached
        _cached = NatsTransport(nats_url=nats_url)
        _cached_key = key
        return _cached
