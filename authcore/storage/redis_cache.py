from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


def _entity_key(kind: str, entity_id: str) -> str:
    return f"{kind}:{entity_id}"


class RedisCache:
    """Read-through cache for identity and session records.

    Entries live under ``<kind>:<id>`` (``user:<id>``, ``session:<id>``) as
    JSON documents with a fixed TTL. A miss returns ``None``; any other failure
    propagates so callers can fall back to the store.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_entity(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(_entity_key(kind, entity_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_entity(
        self, kind: str, entity_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            _entity_key(kind, entity_id), json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def drop_entity(self, kind: str, entity_id: str) -> None:
        await self.client.delete(_entity_key(kind, entity_id))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes async methods so it can be awaited uniformly
    like ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get_entity(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]:
        raw = self._sync_client.get(_entity_key(kind, entity_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_entity(
        self, kind: str, entity_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            _entity_key(kind, entity_id), json.dumps(payload), ex=max(1, ttl_seconds)
        )

    async def drop_entity(self, kind: str, entity_id: str) -> None:
        self._sync_client.delete(_entity_key(kind, entity_id))

    async def close(self) -> None:
        self._sync_client.close()
