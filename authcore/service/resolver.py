from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Generic, Optional, Protocol, Type, TypeVar

from authcore.logging import get_logger
from authcore.service.concurrency import run_blocking
from authcore.service.errors import ServiceError

logger = get_logger(__name__)

E = TypeVar("E")


class EntityCache(Protocol):
    async def get_entity(self, kind: str, entity_id: str) -> Optional[Dict[str, Any]]: ...

    async def set_entity(
        self, kind: str, entity_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None: ...

    async def drop_entity(self, kind: str, entity_id: str) -> None: ...


class CacheAsideResolver(Generic[E]):
    """Read-through lookup of one entity kind: cache first, store of record second.

    Cache faults never fail a resolution; they are logged and the store is
    consulted instead. Population after a store hit is best effort.
    """

    def __init__(
        self,
        kind: str,
        *,
        cache: Optional[EntityCache],
        loader: Callable[[str], Optional[E]],
        to_cache: Callable[[E], Dict[str, Any]],
        from_cache: Callable[[Dict[str, Any]], E],
        not_found: Type[ServiceError],
        ttl_seconds: int,
        timeout: float,
    ) -> None:
        self.kind = kind
        self.cache = cache
        self._loader = loader
        self._to_cache = to_cache
        self._from_cache = from_cache
        self._not_found = not_found
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout

    async def _cache_get(self, entity_id: str) -> Optional[E]:
        if self.cache is None:
            return None
        try:
            payload = await asyncio.wait_for(
                self.cache.get_entity(self.kind, entity_id), timeout=self.timeout
            )
            if payload is None:
                return None
            return self._from_cache(payload)
        except Exception as exc:
            # anything but a clean miss falls through to the store
            logger.warning(
                "cache_read_failed",
                kind=self.kind,
                entity_id=entity_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    async def _cache_set(self, entity_id: str, entity: E) -> None:
        if self.cache is None:
            return
        try:
            await asyncio.wait_for(
                self.cache.set_entity(
                    self.kind, entity_id, self._to_cache(entity), self.ttl_seconds
                ),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning(
                "cache_populate_failed",
                kind=self.kind,
                entity_id=entity_id,
                error=str(exc),
            )

    async def resolve(self, entity_id: str) -> E:
        """Return the entity, raising the kind's not-found error when the store has none.

        A store that does not answer within ``timeout`` raises
        ``DependencyTimeoutError``.
        """
        cached = await self._cache_get(entity_id)
        if cached is not None:
            return cached

        entity = await run_blocking(self._loader, entity_id, timeout=self.timeout)
        if entity is None:
            raise self._not_found(
                f"{self.kind} not found", detail={"id": entity_id}
            )
        await self._cache_set(entity_id, entity)
        return entity

    async def invalidate(self, entity_id: str) -> None:
        """Drop the cached snapshot after a delete or material change."""
        if self.cache is None:
            return
        try:
            await asyncio.wait_for(
                self.cache.drop_entity(self.kind, entity_id), timeout=self.timeout
            )
        except Exception as exc:
            logger.warning(
                "cache_invalidate_failed",
                kind=self.kind,
                entity_id=entity_id,
                error=str(exc),
            )
