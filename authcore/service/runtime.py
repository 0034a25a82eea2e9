from __future__ import annotations

import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import configure_logging, get_logger
from authcore.service.auth import AuthService
from authcore.service.errors import (
    ConfigurationFault,
    IdentityNotFoundError,
    SessionNotFoundError,
)
from authcore.service.hashing import CredentialHasher
from authcore.service.resolver import CacheAsideResolver
from authcore.service.tokens import TokenCodec
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Session, User
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_UNSET: Any = object()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _check_secrets(settings: Settings) -> None:
    missing = [
        name
        for name, value in (
            ("JWT_SECRET", settings.jwt_secret),
            ("HASH_PEPPER", settings.hash_pepper),
        )
        if not value
    ]
    if missing:
        logger.error("runtime_secrets_missing", missing=missing)
        raise ConfigurationFault(
            f"refusing to start without required secrets: {', '.join(missing)}"
        )
    if settings.hash_cost < 1:
        raise ConfigurationFault("HASH_COST must be at least 1")


class Runtime:
    """Holds the singleton components for the FastAPI app.

    Settings are resolved once here and handed to each component; nothing
    further down reads the environment.
    """

    def __init__(self, settings: Optional[Settings] = None, *, cache: Any = _UNSET):
        self.settings = settings or get_settings()
        configure_logging(self.settings)
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )
        _check_secrets(self.settings)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._connect_cache() if cache is _UNSET else cache

        self.hasher = CredentialHasher(
            self.settings.hash_pepper,
            cost=self.settings.hash_cost,
            memory_kib=self.settings.hash_memory_kib,
        )
        self.codec = TokenCodec(self.settings.jwt_secret, self.settings.jwt_algorithm)
        self.users: CacheAsideResolver[User] = CacheAsideResolver(
            "user",
            cache=self.cache,
            loader=self.store.get_user,
            to_cache=User.to_cache,
            from_cache=User.from_cache,
            not_found=IdentityNotFoundError,
            ttl_seconds=self.settings.cache_ttl_seconds,
            timeout=self.settings.dependency_timeout_seconds,
        )
        self.sessions: CacheAsideResolver[Session] = CacheAsideResolver(
            "session",
            cache=self.cache,
            loader=self.store.get_session,
            to_cache=Session.to_cache,
            from_cache=Session.from_cache,
            not_found=SessionNotFoundError,
            ttl_seconds=self.settings.cache_ttl_seconds,
            timeout=self.settings.dependency_timeout_seconds,
        )
        self.auth = AuthService(
            self.store,
            hasher=self.hasher,
            codec=self.codec,
            users=self.users,
            sessions=self.sessions,
            settings=self.settings,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            api_version=self.settings.api_version,
        )

    def _connect_cache(self) -> Any:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.dependency_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.dependency_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the identity and session cache; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return None

    async def aclose(self) -> None:
        if self.cache is not None and hasattr(self.cache, "close"):
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            try:
                runtime.cache._sync_client.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
