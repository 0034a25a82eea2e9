from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from authcore.api.error_handling import register_exception_handlers
from authcore.api.middleware import authenticate_request
from authcore.api.routes import private_router, public_router
from authcore.config import get_settings
from authcore.logging import begin_request, get_logger

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

API_PREFIX = f"/api/v{_settings.api_version}"
PUBLIC_PREFIX = f"{API_PREFIX}/public"
PRIVATE_PREFIX = f"{API_PREFIX}/private"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving; a configuration fault aborts startup."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", api_prefix=API_PREFIX)

    yield

    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def authenticate(request: Request, call_next):
    return await authenticate_request(request, call_next, private_prefix=PRIVATE_PREFIX)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind X-Request-ID (or a fresh id) and the caller into the log context."""
    correlation_id = begin_request(
        request.headers.get("X-Request-ID"),
        client_ip=request.client.host if request.client else None,
        path=request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# added last so it is outermost and answers preflights before authentication
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(public_router, prefix=PUBLIC_PREFIX)
app.include_router(private_router, prefix=PRIVATE_PREFIX)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability using bounded probes."""
    from authcore.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if runtime.cache is not None:
        cache_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        # the store is authoritative, so a cache outage only degrades
        checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy", "degraded": not cache_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
