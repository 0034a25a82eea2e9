from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Request, Response
from structlog.contextvars import bind_contextvars

from authcore.api.error_handling import error_response
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.auth import RequestContext
from authcore.service.errors import AuthenticationError
from authcore.service.runtime import get_runtime

logger = get_logger(__name__)

CREDENTIAL_COOKIE = "jwt_token"
REJECTION_MESSAGE = "authentication required"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def set_credential_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        CREDENTIAL_COOKIE,
        token,
        expires=datetime.now(timezone.utc) + settings.session_duration,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="strict",
    )


def clear_credential_cookie(response: Response, settings: Settings) -> None:
    """Overwrite the credential cookie with an empty, already-expired value."""
    response.set_cookie(
        CREDENTIAL_COOKIE,
        "",
        expires=_EPOCH,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="strict",
    )


def _sets_credential_cookie(response: Response) -> bool:
    prefix = f"{CREDENTIAL_COOKIE}=".encode()
    return any(
        name == b"set-cookie" and value.startswith(prefix)
        for name, value in response.raw_headers
    )


def _reject(settings: Settings, *, clear_cookie: bool) -> Response:
    # one generic message for every reason so sessions and identities cannot be probed
    response = error_response(401, REJECTION_MESSAGE, code="unauthorized")
    if clear_cookie:
        clear_credential_cookie(response, settings)
    return response


async def authenticate_request(request: Request, call_next, *, private_prefix: str):
    """Guard every route under ``private_prefix`` with the session credential.

    Rejections never reach the route handler. On success the resolved
    ``RequestContext`` is placed on ``request.state.auth`` and, when the token
    was near expiry, the replacement is written to the response cookie.
    """
    if not request.url.path.startswith(private_prefix):
        return await call_next(request)

    runtime = get_runtime()
    settings = runtime.settings
    try:
        result = await runtime.auth.authenticate(request.cookies.get(CREDENTIAL_COOKIE))
    except AuthenticationError as exc:
        logger.warning(
            "auth_rejected",
            reason=exc.reason,
            message=exc.message,
            detail=exc.detail,
        )
        return _reject(settings, clear_cookie=exc.clears_cookie)
    except Exception as exc:
        # fail closed
        logger.error(
            "auth_internal_fault",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _reject(settings, clear_cookie=False)

    request.state.auth = result.context
    # handler logs for this request carry who it was authenticated as
    bind_contextvars(
        session_id=result.context.session.id, user_id=result.context.user.id
    )
    response = await call_next(request)
    # a handler that already wrote the cookie (logout) has the last word
    if result.rotated_token and not _sets_credential_cookie(response):
        set_credential_cookie(response, result.rotated_token, settings)
        logger.info("token_rotated")
    return response


def get_request_context(request: Request) -> RequestContext:
    """FastAPI dependency returning the context the middleware established."""
    context = getattr(request.state, "auth", None)
    if not isinstance(context, RequestContext):
        raise AuthenticationError(REJECTION_MESSAGE)
    return context
