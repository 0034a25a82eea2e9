from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from authcore.api.middleware import (
    clear_credential_cookie,
    get_request_context,
    set_credential_cookie,
)
from authcore.api.schemas import (
    Envelope,
    LoginRequest,
    RegisterRequest,
    UserPatchRequest,
    UserResponse,
)
from authcore.logging import get_logger
from authcore.service.auth import RequestContext
from authcore.service.runtime import get_runtime

logger = get_logger(__name__)

public_router = APIRouter()
private_router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    response.headers["Pragma"] = "no-cache"


@public_router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an identity and its first session.

    Raises:
        409: If the username is already taken
    """
    runtime = get_runtime()
    issued = await runtime.auth.register(body.username, body.raw_password)
    set_credential_cookie(response, issued.token, runtime.settings)
    _no_store(response)
    return Envelope(status="ok", data=UserResponse.from_user(issued.user).model_dump(mode="json"))


@public_router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Open a new session for an existing identity.

    Raises:
        401: If the username is unknown or the password does not match
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(body.username, body.raw_password)
    set_credential_cookie(response, issued.token, runtime.settings)
    _no_store(response)
    return Envelope(status="ok", data=UserResponse.from_user(issued.user).model_dump(mode="json"))


@private_router.delete("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, ctx: RequestContext = Depends(get_request_context)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx.session)
    clear_credential_cookie(response, runtime.settings)
    _no_store(response)
    return Envelope(status="ok", data={"message": "logged out"})


@private_router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(ctx: RequestContext = Depends(get_request_context)):
    return Envelope(status="ok", data=UserResponse.from_user(ctx.user).model_dump(mode="json"))


@private_router.patch("/users/me", response_model=Envelope, tags=["users"])
async def patch_me(body: UserPatchRequest, ctx: RequestContext = Depends(get_request_context)):
    user = ctx.user
    if body.username is not None and body.username != user.username:
        user = await get_runtime().auth.update_username(user, body.username)
    return Envelope(status="ok", data=UserResponse.from_user(user).model_dump(mode="json"))


@private_router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_me(response: Response, ctx: RequestContext = Depends(get_request_context)):
    runtime = get_runtime()
    await runtime.auth.delete_user(ctx.user)
    clear_credential_cookie(response, runtime.settings)
    _no_store(response)
    return Envelope(status="ok", data={"message": "user deleted"})
