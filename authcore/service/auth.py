from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import ContextManager, List, Optional, Protocol, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.concurrency import cancel, join, run_blocking, spawn
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    DependencyTimeoutError,
    IdentityNotFoundError,
    MissingTokenError,
    NotFoundError,
    SessionNotFoundError,
)
from authcore.service.hashing import CredentialHasher
from authcore.service.resolver import CacheAsideResolver
from authcore.service.tokens import TokenClaims, TokenCodec
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Session, User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid username or password"


class AuthStore(Protocol):
    def transaction(self) -> ContextManager["AuthStore"]: ...

    def create_user(self, username: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_username(self, user_id: str, username: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> List[str]: ...

    def create_session(self, user_id: str, duration: timedelta) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class RequestContext:
    """The identity and session a request was authenticated as. Read-only."""

    user: User
    session: Session


@dataclass(frozen=True)
class AuthResult:
    context: RequestContext
    # set when the presented token was close enough to expiry to be replaced
    rotated_token: Optional[str] = None


@dataclass(frozen=True)
class IssuedCredential:
    user: User
    session: Session
    token: str


class AuthService:
    """Request authentication plus the register/login/logout/profile flows.

    ``authenticate`` is the per-request state machine: verify the token, fan
    out the session and identity lookups, decide on rotation while they run,
    then join session before identity. Every failure surfaces as an
    ``AuthenticationError`` subclass whose ``reason`` is for logs only.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        hasher: CredentialHasher,
        codec: TokenCodec,
        users: CacheAsideResolver[User],
        sessions: CacheAsideResolver[Session],
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.users = users
        self.sessions = sessions
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- per-request authentication -------------------------------------

    async def authenticate(self, token: Optional[str]) -> AuthResult:
        if not token:
            raise MissingTokenError("credential cookie missing")
        claims = self.codec.verify(token)

        session_task = spawn(
            self.sessions.resolve(claims.session_id), name="resolve-session"
        )
        user_task = spawn(self.users.resolve(claims.identity_id), name="resolve-identity")
        # one budget for both joins, not one per join
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.resolution_timeout_seconds
        try:
            rotated = self._maybe_rotate(claims)
            session = await self._join_session(
                session_task, claims, max(0.0, deadline - loop.time())
            )
            user = await self._join_identity(
                user_task, claims, max(0.0, deadline - loop.time())
            )
        except BaseException:
            cancel(session_task, user_task)
            raise
        return AuthResult(RequestContext(user=user, session=session), rotated)

    def _maybe_rotate(self, claims: TokenClaims) -> Optional[str]:
        if claims.remaining(self._now()) > self.settings.rotation_threshold:
            return None
        try:
            return self.codec.issue(
                claims.identity_id, claims.session_id, self.settings.token_duration
            )
        except Exception as exc:
            self.logger.error("token_rotation_failed", error=str(exc))
            raise AuthenticationError("token rotation failed") from exc

    async def _join_session(
        self, task: "asyncio.Task[Session]", claims: TokenClaims, timeout: float
    ) -> Session:
        try:
            session = await join(task, timeout)
        except DependencyTimeoutError as exc:
            raise SessionNotFoundError(
                "session lookup timed out", detail={"session_id": claims.session_id}
            ) from exc
        if session.is_expired(self._now(), grace=self.settings.session_expiry_grace):
            self.logger.info(
                "session_expired",
                session_id=session.id,
                expires_at=session.expires_at.isoformat(),
            )
            await self.sessions.invalidate(session.id)
            raise SessionNotFoundError(
                "session expired", detail={"session_id": session.id}
            )
        return session

    async def _join_identity(
        self, task: "asyncio.Task[User]", claims: TokenClaims, timeout: float
    ) -> User:
        try:
            return await join(task, timeout)
        except (IdentityNotFoundError, DependencyTimeoutError) as exc:
            # a live session whose identity is gone is an anomaly, not a logout
            self.logger.warning(
                "identity_unresolved_for_session",
                identity_id=claims.identity_id,
                session_id=claims.session_id,
                error_type=type(exc).__name__,
            )
            raise IdentityNotFoundError(
                "identity not resolved", detail={"identity_id": claims.identity_id}
            ) from exc

    # -- credential flows ------------------------------------------------

    def _open_session(self, tx: AuthStore, user: User) -> Tuple[Session, str]:
        session = tx.create_session(user.id, self.settings.session_duration)
        token = self.codec.issue(user.id, session.id, self.settings.token_duration)
        return session, token

    async def register(self, username: str, password: str) -> IssuedCredential:
        timeout = self.settings.dependency_timeout_seconds
        hash_task = spawn(asyncio.to_thread(self.hasher.hash, password), name="hash-credential")
        try:
            existing = await run_blocking(
                self.store.get_user_by_username, username, timeout=timeout
            )
        except BaseException:
            cancel(hash_task)
            raise
        if existing is not None:
            cancel(hash_task)
            raise ConflictError("username already taken", detail={"field": "username"})
        password_hash = await hash_task

        def _create() -> IssuedCredential:
            with self.store.transaction() as tx:
                user = tx.create_user(username, password_hash)
                session, token = self._open_session(tx, user)
            return IssuedCredential(user=user, session=session, token=token)

        try:
            issued = await run_blocking(_create, timeout=timeout)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=issued.user.id, session_id=issued.session.id)
        return issued

    async def login(self, username: str, password: str) -> IssuedCredential:
        timeout = self.settings.dependency_timeout_seconds
        user = await run_blocking(self.store.get_user_by_username, username, timeout=timeout)
        if user is None:
            await asyncio.to_thread(self.hasher.verify_dummy, password)
            self.logger.info("login_failed", reason="unknown-username")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await asyncio.to_thread(self.hasher.verify, password, user.password_hash):
            self.logger.info("login_failed", reason="password-mismatch", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        def _create() -> IssuedCredential:
            with self.store.transaction() as tx:
                session, token = self._open_session(tx, user)
            return IssuedCredential(user=user, session=session, token=token)

        try:
            issued = await run_blocking(_create, timeout=timeout)
        except ConstraintViolation as exc:
            if not exc.missing_reference:
                raise
            # identity deleted between lookup and session insert
            raise AuthenticationError(INVALID_CREDENTIALS) from exc
        self.logger.info("user_logged_in", user_id=user.id, session_id=issued.session.id)
        return issued

    async def logout(self, session: Session) -> None:
        await run_blocking(
            self.store.delete_session,
            session.id,
            timeout=self.settings.dependency_timeout_seconds,
        )
        await self.sessions.invalidate(session.id)
        self.logger.info("session_logged_out", session_id=session.id, user_id=session.user_id)

    async def update_username(self, user: User, username: str) -> User:
        try:
            updated = await run_blocking(
                self.store.update_username,
                user.id,
                username,
                timeout=self.settings.dependency_timeout_seconds,
            )
        except ConstraintViolation as exc:
            raise ConflictError("username already taken", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("user not found", detail={"id": user.id})
        await self.users.invalidate(user.id)
        self.logger.info("username_updated", user_id=user.id)
        return updated

    async def delete_user(self, user: User) -> List[str]:
        cascaded = await run_blocking(
            self.store.delete_user,
            user.id,
            timeout=self.settings.dependency_timeout_seconds,
        )
        await self.users.invalidate(user.id)
        for session_id in cascaded:
            await self.sessions.invalidate(session_id)
        self.logger.info("user_deleted", user_id=user.id, sessions_removed=len(cascaded))
        return cascaded


__all__ = [
    "AuthResult",
    "AuthService",
    "AuthStore",
    "IssuedCredential",
    "RequestContext",
]
