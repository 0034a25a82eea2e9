"""Unit tests for the authentication state machine and credential flows."""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from authcore.service.auth import AuthService
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    IdentityNotFoundError,
    MalformedTokenError,
    MissingTokenError,
    SessionNotFoundError,
)
from authcore.service.hashing import CredentialHasher
from authcore.service.resolver import CacheAsideResolver
from authcore.service.tokens import TokenCodec
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Session, User


def _build(settings, cache, store=None):
    store = store or MemoryStore()
    users = CacheAsideResolver(
        "user",
        cache=cache,
        loader=store.get_user,
        to_cache=User.to_cache,
        from_cache=User.from_cache,
        not_found=IdentityNotFoundError,
        ttl_seconds=settings.cache_ttl_seconds,
        timeout=settings.dependency_timeout_seconds,
    )
    sessions = CacheAsideResolver(
        "session",
        cache=cache,
        loader=store.get_session,
        to_cache=Session.to_cache,
        from_cache=Session.from_cache,
        not_found=SessionNotFoundError,
        ttl_seconds=settings.cache_ttl_seconds,
        timeout=settings.dependency_timeout_seconds,
    )
    return AuthService(
        store,
        hasher=CredentialHasher(
            settings.hash_pepper, cost=settings.hash_cost, memory_kib=settings.hash_memory_kib
        ),
        codec=TokenCodec(settings.jwt_secret),
        users=users,
        sessions=sessions,
        settings=settings,
    )


class SlowStore(MemoryStore):
    """MemoryStore whose point lookups block the calling thread."""

    def __init__(self, user_delay=0.0, session_delay=0.0):
        super().__init__()
        self.user_delay = user_delay
        self.session_delay = session_delay

    def get_user(self, user_id):
        time.sleep(self.user_delay)
        return super().get_user(user_id)

    def get_session(self, session_id):
        time.sleep(self.session_delay)
        return super().get_session(session_id)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(settings, fake_cache, store):
    return _build(settings, fake_cache, store)


class TestRegisterAndLogin:
    async def test_register_creates_user_session_and_token(self, service, store):
        issued = await service.register("alice", "password123")
        assert store.get_user(issued.user.id).username == "alice"
        assert store.get_session(issued.session.id).user_id == issued.user.id
        claims = service.codec.verify(issued.token)
        assert claims.identity_id == issued.user.id
        assert claims.session_id == issued.session.id
        # the stored hash is argon2 over password + pepper, never the plaintext
        assert store.get_user(issued.user.id).password_hash != "password123"

    async def test_register_duplicate_username_conflicts(self, service, store):
        await service.register("alice", "password123")
        with pytest.raises(ConflictError):
            await service.register("alice", "another-password")
        assert len(store.users) == 1

    async def test_register_rolls_back_user_when_session_insert_fails(self, service, store):
        with mock.patch.object(
            MemoryStore, "create_session", side_effect=RuntimeError("disk full")
        ):
            with pytest.raises(RuntimeError):
                await service.register("alice", "password123")
        assert store.get_user_by_username("alice") is None
        assert store.sessions == {}

    async def test_login_opens_new_session(self, service, store):
        registered = await service.register("alice", "password123")
        issued = await service.login("alice", "password123")
        assert issued.user.id == registered.user.id
        assert issued.session.id != registered.session.id
        assert len(store.sessions) == 2

    async def test_login_wrong_password_and_unknown_user_look_identical(self, service):
        await service.register("alice", "password123")
        with pytest.raises(AuthenticationError) as wrong_password:
            await service.login("alice", "password124")
        with pytest.raises(AuthenticationError) as unknown_user:
            await service.login("bob", "password123")
        assert wrong_password.value.message == unknown_user.value.message
        assert wrong_password.value.message == "invalid username or password"

    async def test_login_racing_user_deletion_is_invalid_credentials(self, service, store):
        await service.register("alice", "password123")
        original = MemoryStore.create_session

        def vanish_then_insert(self, user_id, duration):
            self.users.pop(user_id, None)
            return original(self, user_id, duration)

        with mock.patch.object(MemoryStore, "create_session", vanish_then_insert):
            with pytest.raises(AuthenticationError) as excinfo:
                await service.login("alice", "password123")
        assert excinfo.value.message == "invalid username or password"

    async def test_unknown_user_still_runs_a_verification(self, service):
        with mock.patch.object(
            service.hasher, "verify_dummy", wraps=service.hasher.verify_dummy
        ) as dummy:
            with pytest.raises(AuthenticationError):
                await service.login("nobody", "password123")
        dummy.assert_called_once()


class TestAuthenticate:
    async def test_missing_token(self, service):
        with pytest.raises(MissingTokenError):
            await service.authenticate(None)
        with pytest.raises(MissingTokenError):
            await service.authenticate("")

    async def test_malformed_token(self, service):
        with pytest.raises(MalformedTokenError):
            await service.authenticate("not.a.token")

    async def test_valid_token_resolves_context_without_rotation(self, service):
        issued = await service.register("alice", "password123")
        result = await service.authenticate(issued.token)
        assert result.context.user.id == issued.user.id
        assert result.context.session.id == issued.session.id
        assert result.rotated_token is None

    async def test_near_expiry_token_is_rotated(self, settings, fake_cache, store):
        service = _build(
            settings.model_copy(update={"token_duration_seconds": 1, "rotation_threshold_seconds": 2}),
            fake_cache,
            store,
        )
        issued = await service.register("alice", "password123")
        result = await service.authenticate(issued.token)
        assert result.rotated_token is not None
        rotated = service.codec.verify(result.rotated_token)
        assert rotated.session_id == issued.session.id
        assert rotated.identity_id == issued.user.id

    async def test_deleted_session_is_session_invalid(self, service, store, fake_cache):
        issued = await service.register("alice", "password123")
        await service.authenticate(issued.token)
        assert f"session:{issued.session.id}" in fake_cache.entries

        await service.logout(issued.session)
        with pytest.raises(SessionNotFoundError) as excinfo:
            await service.authenticate(issued.token)
        assert excinfo.value.clears_cookie is True

    async def test_session_within_grace_is_accepted(self, service, store):
        issued = await service.register("alice", "password123")
        store.sessions[issued.session.id].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=10
        )
        result = await service.authenticate(issued.token)
        assert result.context.session.id == issued.session.id

    async def test_session_past_grace_is_rejected_and_uncached(self, service, store, fake_cache):
        issued = await service.register("alice", "password123")
        store.sessions[issued.session.id].expires_at = datetime.now(timezone.utc) - timedelta(
            hours=1
        )
        with pytest.raises(SessionNotFoundError):
            await service.authenticate(issued.token)
        assert f"session:{issued.session.id}" in fake_cache.drops

    async def test_identity_missing_does_not_clear_cookie(self, service, store):
        issued = await service.register("alice", "password123")
        store.users.pop(issued.user.id)
        with pytest.raises(IdentityNotFoundError) as excinfo:
            await service.authenticate(issued.token)
        assert excinfo.value.clears_cookie is False

    async def test_identity_claim_is_not_cross_checked_against_session(self, service):
        alice = await service.register("alice", "password123")
        bob = await service.register("bobby", "password123")
        token = service.codec.issue(bob.user.id, alice.session.id, timedelta(minutes=5))
        result = await service.authenticate(token)
        assert result.context.user.id == bob.user.id
        assert result.context.session.id == alice.session.id

    async def test_session_timeout_is_session_invalid(self, settings, fake_cache, store):
        service = _build(settings.model_copy(update={"resolution_timeout_seconds": 0.05}), fake_cache, store)
        issued = await service.register("alice", "password123")

        async def hang(_session_id):
            await asyncio.sleep(5)

        with mock.patch.object(service.sessions, "resolve", side_effect=hang):
            with pytest.raises(SessionNotFoundError):
                await service.authenticate(issued.token)

    async def test_rotation_fault_fails_closed(self, settings, fake_cache, store):
        service = _build(
            settings.model_copy(update={"token_duration_seconds": 1, "rotation_threshold_seconds": 2}),
            fake_cache,
            store,
        )
        issued = await service.register("alice", "password123")
        with mock.patch.object(service.codec, "issue", side_effect=RuntimeError("boom")):
            with pytest.raises(AuthenticationError):
                await service.authenticate(issued.token)


    async def test_session_and_identity_lookups_overlap(self, settings):
        store = SlowStore(user_delay=0.4, session_delay=0.4)
        service = _build(settings, None, store)
        issued = await service.register("alice", "password123")

        started = time.monotonic()
        result = await service.authenticate(issued.token)
        elapsed = time.monotonic() - started

        assert result.context.user.id == issued.user.id
        assert elapsed < 0.7

    async def test_both_joins_share_one_deadline(self, settings):
        store = SlowStore(user_delay=0.9, session_delay=0.3)
        service = _build(
            settings.model_copy(update={"resolution_timeout_seconds": 0.5}), None, store
        )
        issued = await service.register("alice", "password123")

        started = time.monotonic()
        with pytest.raises(IdentityNotFoundError):
            await service.authenticate(issued.token)
        # separate budgets would give up only after session 0.3 + identity 0.5
        assert time.monotonic() - started < 0.7


class TestProfileMutations:
    async def test_update_username_invalidates_user_cache(self, service, fake_cache):
        issued = await service.register("alice", "password123")
        await service.authenticate(issued.token)
        assert f"user:{issued.user.id}" in fake_cache.entries

        updated = await service.update_username(issued.user, "alicia")
        assert updated.username == "alicia"
        assert f"user:{issued.user.id}" not in fake_cache.entries

        result = await service.authenticate(issued.token)
        assert result.context.user.username == "alicia"

    async def test_update_username_to_taken_name_conflicts(self, service):
        alice = await service.register("alice", "password123")
        await service.register("bobby", "password123")
        with pytest.raises(ConflictError):
            await service.update_username(alice.user, "bobby")

    async def test_delete_user_drops_user_and_cascaded_sessions(self, service, store, fake_cache):
        first = await service.register("alice", "password123")
        second = await service.login("alice", "password123")
        await service.authenticate(first.token)

        cascaded = await service.delete_user(first.user)
        assert set(cascaded) == {first.session.id, second.session.id}
        assert store.sessions == {}
        assert f"user:{first.user.id}" in fake_cache.drops
        assert f"session:{first.session.id}" in fake_cache.drops
        assert f"session:{second.session.id}" in fake_cache.drops
        with pytest.raises(SessionNotFoundError):
            await service.authenticate(first.token)
