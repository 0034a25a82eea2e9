"""Unit tests for the memory store and the Postgres store's SQL mapping."""

import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from authcore.logging import get_logger
from authcore.storage.errors import SESSION_USER_FK, USERNAME_UNIQUE, ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import Session, User
from authcore.storage.postgres import PostgresStore


@pytest.fixture
def memory_store():
    return MemoryStore()


class TestMemoryStoreUsers:
    def test_create_and_lookup(self, memory_store):
        user = memory_store.create_user("alice", "hash")
        assert memory_store.get_user(user.id).username == "alice"
        assert memory_store.get_user_by_username("alice").id == user.id
        assert memory_store.get_user("missing") is None

    def test_username_is_unique(self, memory_store):
        memory_store.create_user("alice", "hash")
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("alice", "other")
        assert excinfo.value.constraint == USERNAME_UNIQUE
        assert not excinfo.value.missing_reference

    def test_reads_return_copies(self, memory_store):
        user = memory_store.create_user("alice", "hash")
        copy = memory_store.get_user(user.id)
        copy.username = "mallory"
        assert memory_store.get_user(user.id).username == "alice"

    def test_update_username(self, memory_store):
        user = memory_store.create_user("alice", "hash")
        memory_store.create_user("bobby", "hash")
        updated = memory_store.update_username(user.id, "alicia")
        assert updated.username == "alicia"
        assert updated.last_updated_at >= user.last_updated_at
        with pytest.raises(ConstraintViolation):
            memory_store.update_username(user.id, "bobby")
        assert memory_store.update_username("missing", "nobody") is None

    def test_delete_user_cascades_sessions(self, memory_store):
        user = memory_store.create_user("alice", "hash")
        other = memory_store.create_user("bobby", "hash")
        first = memory_store.create_session(user.id, timedelta(days=1))
        second = memory_store.create_session(user.id, timedelta(days=1))
        kept = memory_store.create_session(other.id, timedelta(days=1))

        cascaded = memory_store.delete_user(user.id)
        assert set(cascaded) == {first.id, second.id}
        assert memory_store.get_session(kept.id) is not None
        assert memory_store.delete_user(user.id) == []


class TestMemoryStoreSessions:
    def test_session_requires_user(self, memory_store):
        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_session("missing", timedelta(days=1))
        assert excinfo.value.constraint == SESSION_USER_FK
        assert excinfo.value.missing_reference

    def test_session_expiry_window(self, memory_store):
        user = memory_store.create_user("alice", "hash")
        session = memory_store.create_session(user.id, timedelta(days=28))
        assert session.expires_at - session.created_at == timedelta(days=28)
        assert memory_store.delete_session(session.id) is True
        assert memory_store.delete_session(session.id) is False

    def test_transaction_rolls_back_on_error(self, memory_store):
        with pytest.raises(RuntimeError):
            with memory_store.transaction() as tx:
                user = tx.create_user("alice", "hash")
                tx.create_session(user.id, timedelta(days=1))
                raise RuntimeError("token issuance failed")
        assert memory_store.users == {}
        assert memory_store.sessions == {}

    def test_transaction_commits(self, memory_store):
        with memory_store.transaction() as tx:
            user = tx.create_user("alice", "hash")
            tx.create_session(user.id, timedelta(days=1))
        assert len(memory_store.users) == 1
        assert len(memory_store.sessions) == 1


class TestModels:
    def test_session_grace(self):
        now = datetime.now(timezone.utc)
        session = Session(id="s", user_id="u", expires_at=now - timedelta(seconds=30))
        assert session.is_expired(now)
        assert not session.is_expired(now, grace=timedelta(seconds=60))
        assert session.is_expired(now, grace=timedelta(seconds=10))

    def test_cache_snapshots_restore_equal_records(self):
        user = User.new("alice", "hash")
        assert User.from_cache(user.to_cache()) == user
        session = Session.new(user.id, timedelta(hours=1))
        assert Session.from_cache(session.to_cache()) == session

    def test_naive_cached_timestamps_are_read_as_utc(self):
        session = Session.from_cache(
            {
                "id": "s",
                "user_id": "u",
                "expires_at": "2030-01-01T00:00:00",
                "created_at": "2029-12-01T00:00:00",
                "last_updated_at": "2029-12-01T00:00:00",
            }
        )
        assert session.expires_at.tzinfo is not None


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @contextlib.contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _pg_store(*responses):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.logger = get_logger(__name__)
    conn = FakeConnection(responses)
    store.pool = FakePool(conn)
    return store, conn


def _user_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "username": "alice",
        "password": "hash",
        "is_verified": False,
        "created_at": now,
        "last_updated_at": now,
    }
    row.update(overrides)
    return row


class TestPostgresStore:
    def test_get_user_maps_row(self):
        row = _user_row()
        store, conn = _pg_store(FakeCursor([row]))
        user = store.get_user(str(row["id"]))
        assert user.id == str(row["id"])
        assert user.password_hash == "hash"
        assert conn.statements[0][0] == "SELECT * FROM users WHERE id = %s"

    def test_get_user_with_non_uuid_id_is_none(self):
        store, _ = _pg_store(errors.InvalidTextRepresentation("bad uuid"))
        assert store.get_user("not-a-uuid") is None

    def test_duplicate_username_is_constraint_violation(self):
        store, _ = _pg_store(errors.UniqueViolation("duplicate"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("alice", "hash")
        assert excinfo.value.constraint == USERNAME_UNIQUE

    def test_session_for_missing_user_is_constraint_violation(self):
        store, _ = _pg_store(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_session(str(uuid.uuid4()), timedelta(days=1))
        assert excinfo.value.constraint == SESSION_USER_FK

    def test_delete_user_returns_cascaded_session_ids(self):
        session_ids = [uuid.uuid4(), uuid.uuid4()]
        store, conn = _pg_store(
            FakeCursor([{"id": sid} for sid in session_ids]), FakeCursor(rowcount=1)
        )
        cascaded = store.delete_user(str(uuid.uuid4()))
        assert cascaded == [str(sid) for sid in session_ids]
        assert conn.statements[0][0].startswith("DELETE FROM sessions WHERE user_id")
        assert conn.statements[1][0].startswith("DELETE FROM users")

    def test_transaction_unit_shares_one_connection(self):
        row = _user_row()
        store, conn = _pg_store(FakeCursor([row]), FakeCursor(rowcount=1))
        with store.transaction() as tx:
            user = tx.create_user("alice", "hash")
            session = tx.create_session(user.id, timedelta(days=1))
        assert session.user_id == user.id
        assert [sql.split()[0] for sql, _ in conn.statements] == ["INSERT", "INSERT"]

    def test_missing_tables_abort_startup(self):
        store, _ = _pg_store(FakeCursor([{"table_name": "users"}]))
        with pytest.raises(RuntimeError, match="sessions"):
            store._verify_required_schema()
