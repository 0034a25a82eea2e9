from __future__ import annotations

import contextlib
from datetime import timedelta
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import SESSION_USER_FK, USERNAME_UNIQUE, ConstraintViolation
from authcore.storage.models import Session, User


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        password_hash=row["password"],
        is_verified=row.get("is_verified", False),
        created_at=row["created_at"],
        last_updated_at=row["last_updated_at"],
    )


def _row_to_session(row: dict) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        last_updated_at=row["last_updated_at"],
    )


class PostgresStore:
    """Postgres-backed store for identities and sessions.

    Schema management lives outside this service; the store only verifies the
    tables it needs exist. ``sessions.user_id`` is expected to reference
    ``users.id`` with ``ON DELETE CASCADE``.
    """

    REQUIRED_TABLES = ("users", "sessions")

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self, conn: Any = None):
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as pooled:
            yield pooled

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT table_name FROM information_schema.tables
                WHERE table_schema = current_schema() AND table_name = ANY(%s)
                """,
                (list(self.REQUIRED_TABLES),),
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in self.REQUIRED_TABLES if name not in present]
        if missing:
            self.logger.error("postgres_schema_missing", missing_tables=missing)
            raise RuntimeError(f"missing required tables: {', '.join(missing)}")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresTransaction"]:
        """All writes made through the yielded unit commit or roll back together."""
        with self.pool.connection() as conn:
            with conn.transaction():
                yield PostgresTransaction(self, conn)

    # users
    def create_user(self, username: str, password_hash: str, *, conn: Any = None) -> User:
        try:
            with self._connect(conn) as c:
                row = c.execute(
                    """
                    INSERT INTO users (username, password, is_verified, created_at, last_updated_at)
                    VALUES (%s, %s, FALSE, now(), now())
                    RETURNING *
                    """,
                    (username, password_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                USERNAME_UNIQUE, "username already exists", {"field": "username"}
            )
        return _row_to_user(row)

    def get_user(self, user_id: str, *, conn: Any = None) -> Optional[User]:
        try:
            with self._connect(conn) as c:
                row = c.execute(
                    "SELECT * FROM users WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # not a uuid, so it cannot be a primary key
            return None
        return _row_to_user(row) if row else None

    def get_user_by_username(self, username: str, *, conn: Any = None) -> Optional[User]:
        with self._connect(conn) as c:
            row = c.execute(
                "SELECT * FROM users WHERE username = %s", (username,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def update_username(
        self, user_id: str, username: str, *, conn: Any = None
    ) -> Optional[User]:
        try:
            with self._connect(conn) as c:
                row = c.execute(
                    """
                    UPDATE users SET username = %s, last_updated_at = now()
                    WHERE id = %s RETURNING *
                    """,
                    (username, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                USERNAME_UNIQUE, "username already exists", {"field": "username"}
            )
        return _row_to_user(row) if row else None

    def delete_user(self, user_id: str, *, conn: Any = None) -> List[str]:
        with self._connect(conn) as c:
            rows = c.execute(
                "DELETE FROM sessions WHERE user_id = %s RETURNING id", (user_id,)
            ).fetchall()
            c.execute("DELETE FROM users WHERE id = %s", (user_id,))
        return [str(row["id"]) for row in rows]

    # sessions
    def create_session(
        self, user_id: str, duration: timedelta, *, conn: Any = None
    ) -> Session:
        sess = Session.new(user_id, duration)
        try:
            with self._connect(conn) as c:
                c.execute(
                    """
                    INSERT INTO sessions (id, user_id, expires_at, created_at, last_updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.expires_at,
                        sess.created_at,
                        sess.last_updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                SESSION_USER_FK, "session user missing", {"user_id": user_id}
            )
        return sess

    def get_session(self, session_id: str, *, conn: Any = None) -> Optional[Session]:
        try:
            with self._connect(conn) as c:
                row = c.execute(
                    "SELECT * FROM sessions WHERE id = %s", (session_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return _row_to_session(row) if row else None

    def delete_session(self, session_id: str, *, conn: Any = None) -> bool:
        with self._connect(conn) as c:
            result = c.execute("DELETE FROM sessions WHERE id = %s", (session_id,))
            return result.rowcount > 0


class PostgresTransaction:
    """Store facade bound to a single connection inside ``conn.transaction()``."""

    def __init__(self, store: PostgresStore, conn: Any) -> None:
        self._store = store
        self._conn = conn

    def create_user(self, username: str, password_hash: str) -> User:
        return self._store.create_user(username, password_hash, conn=self._conn)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._store.get_user(user_id, conn=self._conn)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._store.get_user_by_username(username, conn=self._conn)

    def update_username(self, user_id: str, username: str) -> Optional[User]:
        return self._store.update_username(user_id, username, conn=self._conn)

    def delete_user(self, user_id: str) -> List[str]:
        return self._store.delete_user(user_id, conn=self._conn)

    def create_session(self, user_id: str, duration: timedelta) -> Session:
        return self._store.create_session(user_id, duration, conn=self._conn)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._store.get_session(session_id, conn=self._conn)

    def delete_session(self, session_id: str) -> bool:
        return self._store.delete_session(session_id, conn=self._conn)
