from __future__ import annotations

import contextlib
import threading
from dataclasses import replace
from datetime import timedelta
from typing import Dict, Iterator, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import SESSION_USER_FK, USERNAME_UNIQUE, ConstraintViolation
from authcore.storage.models import Session, User, utcnow


class MemoryStore:
    """In-memory backing store for tests and local development.

    Records are stored as immutable snapshots: every write replaces the stored
    dataclass and every read hands back a copy, so callers can never mutate
    state behind the store's back.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so a transaction block can call the regular write methods
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        """All-or-nothing unit of work: any exception restores prior state."""
        with self._data_lock:
            users_snapshot = dict(self.users)
            sessions_snapshot = dict(self.sessions)
            try:
                yield self
            except BaseException:
                self.users = users_snapshot
                self.sessions = sessions_snapshot
                self.logger.info("memory_transaction_rolled_back")
                raise

    # users
    def create_user(self, username: str, password_hash: str) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation(
                    USERNAME_UNIQUE, "username already exists", {"field": "username"}
                )
            user = User.new(username, password_hash)
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username == username), None
            )
            return replace(user) if user else None

    def update_username(self, user_id: str, username: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if any(
                other.username == username and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation(
                    USERNAME_UNIQUE, "username already exists", {"field": "username"}
                )
            updated = replace(user, username=username, last_updated_at=utcnow())
            self.users[user_id] = updated
            return replace(updated)

    def delete_user(self, user_id: str) -> List[str]:
        """Delete a user and cascade to its sessions; returns the cascaded session ids."""
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return []
            cascaded = [
                sid for sid, sess in self.sessions.items() if sess.user_id == user_id
            ]
            for sid in cascaded:
                self.sessions.pop(sid, None)
            return cascaded

    # sessions
    def create_session(self, user_id: str, duration: timedelta) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    SESSION_USER_FK, "user does not exist", {"user_id": user_id}
                )
            sess = Session.new(user_id, duration)
            self.sessions[sess.id] = sess
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None
