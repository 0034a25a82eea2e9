from __future__ import annotations

from typing import Any, Dict, Optional

# Postgres constraint names; the memory store reports the same ones
USERNAME_UNIQUE = "users_username_key"
SESSION_USER_FK = "sessions_user_id_fkey"


class ConstraintViolation(Exception):
    """A users/sessions write broke a schema constraint.

    ``constraint`` tells a taken username apart from a session insert whose
    user row is gone, so callers can answer conflict or not-found.
    """

    def __init__(
        self, constraint: str, message: str, detail: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message)
        self.constraint = constraint
        self.message = message
        self.detail = detail or {}

    @property
    def missing_reference(self) -> bool:
        return self.constraint == SESSION_USER_FK
