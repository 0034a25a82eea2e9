from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger
from authcore.service.errors import ConfigurationFault, MalformedHashError, ValidationError

logger = get_logger(__name__)

SALT_BYTES = 32


@dataclass(frozen=True)
class DigestResult:
    hash_hex: str
    # only populated when the salt was generated here
    salt: Optional[str] = None


class CredentialHasher:
    """Peppered argon2id password hashing plus a keyed general-purpose digest.

    The pepper is appended to every plaintext before hashing and is never
    stored with the record, so a leaked credential table alone cannot be
    attacked offline.
    """

    def __init__(self, pepper: Optional[str], *, cost: int, memory_kib: int) -> None:
        self._pepper = pepper or ""
        self._cost = cost
        self._memory_kib = memory_kib
        self._hasher: Optional[PasswordHasher] = None
        self._dummy_hash: Optional[str] = None

    def _require_config(self) -> PasswordHasher:
        if not self._pepper:
            raise ConfigurationFault("hash pepper is not configured")
        if self._cost < 1:
            raise ConfigurationFault("hash cost factor is not configured")
        if self._hasher is None:
            self._hasher = PasswordHasher(
                time_cost=self._cost, memory_cost=self._memory_kib, type=Type.ID
            )
        return self._hasher

    def hash(self, plaintext: str) -> str:
        hasher = self._require_config()
        return hasher.hash(plaintext + self._pepper)

    def verify(self, plaintext: str, hashed: str) -> bool:
        """Return whether ``plaintext`` matches ``hashed``.

        A mismatch is a normal ``False``; only an unparseable stored hash
        raises ``MalformedHashError``.
        """
        hasher = self._require_config()
        try:
            return hasher.verify(hashed, plaintext + self._pepper)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.error("credential_hash_malformed", error=str(exc))
            raise MalformedHashError("stored credential hash is malformed") from exc

    def verify_dummy(self, plaintext: str) -> bool:
        """Spend one verification's worth of work for an unknown account."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_hex(16))
        self.verify(plaintext, self._dummy_hash)
        return False

    def keyed_digest(self, text: str, salt_hex: Optional[str] = None) -> DigestResult:
        if not self._pepper:
            raise ConfigurationFault("hash pepper is not configured")
        generated = not salt_hex
        if generated:
            salt = secrets.token_bytes(SALT_BYTES)
        else:
            try:
                salt = bytes.fromhex(salt_hex)
            except ValueError as exc:
                raise ValidationError("salt must be hex encoded") from exc
            if len(salt) != SALT_BYTES:
                raise ValidationError(f"salt must be exactly {SALT_BYTES} bytes")
        digest = hmac.new(
            self._pepper.encode(), text.encode() + salt, hashlib.sha512
        ).hexdigest()
        return DigestResult(hash_hex=digest, salt=salt.hex() if generated else None)

    def check_keyed_digest(self, text: str, hash_hex: str, salt_hex: str) -> bool:
        expected = self.keyed_digest(text, salt_hex).hash_hex
        return hmac.compare_digest(
            expected.encode(), hash_hex.encode("utf-8", "surrogateescape")
        )
