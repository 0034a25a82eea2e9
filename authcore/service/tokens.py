from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authcore.logging import get_logger
from authcore.service.errors import ConfigurationFault, MalformedTokenError

logger = get_logger(__name__)

_DIGESTS = {"HS256": hashlib.sha256, "HS384": hashlib.sha384, "HS512": hashlib.sha512}


@dataclass(frozen=True)
class TokenClaims:
    identity_id: str
    session_id: str
    iat: int
    nbf: int
    exp: int

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def remaining(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class TokenCodec:
    """Compact HMAC-signed tokens referencing a session.

    ``verify`` checks structure and signature only. Wall-clock expiry is left
    to the caller, which confirms the session row on every request anyway.
    """

    def __init__(self, secret: Optional[str], algorithm: str = "HS256") -> None:
        if not secret:
            raise ConfigurationFault("token signing secret is not configured")
        if algorithm not in _DIGESTS:
            raise ConfigurationFault(f"unsupported token algorithm {algorithm}")
        self._secret = secret.encode()
        self.algorithm = algorithm
        self._digest = _DIGESTS[algorithm]

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), self._digest).digest()
        )

    def issue(
        self,
        identity_id: str,
        session_id: str,
        duration: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        issued = int((now or datetime.now(timezone.utc)).timestamp())
        payload = {
            "identity_id": identity_id,
            "session_id": session_id,
            "iat": issued,
            "nbf": issued,
            "exp": issued + int(duration.total_seconds()),
        }
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise MalformedTokenError("token is not a compact JWS")

        # algorithm must match before any signature work
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise MalformedTokenError("token header is unreadable")
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise MalformedTokenError("unexpected token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # bytes so a non-ascii signature is a mismatch, not a TypeError
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            raise MalformedTokenError("token signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("token payload is unreadable")
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is unreadable")

        identity_id = payload.get("identity_id")
        session_id = payload.get("session_id")
        if not isinstance(identity_id, str) or not identity_id:
            raise MalformedTokenError("token missing identity_id")
        if not isinstance(session_id, str) or not session_id:
            raise MalformedTokenError("token missing session_id")
        exp = payload.get("exp")
        if not _is_number(exp):
            raise MalformedTokenError("token missing exp")
        for claim in ("iat", "nbf"):
            if claim in payload and not _is_number(payload[claim]):
                raise MalformedTokenError(f"token {claim} is not numeric")

        return TokenClaims(
            identity_id=identity_id,
            session_id=session_id,
            iat=int(payload.get("iat", exp)),
            nbf=int(payload.get("nbf", payload.get("iat", exp))),
            exp=int(exp),
        )
