"""HMAC-signed card tokens: issuance and authoritative validation.

Token layout::

    base64url(payload) "." base64url(hmac_sha256(secret, payload))

Both segments are URL-safe and unpadded. The payload is compact JSON with
the subject id, optional spending cap, issuance time (ms) and a random
nonce. A valid signature alone is not enough: the token must also be
registered in the ``TokenStore`` and not expired.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from hashlib import sha256
from typing import Any

from bonuscard.constants import TOKEN_SEPARATOR, TOKEN_TTL_SECS
from bonuscard.errors import (
    ExpiredTokenError,
    MalformedInputError,
    MalformedTokenError,
    SignatureMismatchError,
    SubjectMismatchError,
    UnknownTokenError,
)
from bonuscard.token_store import TokenRecord, TokenStore

logger = logging.getLogger(__name__)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    if not text:
        raise ValueError("empty segment")
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _sign(secret: bytes, payload_raw: bytes) -> bytes:
    return hmac.new(secret, payload_raw, sha256).digest()


def token_fingerprint(token: str) -> str:
    """Short, non-reversible token id for log lines."""
    return sha256(token.encode("utf-8")).hexdigest()[:12]


@dataclass(frozen=True)
class IssuedToken:
    token: str
    subject_id: str
    expires_at: float
    cap: int | None = None


@dataclass(frozen=True)
class ValidatedToken:
    subject_id: str
    cap: int | None = None


class TokenIssuer:
    """Build signed tokens bound to a subject and register them in the store.

    Issuing again does not revoke earlier tokens; every token for a subject
    lives until its own expiry (or explicit ``revoke``).
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        secret_key: str,
        ttl_secs: int = TOKEN_TTL_SECS,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key is required to issue tokens")
        self._store = store
        self._secret = secret_key.encode("utf-8")
        self.ttl_secs = ttl_secs

    def issue(self, subject_id: str, cap: int | None = None) -> IssuedToken:
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise MalformedInputError("subject_id must be a non-empty string.")
        if cap is not None and (isinstance(cap, bool) or not isinstance(cap, int) or cap <= 0):
            raise MalformedInputError("cap must be a positive integer when given.")

        issued_at = self._store.now()
        payload: dict[str, Any] = {
            "sub": subject_id,
            "cap": cap,
            "iat": int(issued_at * 1000),
            "nonce": secrets.token_hex(16),
        }
        payload_raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        sig = _sign(self._secret, payload_raw)
        token = f"{_b64encode(payload_raw)}{TOKEN_SEPARATOR}{_b64encode(sig)}"

        expires_at = issued_at + self.ttl_secs
        self._store.put(token, TokenRecord(subject_id=subject_id, expires_at=expires_at, cap=cap))
        logger.debug("Issued token %s for %s.", token_fingerprint(token), subject_id)
        return IssuedToken(token=token, subject_id=subject_id, expires_at=expires_at, cap=cap)

    def revoke(self, token: str) -> bool:
        """Invalidate a token before its expiry. Returns False if it was not registered."""
        return self._store.remove(token) is not None


class TokenValidator:
    """Verify signature, registration and liveness of a presented token."""

    def __init__(self, store: TokenStore, *, secret_key: str) -> None:
        if not secret_key:
            raise ValueError("secret_key is required to validate tokens")
        self._store = store
        self._secret = secret_key.encode("utf-8")

    def _decode(self, token: str) -> tuple[bytes, dict[str, Any]]:
        """Split and decode a token, checking its signature.

        Returns the raw payload bytes and the parsed payload dict.
        """
        if not isinstance(token, str):
            raise MalformedTokenError("Token must be a string.")
        parts = token.strip().split(TOKEN_SEPARATOR)
        if len(parts) != 2:
            raise MalformedTokenError("Token must have exactly two segments.")
        try:
            payload_raw = _b64decode(parts[0])
            sig = _b64decode(parts[1])
        except (ValueError, binascii.Error, UnicodeEncodeError) as e:
            raise MalformedTokenError(f"Token could not be decoded: {e}") from e
        # Non-canonical base64 (stray chars, nonzero pad bits) must not alias a valid token.
        if _b64encode(payload_raw) != parts[0]:
            raise MalformedTokenError("Token payload segment is not canonical base64url.")

        expected = _sign(self._secret, payload_raw)
        if _b64encode(sig) != parts[1] or not hmac.compare_digest(sig, expected):
            raise SignatureMismatchError("Token signature is invalid; possible tampering.")

        try:
            payload = json.loads(payload_raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedTokenError("Token payload is not valid JSON.") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("sub"), str):
            raise MalformedTokenError("Token payload is missing its subject.")
        return payload_raw, payload

    def validate(self, token: str) -> ValidatedToken:
        """Return the bound subject and cap, or raise an ``InvalidTokenError``."""
        _, payload = self._decode(token)
        token = token.strip()

        record = self._store.get(token)
        if record is None:
            logger.warning("Rejected unregistered token %s.", token_fingerprint(token))
            raise UnknownTokenError("Token is not registered or has been invalidated.")

        if record.is_expired(self._store.now()):
            self._store.remove_if_expired(token)
            logger.warning("Rejected expired token %s.", token_fingerprint(token))
            raise ExpiredTokenError("Token has expired.")

        if payload["sub"] != record.subject_id:
            logger.warning(
                "Token %s payload subject disagrees with stored record.",
                token_fingerprint(token),
            )
            raise SubjectMismatchError("Token subject does not match its registration.")

        return ValidatedToken(subject_id=record.subject_id, cap=record.cap)
