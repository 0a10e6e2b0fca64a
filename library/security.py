"""Credential hashing and session token helpers."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

from passlib.context import CryptContext

BCRYPT_ROUNDS = 10
SESSION_TOKEN_BYTES = 32


class CredentialHasher:
    """Salted bcrypt hashing for local account passwords."""

    def __init__(self, *, rounds: int = BCRYPT_ROUNDS) -> None:
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=rounds,
        )

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Password must not be empty")
        return self._context.hash(plaintext)

    def verify(self, plaintext: str, digest: Optional[str]) -> bool:
        """Return ``True`` if ``plaintext`` matches ``digest``.

        Malformed or missing digests verify as ``False`` instead of raising.
        """

        if not plaintext or not digest:
            return False
        try:
            return self._context.verify(plaintext, digest)
        except (ValueError, TypeError):
            return False

    def dummy_verify(self) -> None:
        """Spend the same time as a real verification for unknown accounts."""

        self._context.dummy_verify()


def generate_session_token() -> str:
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def digest_session_token(secret: str, token: str) -> str:
    """Keyed digest under which a session token is stored.

    The raw token only ever lives in the client's cookie, so a copy of the
    session store cannot be replayed.
    """

    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def tokens_match(provided: str, expected: str) -> bool:
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


__all__ = [
    "BCRYPT_ROUNDS",
    "CredentialHasher",
    "digest_session_token",
    "generate_session_token",
    "tokens_match",
]
