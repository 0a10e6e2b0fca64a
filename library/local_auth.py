"""Registration and password login for local accounts."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import Conflict, DuplicateKey, InvalidCredentials, ValidationError
from .models import AuthProvider, LoginResult
from .repository import UserRepository
from .security import CredentialHasher
from .sessions import SessionManager

logger = logging.getLogger("library.local_auth")


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


class LocalAuthFlow:
    """Register accounts and log them in with email and password."""

    def __init__(
        self,
        users: UserRepository,
        hasher: CredentialHasher,
        sessions: Optional[SessionManager] = None,
        *,
        clock: Callable[[], datetime] = _current_timestamp,
    ) -> None:
        self._users = users
        self._hasher = hasher
        self._sessions = sessions
        self._clock = clock

    def register(self, username: Optional[str], email: Optional[str], password: Optional[str]) -> str:
        """Create a local account and return its id. No session is issued."""

        username = _clean(username)
        email = _clean(email)
        if not username or not email or not password:
            raise ValidationError("All fields are required")

        if self._users.find_by_email(email) is not None or self._users.find_by_username(username) is not None:
            raise Conflict("User already exists")

        password_hash = self._hasher.hash(password)
        try:
            user = self._users.insert(
                username=username,
                email=email,
                auth_provider=AuthProvider.LOCAL,
                password_hash=password_hash,
                created_at=self._clock(),
            )
        except DuplicateKey as exc:
            # A concurrent registration won the race between lookup and insert.
            raise Conflict("User already exists") from exc

        logger.info("Registered local user %s (%s)", user.id, user.username)
        return user.id

    def login(self, email: Optional[str], password: Optional[str]) -> LoginResult:
        if self._sessions is None:
            raise RuntimeError("LocalAuthFlow.login requires a SessionManager")

        email = _clean(email)
        if not email or not password:
            raise ValidationError("Email and password are required")

        user = self._users.find_local_by_email(email)
        if user is None or not user.password_hash:
            self._hasher.dummy_verify()
            logger.warning("Failed login attempt for %s", email)
            raise InvalidCredentials()
        if not self._hasher.verify(password, user.password_hash):
            logger.warning("Failed login attempt for %s", email)
            raise InvalidCredentials()

        user = self._users.patch(user.id, last_login=self._clock())
        token = self._sessions.issue(user)
        logger.info("User %s logged in with a password", user.id)
        return LoginResult(user=user, token=token)


__all__ = ["LocalAuthFlow"]
