"""Session handling for authenticated library users."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from .database import Database
from .errors import LibraryError
from .models import Session, SessionSnapshot, User
from .security import digest_session_token, generate_session_token

logger = logging.getLogger("library.sessions")

DEFAULT_SESSION_TTL = timedelta(hours=24)
SESSIONS = "sessions"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionRecord:
    """What the session store keeps for one token digest."""

    user_id: str
    snapshot: SessionSnapshot
    expires_at: datetime


class SessionStore(Protocol):
    def save(self, key: str, record: SessionRecord) -> None: ...

    def load(self, key: str) -> Optional[SessionRecord]: ...

    def delete(self, key: str) -> None: ...

    def update_snapshot(self, user_id: str, snapshot: SessionSnapshot) -> int: ...

    def purge_expired(self, now: datetime) -> int: ...


class MemorySessionStore:
    """Process-local session store guarded by a lock."""

    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def save(self, key: str, record: SessionRecord) -> None:
        with self._lock:
            self._records[key] = record

    def load(self, key: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._records.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def update_snapshot(self, user_id: str, snapshot: SessionSnapshot) -> int:
        updated = 0
        with self._lock:
            for key, record in self._records.items():
                if record.user_id == user_id:
                    self._records[key] = replace(record, snapshot=snapshot)
                    updated += 1
        return updated

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, record in self._records.items() if record.expires_at <= now]
            for key in expired:
                del self._records[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class DatabaseSessionStore:
    """Session store persisted in the ``sessions`` collection."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def save(self, key: str, record: SessionRecord) -> None:
        self._database.insert_one(
            SESSIONS,
            {
                "tokenDigest": key,
                "userId": record.user_id,
                "userSnapshot": record.snapshot.to_document(),
                "expiresAt": record.expires_at.isoformat(),
            },
        )

    def load(self, key: str) -> Optional[SessionRecord]:
        document = self._database.find_one(SESSIONS, {"tokenDigest": key})
        if document is None:
            return None
        return SessionRecord(
            user_id=str(document["userId"]),
            snapshot=SessionSnapshot.from_document(document["userSnapshot"]),
            expires_at=datetime.fromisoformat(str(document["expiresAt"])),
        )

    def delete(self, key: str) -> None:
        self._database.delete_one(SESSIONS, {"tokenDigest": key})

    def update_snapshot(self, user_id: str, snapshot: SessionSnapshot) -> int:
        return self._database.update_many(
            SESSIONS,
            {"userId": user_id},
            {"userSnapshot": snapshot.to_document()},
        )

    def purge_expired(self, now: datetime) -> int:
        purged = 0
        for document in self._database.find(SESSIONS):
            if datetime.fromisoformat(str(document["expiresAt"])) <= now:
                purged += self._database.delete_one(SESSIONS, {"id": document["id"]})
        return purged


class SessionManager:
    """Issue, resolve and revoke sessions bound to a user snapshot.

    Tokens are opaque random strings; the store only ever sees their keyed
    digest. Expiry is a fixed duration from issuance and is not extended by
    activity.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        secret: str,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Clock = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("A session secret must be provided")
        self._store = store
        self._secret = secret
        self._ttl = ttl
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def cookie_max_age(self) -> int:
        return int(self._ttl.total_seconds())

    def issue(self, user: User) -> str:
        self._prune_expired()
        token = generate_session_token()
        record = SessionRecord(
            user_id=user.id,
            snapshot=user.snapshot(),
            expires_at=self._clock() + self._ttl,
        )
        self._store.save(self._key(token), record)
        logger.debug("Issued session for user %s", user.id)
        return token

    def resolve(self, token: Optional[str]) -> Optional[Session]:
        """Return the live session for ``token`` or ``None``.

        Missing, malformed, unknown and expired tokens all resolve to ``None``;
        expired records are evicted on the way.
        """

        if not token or not isinstance(token, str):
            return None
        key = self._key(token)
        try:
            record = self._store.load(key)
            if record is None:
                return None
            if record.expires_at <= self._clock():
                self._store.delete(key)
                return None
        except (LibraryError, KeyError, ValueError):
            logger.exception("Failed to resolve session; treating it as absent")
            return None
        return Session(
            token=token,
            user_id=record.user_id,
            snapshot=record.snapshot,
            expires_at=record.expires_at,
        )

    def destroy(self, token: Optional[str]) -> None:
        if not token:
            return
        self._store.delete(self._key(token))

    def refresh_snapshot(self, user: User) -> int:
        """Best-effort update of the snapshot on every live session of ``user``."""

        try:
            updated = self._store.update_snapshot(user.id, user.snapshot())
        except LibraryError:
            logger.warning("Could not refresh session snapshots for user %s", user.id, exc_info=True)
            return 0
        if updated:
            logger.debug("Refreshed %d session snapshot(s) for user %s", updated, user.id)
        return updated

    def _prune_expired(self) -> None:
        try:
            purged = self._store.purge_expired(self._clock())
        except LibraryError:
            logger.warning("Could not purge expired sessions", exc_info=True)
            return
        if purged:
            logger.debug("Purged %d expired session(s)", purged)

    def _key(self, token: str) -> str:
        return digest_session_token(self._secret, token)


__all__ = [
    "DEFAULT_SESSION_TTL",
    "DatabaseSessionStore",
    "MemorySessionStore",
    "SessionManager",
    "SessionRecord",
    "SessionStore",
]
