"""Typed access to the ``users`` collection."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .database import Database, Document
from .errors import NotFound
from .models import AuthProvider, Profile, Role, User

USERS = "users"

# Attribute name -> stored document field.
_PATCHABLE_FIELDS = {
    "username": "username",
    "email": "email",
    "password_hash": "passwordHash",
    "external_id": "externalId",
    "profile": "profile",
    "last_login": "lastLogin",
}


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserRepository:
    """Lookup, insert and field-patch operations for user accounts.

    Uniqueness of ``email``, ``username`` and ``externalId`` is enforced by the
    store's indexes; a violating write raises :class:`~library.errors.DuplicateKey`
    which callers translate into a domain error.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def find_by_id(self, user_id: str) -> Optional[User]:
        return self._find_one({"id": user_id})

    def find_by_email(self, email: str) -> Optional[User]:
        return self._find_one({"email": normalize_email(email)})

    def find_local_by_email(self, email: str) -> Optional[User]:
        """Find an account by email that was registered with a local password."""

        return self._find_one(
            {"email": normalize_email(email), "authProvider": AuthProvider.LOCAL.value}
        )

    def find_by_username(self, username: str) -> Optional[User]:
        return self._find_one({"username": username.strip()})

    def find_by_external_id(self, external_id: str) -> Optional[User]:
        return self._find_one({"externalId": external_id})

    def list_all(self) -> List[User]:
        return [self._document_to_user(doc) for doc in self._database.find(USERS)]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def insert(
        self,
        *,
        username: str,
        email: str,
        auth_provider: AuthProvider,
        password_hash: Optional[str] = None,
        external_id: Optional[str] = None,
        profile: Optional[Profile] = None,
        created_at: Optional[datetime] = None,
        last_login: Optional[datetime] = None,
    ) -> User:
        """Insert a new account with the ``user`` role and return it."""

        if not password_hash and not external_id:
            raise ValueError("An account needs a password hash or an external identity")

        created = created_at or _current_timestamp()
        document: Dict[str, Any] = {
            "username": username.strip(),
            "email": normalize_email(email),
            "role": Role.USER.value,
            "authProvider": auth_provider.value,
            "createdAt": _serialize_datetime(created),
        }
        if password_hash:
            document["passwordHash"] = password_hash
        if external_id:
            document["externalId"] = external_id
        if profile is not None:
            document["profile"] = profile.to_document()
        if last_login is not None:
            document["lastLogin"] = _serialize_datetime(last_login)

        stored = self._database.insert_one(USERS, document)
        return self._document_to_user(stored)

    def patch(self, user_id: str, **fields: Any) -> User:
        """Apply a partial update and return the refreshed account.

        Only account attributes known to the authentication flows may be
        patched; ``role`` is deliberately not among them.
        """

        update = self._build_patch(fields)
        matched = self._database.update_one(USERS, {"id": user_id}, update)
        if matched == 0:
            raise NotFound("User not found")
        return self._require(user_id)

    def link_external_id(self, user_id: str, external_id: str, **fields: Any) -> Optional[User]:
        """Attach ``external_id`` only while the account has none.

        Returns ``None`` if the account vanished or was linked concurrently.
        """

        update = self._build_patch({"external_id": external_id, **fields})
        matched = self._database.update_one(
            USERS,
            {"id": user_id, "externalId": None},
            update,
        )
        if matched == 0:
            return None
        return self._require(user_id)

    def set_role(self, user_id: str, role: Role) -> User:
        """Out-of-band role change used by the administration CLI."""

        matched = self._database.update_one(USERS, {"id": user_id}, {"role": role.value})
        if matched == 0:
            raise NotFound("User not found")
        return self._require(user_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _find_one(self, filter: Mapping[str, Any]) -> Optional[User]:
        document = self._database.find_one(USERS, filter)
        return self._document_to_user(document) if document is not None else None

    def _require(self, user_id: str) -> User:
        user = self.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    @staticmethod
    def _build_patch(fields: Mapping[str, Any]) -> Dict[str, Any]:
        update: Dict[str, Any] = {}
        for name, value in fields.items():
            try:
                column = _PATCHABLE_FIELDS[name]
            except KeyError as exc:
                raise ValueError(f"Field {name!r} cannot be patched") from exc
            if isinstance(value, datetime):
                value = _serialize_datetime(value)
            elif isinstance(value, Profile):
                value = value.to_document()
            elif name == "email" and value is not None:
                value = normalize_email(value)
            update[column] = value
        if not update:
            raise ValueError("Patch must contain at least one field")
        return update

    @staticmethod
    def _document_to_user(document: Document) -> User:
        last_login = document.get("lastLogin")
        return User(
            id=str(document["id"]),
            username=str(document["username"]),
            email=str(document["email"]),
            role=Role(document.get("role", Role.USER.value)),
            auth_provider=AuthProvider(document.get("authProvider", AuthProvider.LOCAL.value)),
            created_at=_parse_datetime(str(document["createdAt"])),
            password_hash=document.get("passwordHash"),
            external_id=document.get("externalId"),
            profile=Profile.from_document(document.get("profile")),
            last_login=_parse_datetime(str(last_login)) if last_login else None,
        )


__all__ = ["UserRepository", "normalize_email"]
