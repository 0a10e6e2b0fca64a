"""Domain models for accounts, federated identities and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AuthProvider(str, Enum):
    LOCAL = "local"
    FEDERATED = "federated"


class ResolutionOutcome(str, Enum):
    """Which branch of the federated resolution produced the account."""

    RETURNING = "returning"
    LINKED = "linked"
    CREATED = "created"


@dataclass(frozen=True)
class Profile:
    """Snapshot of the public profile reported by the identity provider."""

    display_name: Optional[str] = None
    handle: Optional[str] = None
    profile_url: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_document(self) -> Dict[str, Optional[str]]:
        return {
            "displayName": self.display_name,
            "handle": self.handle,
            "profileUrl": self.profile_url,
            "avatarUrl": self.avatar_url,
        }

    @staticmethod
    def from_document(data: Optional[Dict[str, Any]]) -> Optional["Profile"]:
        if not data:
            return None
        return Profile(
            display_name=data.get("displayName"),
            handle=data.get("handle"),
            profile_url=data.get("profileUrl"),
            avatar_url=data.get("avatarUrl"),
        )


@dataclass(frozen=True)
class FederatedIdentity:
    """Identity asserted by the OAuth provider after a completed handshake."""

    external_id: str
    display_name: Optional[str] = None
    handle: Optional[str] = None
    profile_url: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    provider: str = "github"

    @property
    def profile(self) -> Profile:
        return Profile(
            display_name=self.display_name,
            handle=self.handle,
            profile_url=self.profile_url,
            avatar_url=self.avatar_url,
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Public user fields cached on a session to avoid repository lookups."""

    id: str
    username: str
    email: str
    role: Role
    auth_provider: AuthProvider

    def to_document(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "authProvider": self.auth_provider.value,
        }

    @staticmethod
    def from_document(data: Dict[str, Any]) -> "SessionSnapshot":
        return SessionSnapshot(
            id=str(data["id"]),
            username=str(data["username"]),
            email=str(data["email"]),
            role=Role(data["role"]),
            auth_provider=AuthProvider(data["authProvider"]),
        )


@dataclass(frozen=True)
class User:
    """Represents an account stored in the ``users`` collection."""

    id: str
    username: str
    email: str
    role: Role
    auth_provider: AuthProvider
    created_at: datetime
    password_hash: Optional[str] = None
    external_id: Optional[str] = None
    profile: Optional[Profile] = None
    last_login: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            username=self.username,
            email=self.email,
            role=self.role,
            auth_provider=self.auth_provider,
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialisable view of the account without credential material."""

        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "authProvider": self.auth_provider.value,
            "externalId": self.external_id,
            "profile": self.profile.to_document() if self.profile else None,
            "createdAt": self.created_at.isoformat(),
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass(frozen=True)
class Session:
    """An authenticated session resolved from a cookie token."""

    token: str
    user_id: str
    snapshot: SessionSnapshot
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    user: User


@dataclass(frozen=True)
class LoginResult:
    """Account and freshly issued session token returned by a login flow."""

    user: User
    token: str
    outcome: Optional[ResolutionOutcome] = field(default=None)


__all__ = [
    "AuthProvider",
    "FederatedIdentity",
    "LoginResult",
    "Profile",
    "Resolution",
    "ResolutionOutcome",
    "Role",
    "Session",
    "SessionSnapshot",
    "User",
]
