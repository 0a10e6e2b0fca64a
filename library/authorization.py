"""Request-time authorization predicates over a resolved session."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .errors import Forbidden, Unauthenticated
from .models import Role, Session


def require_authenticated(session: Optional[Session], *, now: Optional[datetime] = None) -> Session:
    """Pass through a present, unexpired session or raise :class:`Unauthenticated`."""

    if session is None:
        raise Unauthenticated()
    if session.is_expired(now or datetime.now(timezone.utc)):
        raise Unauthenticated("Your session has expired, please log in again")
    return session


def require_role(
    session: Optional[Session],
    role: Role = Role.ADMIN,
    *,
    now: Optional[datetime] = None,
) -> Session:
    # Authentication is checked first so an anonymous caller never sees 403.
    session = require_authenticated(session, now=now)
    if session.snapshot.role is not role:
        raise Forbidden(f"{role.value.capitalize()} privileges required")
    return session


def optional_authenticated(session: Optional[Session], *, now: Optional[datetime] = None) -> Optional[Session]:
    if session is None or session.is_expired(now or datetime.now(timezone.utc)):
        return None
    return session


__all__ = ["optional_authenticated", "require_authenticated", "require_role"]
