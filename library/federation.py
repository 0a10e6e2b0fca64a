"""Find, link or create the account behind a federated identity."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import Conflict, DuplicateKey, IdentityConflict, ValidationError
from .models import (
    AuthProvider,
    FederatedIdentity,
    LoginResult,
    Resolution,
    ResolutionOutcome,
    User,
)
from .repository import UserRepository
from .sessions import SessionManager

logger = logging.getLogger("library.federation")


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def default_username(identity: FederatedIdentity) -> str:
    for candidate in (identity.handle, identity.display_name):
        if candidate and candidate.strip():
            return candidate.strip()
    return f"{identity.provider}-{identity.external_id}"


def synthesized_email(identity: FederatedIdentity) -> str:
    local_part = (identity.handle or "").strip() or identity.external_id
    return f"{local_part}@{identity.provider}.user".lower()


class FederatedIdentityResolver:
    """Map a verified provider identity onto exactly one account.

    The branches are tried in a fixed order and the first match wins:

    1. an account already carrying the identity's ``externalId`` is returned
       after refreshing its profile and ``lastLogin``;
    2. otherwise an account with the provider-supplied email and no
       ``externalId`` is linked to the identity, keeping its password, username
       and role;
    3. otherwise a new federated account is created.

    An email match on an account linked to a *different* external identity is
    rejected with :class:`IdentityConflict`.
    """

    def __init__(
        self,
        users: UserRepository,
        sessions: Optional[SessionManager] = None,
        *,
        clock: Callable[[], datetime] = _current_timestamp,
    ) -> None:
        self._users = users
        self._sessions = sessions
        self._clock = clock

    def resolve(self, identity: FederatedIdentity) -> Resolution:
        if not identity.external_id:
            raise ValidationError("Federated identity is missing its subject identifier")

        resolution = self._match(identity)
        if resolution is not None:
            return resolution
        return self._create(identity)

    def login(self, identity: FederatedIdentity) -> LoginResult:
        """Resolve ``identity`` and issue a session for the resulting account."""

        if self._sessions is None:
            raise RuntimeError("FederatedIdentityResolver.login requires a SessionManager")

        resolution = self.resolve(identity)
        if resolution.outcome is not ResolutionOutcome.CREATED:
            self._sessions.refresh_snapshot(resolution.user)
        token = self._sessions.issue(resolution.user)
        return LoginResult(user=resolution.user, token=token, outcome=resolution.outcome)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------
    def _match(self, identity: FederatedIdentity) -> Optional[Resolution]:
        existing = self._users.find_by_external_id(identity.external_id)
        if existing is not None:
            return self._returning(existing, identity)

        if not identity.email:
            return None

        candidate = self._users.find_by_email(identity.email)
        if candidate is None:
            return None
        return self._link(candidate, identity)

    def _returning(self, user: User, identity: FederatedIdentity) -> Resolution:
        updated = self._users.patch(user.id, profile=identity.profile, last_login=self._clock())
        logger.info("Federated login for returning user %s", updated.id)
        return Resolution(ResolutionOutcome.RETURNING, updated)

    def _link(self, user: User, identity: FederatedIdentity) -> Resolution:
        if user.external_id is not None and user.external_id != identity.external_id:
            logger.warning(
                "Refusing to link %s identity %s onto user %s already linked to %s",
                identity.provider,
                identity.external_id,
                user.id,
                user.external_id,
            )
            raise IdentityConflict()

        try:
            linked = self._users.link_external_id(
                user.id,
                identity.external_id,
                profile=identity.profile,
                last_login=self._clock(),
            )
        except DuplicateKey:
            linked = None

        if linked is None:
            # Lost a race: either this account or another one now carries an
            # external identity. Only the exact same identity is acceptable.
            current = self._users.find_by_external_id(identity.external_id)
            if current is not None:
                return self._returning(current, identity)
            raise IdentityConflict()

        logger.info(
            "Linked %s identity %s to existing user %s",
            identity.provider,
            identity.external_id,
            linked.id,
        )
        return Resolution(ResolutionOutcome.LINKED, linked)

    def _create(self, identity: FederatedIdentity) -> Resolution:
        now = self._clock()
        username = default_username(identity)
        email = identity.email or synthesized_email(identity)

        for attempt in range(2):
            try:
                user = self._users.insert(
                    username=username,
                    email=email,
                    auth_provider=AuthProvider.FEDERATED,
                    external_id=identity.external_id,
                    profile=identity.profile,
                    created_at=now,
                    last_login=now,
                )
            except DuplicateKey as exc:
                # A concurrent callback may have created or linked the account.
                resolution = self._match(identity)
                if resolution is not None:
                    return resolution
                if exc.key == "username" and attempt == 0:
                    username = f"{username}-{identity.external_id}"
                    continue
                raise Conflict("An account with this username or email already exists") from exc

            logger.info(
                "Created federated user %s for %s identity %s",
                user.id,
                identity.provider,
                identity.external_id,
            )
            return Resolution(ResolutionOutcome.CREATED, user)

        raise Conflict("An account with this username or email already exists")


__all__ = ["FederatedIdentityResolver", "default_username", "synthesized_email"]
