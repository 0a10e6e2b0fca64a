from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from library.database import Database
from library.errors import Conflict, DuplicateKey, IdentityConflict, ValidationError
from library.federation import FederatedIdentityResolver, default_username, synthesized_email
from library.local_auth import LocalAuthFlow
from library.models import AuthProvider, FederatedIdentity, ResolutionOutcome, Role
from library.repository import UserRepository
from library.security import CredentialHasher
from library.sessions import MemorySessionStore, SessionManager


def _identity(**overrides) -> FederatedIdentity:
    values = dict(
        external_id="583231",
        display_name="The Octocat",
        handle="octocat",
        profile_url="https://github.com/octocat",
        avatar_url="https://avatars.githubusercontent.com/u/583231",
        email="octocat@example.com",
    )
    values.update(overrides)
    return FederatedIdentity(**values)


@pytest.fixture()
def users(tmp_path: Path) -> UserRepository:
    db = Database(tmp_path / "library.sqlite3")
    db.open()
    yield UserRepository(db)
    db.close()


@pytest.fixture()
def sessions() -> SessionManager:
    return SessionManager(MemorySessionStore(), secret="test-secret", ttl=timedelta(hours=1))


@pytest.fixture()
def resolver(users: UserRepository, sessions: SessionManager) -> FederatedIdentityResolver:
    return FederatedIdentityResolver(users, sessions)


@pytest.fixture()
def local_flow(users: UserRepository, sessions: SessionManager) -> LocalAuthFlow:
    return LocalAuthFlow(users, CredentialHasher(rounds=4), sessions)


def test_first_login_creates_federated_account(resolver: FederatedIdentityResolver) -> None:
    resolution = resolver.resolve(_identity())

    assert resolution.outcome is ResolutionOutcome.CREATED
    user = resolution.user
    assert user.auth_provider is AuthProvider.FEDERATED
    assert user.external_id == "583231"
    assert user.username == "octocat"
    assert user.email == "octocat@example.com"
    assert user.role is Role.USER
    assert user.password_hash is None
    assert user.profile.avatar_url.endswith("/583231")
    assert user.last_login is not None


def test_returning_login_is_idempotent(resolver: FederatedIdentityResolver, users: UserRepository) -> None:
    created = resolver.resolve(_identity()).user

    again = resolver.resolve(_identity(display_name="Mona Lisa Octocat"))

    assert again.outcome is ResolutionOutcome.RETURNING
    assert again.user.id == created.id
    assert again.user.profile.display_name == "Mona Lisa Octocat"
    assert len(users.list_all()) == 1


def test_returning_login_keeps_username_email_and_role(
    resolver: FederatedIdentityResolver, users: UserRepository
) -> None:
    created = resolver.resolve(_identity()).user
    users.set_role(created.id, Role.ADMIN)

    again = resolver.resolve(
        _identity(handle="mona", display_name="Mona", email="mona@example.com")
    )

    assert again.outcome is ResolutionOutcome.RETURNING
    assert again.user.id == created.id
    assert again.user.username == "octocat"
    assert again.user.email == "octocat@example.com"
    assert again.user.role is Role.ADMIN
    assert again.user.profile.handle == "mona"


def test_returning_login_of_linked_account_keeps_password(
    resolver: FederatedIdentityResolver, local_flow: LocalAuthFlow, users: UserRepository
) -> None:
    user_id = local_flow.register("alice", "octocat@example.com", "wonderland")
    password_hash = users.find_by_id(user_id).password_hash
    assert resolver.resolve(_identity()).outcome is ResolutionOutcome.LINKED

    again = resolver.resolve(_identity(handle="renamed"))

    assert again.outcome is ResolutionOutcome.RETURNING
    assert again.user.password_hash == password_hash
    assert again.user.username == "alice"
    assert again.user.role is Role.USER
    assert local_flow.login("octocat@example.com", "wonderland").user.id == user_id


def test_returning_login_matches_external_id_even_if_email_changed(
    resolver: FederatedIdentityResolver, users: UserRepository
) -> None:
    created = resolver.resolve(_identity()).user

    again = resolver.resolve(_identity(email="new-address@example.com"))

    assert again.outcome is ResolutionOutcome.RETURNING
    assert again.user.id == created.id
    assert again.user.email == "octocat@example.com"


def test_email_match_links_existing_local_account(
    resolver: FederatedIdentityResolver, local_flow: LocalAuthFlow, users: UserRepository
) -> None:
    user_id = local_flow.register("alice", "octocat@example.com", "wonderland")
    users.set_role(user_id, Role.ADMIN)
    before = users.find_by_id(user_id)

    resolution = resolver.resolve(_identity(email="OctoCat@Example.com"))

    assert resolution.outcome is ResolutionOutcome.LINKED
    linked = resolution.user
    assert linked.id == user_id
    assert linked.external_id == "583231"
    assert linked.password_hash == before.password_hash
    assert linked.username == "alice"
    assert linked.role is Role.ADMIN
    assert len(users.list_all()) == 1

    # The password keeps working after the link.
    assert local_flow.login("octocat@example.com", "wonderland").user.id == user_id

    # And the next federated login is a plain returning login.
    assert resolver.resolve(_identity()).outcome is ResolutionOutcome.RETURNING


def test_email_match_on_account_linked_elsewhere_is_rejected(
    resolver: FederatedIdentityResolver, users: UserRepository
) -> None:
    first = resolver.resolve(_identity()).user

    with pytest.raises(IdentityConflict) as excinfo:
        resolver.resolve(_identity(external_id="999", handle="impostor"))

    assert excinfo.value.status_code == 409
    assert users.find_by_id(first.id).external_id == "583231"
    assert users.find_by_external_id("999") is None


def test_identity_without_email_gets_synthesized_address(resolver: FederatedIdentityResolver) -> None:
    resolution = resolver.resolve(_identity(email=None))

    assert resolution.outcome is ResolutionOutcome.CREATED
    assert resolution.user.email == "octocat@github.user"


def test_username_collision_is_retried_with_suffix(
    resolver: FederatedIdentityResolver, local_flow: LocalAuthFlow
) -> None:
    local_flow.register("octocat", "someone-else@example.com", "wonderland")

    resolution = resolver.resolve(_identity())

    assert resolution.outcome is ResolutionOutcome.CREATED
    assert resolution.user.username == "octocat-583231"


def test_email_collision_without_link_target_is_conflict(
    resolver: FederatedIdentityResolver, users: UserRepository, local_flow: LocalAuthFlow
) -> None:
    # An unrelated account already owns the synthesized address.
    local_flow.register("someone", "octocat@github.user", "wonderland")
    users.link_external_id(users.find_by_email("octocat@github.user").id, "111")

    with pytest.raises(Conflict):
        resolver.resolve(_identity(email=None))


def test_concurrent_first_login_converges_on_one_account(
    resolver: FederatedIdentityResolver, users: UserRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_insert = users.insert

    def racing_insert(**kwargs):
        # Another callback for the same identity commits first.
        real_insert(**kwargs)
        raise DuplicateKey("UNIQUE constraint failed", key="externalId")

    monkeypatch.setattr(users, "insert", racing_insert)

    resolution = resolver.resolve(_identity())

    assert resolution.outcome is ResolutionOutcome.RETURNING
    assert len(users.list_all()) == 1
    assert resolution.user.external_id == "583231"


def test_lost_link_race_falls_back_to_returning(
    resolver: FederatedIdentityResolver,
    local_flow: LocalAuthFlow,
    users: UserRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    user_id = local_flow.register("alice", "octocat@example.com", "wonderland")
    real_link = users.link_external_id

    def racing_link(target_id, external_id, **fields):
        real_link(target_id, external_id, **fields)
        return None

    monkeypatch.setattr(users, "link_external_id", racing_link)

    resolution = resolver.resolve(_identity())

    assert resolution.outcome is ResolutionOutcome.RETURNING
    assert resolution.user.id == user_id


def test_missing_external_id_is_rejected(resolver: FederatedIdentityResolver) -> None:
    with pytest.raises(ValidationError):
        resolver.resolve(_identity(external_id=""))


def test_login_issues_session_and_refreshes_existing_snapshots(
    resolver: FederatedIdentityResolver,
    local_flow: LocalAuthFlow,
    sessions: SessionManager,
    users: UserRepository,
) -> None:
    user_id = local_flow.register("alice", "octocat@example.com", "wonderland")
    password_token = local_flow.login("octocat@example.com", "wonderland").token
    users.set_role(user_id, Role.ADMIN)

    result = resolver.login(_identity())

    assert result.outcome is ResolutionOutcome.LINKED
    federated_session = sessions.resolve(result.token)
    assert federated_session.user_id == user_id
    assert federated_session.snapshot.role is Role.ADMIN
    assert sessions.resolve(password_token).snapshot.role is Role.ADMIN


def test_login_requires_session_manager(users: UserRepository) -> None:
    with pytest.raises(RuntimeError):
        FederatedIdentityResolver(users).login(_identity())


def test_username_and_email_helpers() -> None:
    assert default_username(_identity()) == "octocat"
    assert default_username(_identity(handle=None)) == "The Octocat"
    assert default_username(_identity(handle=" ", display_name=None)) == "github-583231"
    assert synthesized_email(_identity(handle="OctoCat")) == "octocat@github.user"
    assert synthesized_email(_identity(handle=None)) == "583231@github.user"
