from __future__ import annotations

import json
from typing import Callable, Dict, List
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from library.errors import ProviderError
from library.oauth import GITHUB_TOKEN_URL, GitHubOAuthClient

CALLBACK = "http://localhost:3000/auth/github/callback"

PROFILE = {
    "id": 583231,
    "login": "octocat",
    "name": "The Octocat",
    "email": None,
    "html_url": "https://github.com/octocat",
    "avatar_url": "https://avatars.githubusercontent.com/u/583231?v=4",
}


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> GitHubOAuthClient:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return GitHubOAuthClient("client-id", "client-secret", CALLBACK, http_client=http_client)


def _github(routes: Dict[str, httpx.Response], seen: List[httpx.Request]) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = f"{request.method} {request.url.host}{request.url.path}"
        if key not in routes:
            return httpx.Response(404, json={"message": "Not Found"})
        return routes[key]

    return handler


def test_authorization_url_carries_state_and_callback() -> None:
    client = _client(lambda request: httpx.Response(500))

    url = urlparse(client.authorization_url("state-123"))
    query = parse_qs(url.query)

    assert url.netloc == "github.com"
    assert url.path == "/login/oauth/authorize"
    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == [CALLBACK]
    assert query["scope"] == ["user:email"]
    assert query["state"] == ["state-123"]


def test_authenticate_falls_back_to_primary_verified_email() -> None:
    seen: List[httpx.Request] = []
    client = _client(
        _github(
            {
                "POST github.com/login/oauth/access_token": httpx.Response(
                    200, json={"access_token": "gho_token", "token_type": "bearer"}
                ),
                "GET api.github.com/user": httpx.Response(200, json=PROFILE),
                "GET api.github.com/user/emails": httpx.Response(
                    200,
                    json=[
                        {"email": "unverified@example.com", "primary": False, "verified": False},
                        {"email": "secondary@example.com", "primary": False, "verified": True},
                        {"email": "OctoCat@Example.com", "primary": True, "verified": True},
                    ],
                ),
            },
            seen,
        )
    )

    identity = client.authenticate("grant-code")

    assert identity.external_id == "583231"
    assert identity.handle == "octocat"
    assert identity.display_name == "The Octocat"
    assert identity.profile_url == "https://github.com/octocat"
    assert identity.avatar_url == PROFILE["avatar_url"]
    assert identity.email == "octocat@example.com"
    assert identity.provider == "github"

    token_request = seen[0]
    assert str(token_request.url) == GITHUB_TOKEN_URL
    assert token_request.headers["accept"] == "application/json"
    assert parse_qs(token_request.content.decode())["code"] == ["grant-code"]
    assert seen[1].headers["authorization"] == "Bearer gho_token"


def test_profile_email_is_used_when_public() -> None:
    seen: List[httpx.Request] = []
    profile = dict(PROFILE, email="public@example.com", name=None)
    client = _client(
        _github(
            {
                "POST github.com/login/oauth/access_token": httpx.Response(200, json={"access_token": "t"}),
                "GET api.github.com/user": httpx.Response(200, json=profile),
            },
            seen,
        )
    )

    identity = client.authenticate("code")

    assert identity.email == "public@example.com"
    assert identity.display_name == "octocat"
    assert len(seen) == 2


def test_missing_email_scope_yields_identity_without_email() -> None:
    seen: List[httpx.Request] = []
    client = _client(
        _github(
            {
                "POST github.com/login/oauth/access_token": httpx.Response(200, json={"access_token": "t"}),
                "GET api.github.com/user": httpx.Response(200, json=PROFILE),
                "GET api.github.com/user/emails": httpx.Response(403, json={"message": "Forbidden"}),
            },
            seen,
        )
    )

    assert client.authenticate("code").email is None


def test_rejected_grant_raises_provider_error() -> None:
    client = _client(
        lambda request: httpx.Response(
            200,
            json={
                "error": "bad_verification_code",
                "error_description": "The code passed is incorrect or expired.",
            },
        )
    )

    with pytest.raises(ProviderError) as excinfo:
        client.exchange_grant("stale")
    assert excinfo.value.message == "The code passed is incorrect or expired."
    assert excinfo.value.code == "oauth_failed"


def test_http_failures_raise_provider_error() -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError):
        _client(unreachable).exchange_grant("code")

    with pytest.raises(ProviderError):
        _client(lambda request: httpx.Response(502, text="bad gateway")).exchange_grant("code")

    with pytest.raises(ProviderError):
        _client(lambda request: httpx.Response(200, text="<html>")).exchange_grant("code")

    with pytest.raises(ProviderError):
        _client(lambda request: httpx.Response(200, content=json.dumps({}).encode())).fetch_identity("t")


def test_missing_code_and_credentials_are_rejected() -> None:
    with pytest.raises(ProviderError):
        _client(lambda request: httpx.Response(500)).exchange_grant("")
    with pytest.raises(ValueError):
        GitHubOAuthClient("", "secret", CALLBACK)
