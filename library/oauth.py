"""GitHub OAuth handshake: consent redirect, grant exchange and identity fetch."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .errors import ProviderError
from .models import FederatedIdentity

logger = logging.getLogger("library.oauth")

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"
DEFAULT_SCOPE = "user:email"


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("error_description", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


def _primary_email(entries: object) -> Optional[str]:
    if not isinstance(entries, list):
        return None
    verified: List[Dict[str, Any]] = [
        entry for entry in entries if isinstance(entry, dict) and entry.get("verified") and entry.get("email")
    ]
    for entry in verified:
        if entry.get("primary"):
            return str(entry["email"])
    return str(verified[0]["email"]) if verified else None


class GitHubOAuthClient:
    """Client for the GitHub OAuth web application flow.

    The flow is a linear pipeline: :meth:`authorization_url` sends the user to
    GitHub for consent, :meth:`exchange_grant` trades the returned code for an
    access token and :meth:`fetch_identity` turns that token into a
    :class:`~library.models.FederatedIdentity`. The access token is never
    persisted.
    """

    provider = "github"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        callback_url: str,
        *,
        scope: str = DEFAULT_SCOPE,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("GitHub OAuth client id and secret must be configured")
        self._client_id = client_id
        self._client_secret = client_secret
        self._callback_url = callback_url
        self._scope = scope
        self._http = http_client or httpx.Client(timeout=timeout)

    @property
    def callback_url(self) -> str:
        return self._callback_url

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._callback_url,
            "scope": self._scope,
            "state": state,
            "allow_signup": "true",
        }
        return f"{GITHUB_AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_grant(self, code: str) -> str:
        if not code:
            raise ProviderError("Missing authorization code")
        payload = self._request(
            "POST",
            GITHUB_TOKEN_URL,
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
                "redirect_uri": self._callback_url,
            },
            headers={"Accept": "application/json"},
        )
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise ProviderError(_extract_error_message(payload, "GitHub did not return an access token"))
        return token

    def fetch_identity(self, access_token: str) -> FederatedIdentity:
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {access_token}",
        }
        profile = self._request("GET", f"{GITHUB_API_URL}/user", headers=headers)
        if not isinstance(profile, dict) or profile.get("id") is None:
            raise ProviderError("GitHub returned an unexpected profile payload")

        email = profile.get("email")
        if not email:
            try:
                email = _primary_email(
                    self._request("GET", f"{GITHUB_API_URL}/user/emails", headers=headers)
                )
            except ProviderError:
                logger.info("GitHub user %s has no accessible email address", profile.get("login"))
                email = None

        return FederatedIdentity(
            external_id=str(profile["id"]),
            display_name=profile.get("name") or profile.get("login"),
            handle=profile.get("login"),
            profile_url=profile.get("html_url"),
            avatar_url=profile.get("avatar_url"),
            email=str(email).strip().lower() if email else None,
            provider=self.provider,
        )

    def authenticate(self, code: str) -> FederatedIdentity:
        """Exchange ``code`` and return the verified identity behind it."""

        return self.fetch_identity(self.exchange_grant(code))

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Failed to contact GitHub: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            message = f"GitHub request failed with status {response.status_code}"
            raise ProviderError(_extract_error_message(payload, message))
        if payload is None:
            raise ProviderError("GitHub returned a non-JSON response")
        return payload


__all__ = ["GitHubOAuthClient"]
