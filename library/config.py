"""Configuration management for the library service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .database import resolve_database_path
from .errors import ConfigurationError

DEFAULT_CALLBACK_URL = "http://localhost:3000/auth/github/callback"
SESSION_COOKIE_NAME = "library_session"
OAUTH_STATE_COOKIE_NAME = "library_oauth_state"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_ENVIRONMENTS = {"development", "production"}
_SESSION_STORES = {"memory", "database"}

# Environment variable -> settings key.
_ENV_KEYS = {
    "LIBRARY_ENV": "environment",
    "LIBRARY_DB_PATH": "database_path",
    "LIBRARY_SESSION_SECRET": "session_secret",
    "LIBRARY_SESSION_TTL_HOURS": "session_ttl_hours",
    "LIBRARY_SESSION_STORE": "session_store",
    "LIBRARY_COOKIE_SECURE": "cookie_secure",
    "GITHUB_CLIENT_ID": "github_client_id",
    "GITHUB_CLIENT_SECRET": "github_client_secret",
    "GITHUB_CALLBACK_URL": "github_callback_url",
}


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the HTTP service and the identity core."""

    environment: str = "development"
    database_path: Path = resolve_database_path(None)
    session_secret: Optional[str] = None
    session_ttl: timedelta = timedelta(hours=24)
    session_store: str = "memory"
    cookie_secure: bool = False
    github_client_id: Optional[str] = None
    github_client_secret: Optional[str] = None
    github_callback_url: str = DEFAULT_CALLBACK_URL

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def oauth_enabled(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret)

    @property
    def cookie_samesite(self) -> str:
        # Cross-site OAuth redirects need SameSite=None, which browsers only accept with Secure.
        return "none" if self.cookie_secure and self.is_production else "lax"

    def require_session_secret(self) -> str:
        if not self.session_secret:
            raise ConfigurationError("LIBRARY_SESSION_SECRET must be configured to serve requests")
        return self.session_secret

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "Settings":
        """Build :class:`Settings` from raw configuration values."""

        environment = str(data.get("environment") or "development").strip().lower()
        if environment not in _ENVIRONMENTS:
            raise ConfigurationError(
                f"environment must be one of {', '.join(sorted(_ENVIRONMENTS))}, got {environment!r}"
            )
        production = environment == "production"

        raw_ttl = data.get("session_ttl_hours", 24)
        try:
            ttl_hours = float(raw_ttl)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"session_ttl_hours must be a number, got {raw_ttl!r}") from exc
        if ttl_hours <= 0:
            raise ConfigurationError("session_ttl_hours must be positive")

        session_store = str(data.get("session_store") or ("database" if production else "memory")).strip().lower()
        if session_store not in _SESSION_STORES:
            raise ConfigurationError(
                f"session_store must be one of {', '.join(sorted(_SESSION_STORES))}, got {session_store!r}"
            )

        raw_secure = data.get("cookie_secure")
        cookie_secure = production if raw_secure in (None, "") else _parse_bool("cookie_secure", raw_secure)

        return Settings(
            environment=environment,
            database_path=resolve_database_path(_optional_str(data.get("database_path"))),
            session_secret=_optional_str(data.get("session_secret")),
            session_ttl=timedelta(hours=ttl_hours),
            session_store=session_store,
            cookie_secure=cookie_secure,
            github_client_id=_optional_str(data.get("github_client_id")),
            github_client_secret=_optional_str(data.get("github_client_secret")),
            github_callback_url=_optional_str(data.get("github_callback_url")) or DEFAULT_CALLBACK_URL,
        )


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the optional YAML configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "library.yaml").resolve(strict=False)


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from a YAML file overlaid with environment variables.

    The file is optional; environment variables always take precedence.
    """
    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    if config_path is not None and config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
        raw.update(loaded)

    for variable, key in _ENV_KEYS.items():
        value = env.get(variable)
        if value is not None and value.strip():
            raw[key] = value

    return Settings.from_mapping(raw)


__all__ = [
    "OAUTH_STATE_COOKIE_NAME",
    "SESSION_COOKIE_NAME",
    "Settings",
    "load_settings",
    "resolve_config_path",
]
