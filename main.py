"""Command-line interface for the library catalog service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from getpass import getpass
from typing import Sequence

from library.config import Settings, load_settings, resolve_config_path
from library.database import Database
from library.errors import ConfigurationError, LibraryError
from library.local_auth import LocalAuthFlow
from library.models import Role
from library.repository import UserRepository
from library.security import CredentialHasher

logger = logging.getLogger("library.main")

MIN_PASSWORD_LENGTH = 6


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Library catalog service utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the database collections and indexes")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="Port for the HTTP API (default: 3000)",
    )

    create_parser = subparsers.add_parser("create-user", help="Create a local account")
    create_parser.add_argument("username", help="Username for the new account")
    create_parser.add_argument("email", help="Email address for the new account")

    promote_parser = subparsers.add_parser("promote", help="Change the role of an existing account")
    promote_parser.add_argument("email", help="Email address of the account")
    promote_parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.ADMIN.value,
        help="Role to assign (default: admin)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "create-user", "promote"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _load_settings() -> Settings:
    return load_settings(resolve_config_path(os.getenv("LIBRARY_CONFIG")))


def _open_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.open()
    logger.info("Database ready at %s", settings.database_path)
    return database


def _serve(*, settings: Settings, host: str, port: int) -> None:
    from library.service import create_app
    import uvicorn

    logger.info("Starting library API on http://%s:%s (%s)", host, port, settings.environment)
    try:
        app = create_app(settings=settings)
    except ConfigurationError as exc:
        raise SystemExit(f"Cannot start the service: {exc}") from exc
    uvicorn.run(app, host=host, port=port, log_level="info")


def _prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {MIN_PASSWORD_LENGTH} characters): ")
        if len(password) < MIN_PASSWORD_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_user(database: Database, username: str, email: str) -> int:
    password = _prompt_for_password()
    if password is None:
        print("Aborted creating user.")
        return 1

    users = UserRepository(database)
    try:
        user_id = LocalAuthFlow(users, CredentialHasher()).register(
            username, email, password
        )
    except LibraryError as exc:
        print(f"Failed to create user: {exc.message}")
        return 1

    print(f"Created user {user_id}: {username} <{email}>")
    return 0


def _promote(database: Database, email: str, role: Role) -> int:
    users = UserRepository(database)
    user = users.find_by_email(email)
    if user is None:
        print(f"No account is registered with {email}.")
        return 1

    updated = users.set_role(user.id, role)
    logger.info("Changed role of user %s to %s", updated.id, updated.role.value)
    print(f"{updated.username} <{updated.email}> now has the {updated.role.value} role.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        settings = _load_settings()
    except ConfigurationError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    if args.command == "serve":
        _serve(settings=settings, host=args.host, port=args.port)
        return 0

    with _open_database(settings) as database:
        if args.command == "init-db":
            print("Database initialisation complete.")
            return 0
        if args.command == "create-user":
            return _create_user(database, args.username, args.email)
        if args.command == "promote":
            return _promote(database, args.email, Role(args.role))
    return 0


if __name__ == "__main__":
    sys.exit(main())
