"""HTTP API for the library catalog and its session-based authentication."""

from __future__ import annotations

import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .authorization import optional_authenticated, require_authenticated, require_role
from .catalog import AuthorPayload, BookPayload, Catalog
from .config import OAUTH_STATE_COOKIE_NAME, SESSION_COOKIE_NAME, Settings, load_settings, resolve_config_path
from .database import Database
from .errors import LibraryError, NotFound, ProviderError, StoreUnavailable
from .federation import FederatedIdentityResolver
from .local_auth import LocalAuthFlow
from .models import Role, Session
from .oauth import GitHubOAuthClient
from .repository import UserRepository
from .security import CredentialHasher, tokens_match
from .sessions import DatabaseSessionStore, MemorySessionStore, SessionManager, SessionStore

logger = logging.getLogger("library.service")

OAUTH_STATE_MAX_AGE = 10 * 60


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(..., min_length=1)


def _error_response(status_code: int, code: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "detail": detail})


def _build_session_store(settings: Settings, database: Database) -> SessionStore:
    if settings.session_store == "database":
        return DatabaseSessionStore(database)
    return MemorySessionStore()


def _build_oauth_client(settings: Settings) -> Optional[GitHubOAuthClient]:
    if not settings.oauth_enabled:
        return None
    return GitHubOAuthClient(
        settings.github_client_id or "",
        settings.github_client_secret or "",
        settings.github_callback_url,
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
        return _error_response(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = "Validation failed"
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            detail = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        return _error_response(status.HTTP_400_BAD_REQUEST, "validation_failed", detail)


def create_app(
    *,
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    session_store: Optional[SessionStore] = None,
    oauth_client: Optional[GitHubOAuthClient] = None,
    hasher: Optional[CredentialHasher] = None,
) -> FastAPI:
    """Instantiate the FastAPI application.

    Collaborators may be injected for tests; otherwise they are built from
    ``settings`` (loaded from the environment when omitted). A database created
    here is owned by the application and closed on shutdown.
    """

    settings = settings or load_settings(resolve_config_path(os.getenv("LIBRARY_CONFIG")))
    session_secret = settings.require_session_secret()

    owns_database = database is None
    db = database or Database(settings.database_path)
    store = session_store or _build_session_store(settings, db)
    oauth = oauth_client or _build_oauth_client(settings)

    if not settings.cookie_secure:
        logger.warning(
            "Session cookies are not marked as secure. Only disable secure cookies for local development."
        )

    users = UserRepository(db)
    session_manager = SessionManager(store, secret=session_secret, ttl=settings.session_ttl)
    local_auth = LocalAuthFlow(users, hasher or CredentialHasher(), session_manager)
    resolver = FederatedIdentityResolver(users, session_manager)
    catalog = Catalog(db)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db.open()
        try:
            yield
        finally:
            if oauth is not None and oauth_client is None:
                oauth.close()
            if owns_database:
                db.close()

    app = FastAPI(
        title="Library Management API",
        version="1.0.0",
        description="Catalog of books and authors with session-gated writes.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = db
    app.state.session_manager = session_manager
    app.state.users = users

    register_exception_handlers(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------
    def current_session(request: Request) -> Optional[Session]:
        return session_manager.resolve(request.cookies.get(SESSION_COOKIE_NAME))

    def authenticated(session: Optional[Session] = Depends(current_session)) -> Session:
        return require_authenticated(session)

    def admin(session: Optional[Session] = Depends(current_session)) -> Session:
        return require_role(session, Role.ADMIN)

    def optional(session: Optional[Session] = Depends(current_session)) -> Optional[Session]:
        return optional_authenticated(session)

    def _issue_session_cookie(response: Response, token: str) -> None:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            token,
            max_age=session_manager.cookie_max_age,
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
            path="/",
        )

    def _clear_session_cookie(response: Response) -> None:
        response.delete_cookie(
            SESSION_COOKIE_NAME,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.post("/auth/register", status_code=status.HTTP_201_CREATED)
    def register(body: RegisterRequest) -> Dict[str, str]:
        user_id = local_auth.register(body.username, body.email, body.password)
        return {"message": "User registered successfully", "userId": user_id}

    @app.post("/auth/login")
    def login(body: LoginRequest, request: Request, response: Response) -> Dict[str, Any]:
        result = local_auth.login(body.email, body.password)
        session_manager.destroy(request.cookies.get(SESSION_COOKIE_NAME))
        _issue_session_cookie(response, result.token)
        return {"message": "Login successful", "user": result.user.snapshot().to_document()}

    @app.post("/auth/logout")
    def logout(request: Request, response: Response) -> Dict[str, str]:
        session_manager.destroy(request.cookies.get(SESSION_COOKIE_NAME))
        _clear_session_cookie(response)
        return {"message": "Logout successful"}

    @app.get("/auth/profile")
    def profile(session: Session = Depends(authenticated)) -> Dict[str, Any]:
        user = users.find_by_id(session.user_id)
        if user is None:
            raise NotFound("User not found")
        return user.to_public_dict()

    @app.get("/auth/github")
    def github_login() -> Response:
        if oauth is None:
            return _error_response(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "oauth_unavailable",
                "GitHub OAuth is not configured",
            )
        state = secrets.token_urlsafe(24)
        response = RedirectResponse(oauth.authorization_url(state), status_code=status.HTTP_302_FOUND)
        response.set_cookie(
            OAUTH_STATE_COOKIE_NAME,
            state,
            max_age=OAUTH_STATE_MAX_AGE,
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
            path="/auth/github",
        )
        return response

    @app.get("/auth/github/callback")
    def github_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Response:
        def _finish(target: str) -> RedirectResponse:
            response = RedirectResponse(target, status_code=status.HTTP_302_FOUND)
            response.delete_cookie(OAUTH_STATE_COOKIE_NAME, path="/auth/github")
            return response

        if oauth is None:
            return _finish("/?error=oauth_failed")
        if error:
            logger.info("GitHub authorization was declined: %s", error)
            return _finish("/?error=oauth_denied")

        expected_state = request.cookies.get(OAUTH_STATE_COOKIE_NAME)
        if not code or not state or not expected_state or not tokens_match(state, expected_state):
            logger.warning("Rejected GitHub callback with a missing or mismatched state")
            return _finish("/?error=oauth_failed")

        try:
            identity = oauth.authenticate(code)
        except ProviderError as exc:
            logger.warning("GitHub OAuth exchange failed: %s", exc)
            return _finish("/?error=oauth_failed")

        try:
            result = resolver.login(identity)
        except StoreUnavailable:
            raise
        except LibraryError as exc:
            logger.warning("Could not resolve GitHub identity %s: %s", identity.external_id, exc)
            return _finish(f"/?error={exc.code}")

        session_manager.destroy(request.cookies.get(SESSION_COOKIE_NAME))
        response = _finish("/?login=success")
        _issue_session_cookie(response, result.token)
        return response

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    @app.get("/authors")
    def list_authors(session: Optional[Session] = Depends(optional)) -> List[Dict[str, Any]]:
        return catalog.authors.list()

    @app.get("/authors/{author_id}")
    def get_author(author_id: str, session: Optional[Session] = Depends(optional)) -> Dict[str, Any]:
        return catalog.authors.get(author_id)

    @app.post("/authors", status_code=status.HTTP_201_CREATED)
    def create_author(body: AuthorPayload, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        author = catalog.authors.create(body)
        return {"message": "Author created successfully", "authorId": author["id"]}

    @app.put("/authors/{author_id}")
    def update_author(
        author_id: str,
        body: AuthorPayload,
        session: Session = Depends(authenticated),
    ) -> Dict[str, Any]:
        catalog.authors.update(author_id, body)
        return {"message": "Author updated successfully"}

    @app.delete("/authors/{author_id}")
    def delete_author(author_id: str, session: Session = Depends(admin)) -> Dict[str, str]:
        catalog.authors.delete(author_id)
        return {"message": "Author deleted successfully"}

    @app.get("/books")
    def list_books(session: Optional[Session] = Depends(optional)) -> List[Dict[str, Any]]:
        return catalog.books.list()

    @app.get("/books/{book_id}")
    def get_book(book_id: str, session: Optional[Session] = Depends(optional)) -> Dict[str, Any]:
        return catalog.books.get(book_id)

    @app.post("/books", status_code=status.HTTP_201_CREATED)
    def create_book(body: BookPayload, session: Session = Depends(authenticated)) -> Dict[str, Any]:
        book = catalog.create_book(body)
        return {"message": "Book created successfully", "bookId": book["id"]}

    @app.put("/books/{book_id}")
    def update_book(
        book_id: str,
        body: BookPayload,
        session: Session = Depends(authenticated),
    ) -> Dict[str, Any]:
        catalog.update_book(book_id, body)
        return {"message": "Book updated successfully"}

    @app.delete("/books/{book_id}")
    def delete_book(book_id: str, session: Session = Depends(admin)) -> Dict[str, str]:
        catalog.books.delete(book_id)
        return {"message": "Book deleted successfully"}

    # ------------------------------------------------------------------
    # Service information
    # ------------------------------------------------------------------
    @app.get("/health")
    def health() -> JSONResponse:
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            db.ping()
        except LibraryError:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "timestamp": timestamp,
                    "error": "Database connection failed",
                },
            )
        return JSONResponse(
            content={
                "status": "healthy",
                "timestamp": timestamp,
                "database": "connected",
                "oauth": {
                    "github": {
                        "configured": oauth is not None,
                        "callbackUrl": settings.github_callback_url,
                    }
                },
                "environment": settings.environment,
            }
        )

    @app.get("/")
    def root(session: Optional[Session] = Depends(optional)) -> Dict[str, Any]:
        return {
            "message": "Library Management with OAuth",
            "status": "active",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoints": {
                "authentication": "/auth (POST /register, POST /login, POST /logout, GET /profile)",
                "oauth": "/auth/github (GET), /auth/github/callback (GET)",
                "authors": "/authors (GET, POST, PUT, DELETE)",
                "books": "/books (GET, POST, PUT, DELETE)",
                "health": "/health",
            },
            "user": session.snapshot.to_document() if session else None,
            "environment": settings.environment,
        }

    return app


__all__ = ["create_app", "register_exception_handlers"]
