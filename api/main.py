"""
api/main.py -- FastAPI application entry point for AuthVault.

Exposes the auth core (auth/) over HTTP: registration and login, token
refresh, two-factor enrollment, OAuth sign-in, profile management, and API
keys.

Run with:  uvicorn asgi:app --reload

Middleware stack (registration order; the last one registered runs first):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie that carries the OAuth state value

Lifespan opens the CredentialStore and wires every service onto app.state
on startup, and closes the store on shutdown.

Error mapping lives here and only here. Services raise core.errors classes;
_STATUS_BY_ERROR turns them into status codes, walking the class hierarchy
so the most specific entry wins (AccountLocked is 403 even though it is an
AuthenticationError, which is 401).
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.api_keys import router as api_keys_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.profile import router as profile_router
from auth.api_keys import ApiKeyManager
from auth.dependencies import RequestAuthenticator
from auth.oauth import oauth as oauth_registry
from auth.profile import ProfileGuard
from auth.sessions import AuthSessionManager
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorService
from core.config import Settings, get_settings
from core.errors import (
    AccountInactive,
    AccountLocked,
    AuthenticationError,
    AuthVaultError,
    CryptoError,
    EmailTaken,
    NotFound,
    PermissionDenied,
    StorageError,
    ValidationError,
)

API_VERSION = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authvault.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, store: CredentialStore, cfg: Settings) -> None:
    """Build every auth service around one store and attach them to app.state.

    Route handlers reach services only through request.app.state, so tests can
    swap the store by calling this with their own CredentialStore.
    """
    tokens = TokenService.from_settings(cfg)
    two_factor = TwoFactorService.from_settings(store, cfg)
    app.state.credential_store = store
    app.state.tokens = tokens
    app.state.two_factor = two_factor
    app.state.sessions = AuthSessionManager.from_settings(store, tokens, two_factor, cfg)
    app.state.profiles = ProfileGuard(store, cfg.encryption_key)
    app.state.api_keys = ApiKeyManager(store, max_keys=cfg.api_key_limit)
    app.state.authenticator = RequestAuthenticator(store, tokens)
    app.state.oauth = oauth_registry


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and wire services on startup; close the store on shutdown."""
    logger.info("AuthVault API starting up")
    store = CredentialStore(settings.database_url)
    wire_services(app, store, settings)
    logger.info("Auth services initialized")

    yield

    store.close()
    logger.info("AuthVault API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthVault API",
    description="Email/password and OAuth sign-in, JWT sessions, TOTP two-factor, encrypted profiles, API keys.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the last registration is the outermost
# layer at runtime. Listed here in the order a reader scans them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state value in this signed session cookie between the
# authorization redirect and the callback. No state, no callback.
app.add_middleware(SessionMiddleware, secret_key=settings.secret_key, https_only=not settings.debug)

# SlowAPIMiddleware looks the limiter up on app.state.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(profile_router, prefix="/api/v1", tags=["Profile"])
app.include_router(api_keys_router, prefix="/api/v1", tags=["API Keys"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[AuthVaultError], int] = {
    ValidationError: 422,
    AuthenticationError: 401,
    AccountLocked: 403,
    AccountInactive: 403,
    PermissionDenied: 403,
    NotFound: 404,
    EmailTaken: 409,
    CryptoError: 500,
    StorageError: 500,
}


def status_for(exc: AuthVaultError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 500


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthVaultError)
async def authvault_error_handler(request: Request, exc: AuthVaultError) -> JSONResponse:
    """Map a core error to its status code.

    Security note: 500-class errors (crypto, storage) are logged with their
    real message and answered with a generic one.
    """
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return _error_response(500, "internal_error", "An unexpected error occurred.")
    response = _error_response(status_code, exc.code, exc.message)
    response.headers["Cache-Control"] = "no-store"
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions.

    A dict detail is already an error object and is used as-is; str(dict)
    would produce a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Not rate limited: load balancers and monitors poll it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Liveness plus a database round trip. 503 when the store is unreachable."""
    store: CredentialStore | None = getattr(request.app.state, "credential_store", None)
    db_ok = store is not None and store.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
