"""
api/routes/v1/auth.py -- Authentication, session, two-factor, and OAuth endpoints.

Routes:
  POST /api/v1/auth/register                  -- create EMAIL account (rate-limited)
  POST /api/v1/auth/login                     -- password (+2FA) login (rate-limited)
  POST /api/v1/auth/refresh                   -- rotate token pair
  POST /api/v1/auth/logout                    -- revoke the caller's session
  GET  /api/v1/auth/me                        -- current user (requires auth)
  GET  /api/v1/auth/status                    -- signed-in or not (optional auth)
  GET  /api/v1/auth/verify-email?token=...    -- confirm email ownership
  POST /api/v1/auth/2fa/init                  -- start TOTP enrollment
  POST /api/v1/auth/2fa/enable                -- confirm enrollment, get backup codes
  POST /api/v1/auth/2fa/disable               -- turn 2FA off (re-authentication)
  POST /api/v1/auth/2fa/backup-codes          -- replace backup codes (TOTP required)
  GET  /api/v1/auth/2fa/status                -- state and remaining backup codes
  GET  /api/v1/auth/providers                 -- enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}          -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback -- finish OAuth, redirect to frontend

Security:
  POST /login and /register are rate-limited per client IP.
  Cache-Control: no-store on every response that carries tokens.
  Handlers that hash or check passwords are plain `def`, so FastAPI runs them
  in its threadpool and bcrypt never blocks the event loop. The async OAuth
  callback hands the blocking core call to run_in_threadpool for the same
  reason.
  Failures raise core.errors exceptions; api/main.py maps them to responses.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    AuthStatusResponse,
    BackupCodesResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorInitResponse,
    UserSummary,
)
from auth.dependencies import client_info, get_current_principal, get_optional_principal
from auth.models import Principal, TwoFactorRequired
from auth.oauth import fetch_federated_identity, get_enabled_providers
from core.config import get_settings
from core.errors import AuthenticationError, NotFound

logger = logging.getLogger("authvault.api.auth")

_settings = get_settings()

# Auth policy:
# - register, login, refresh, verify-email, providers, oauth/*: public
# - status:                                                    optional auth
# - everything else:                                           requires auth
router = APIRouter()


def _no_store(payload: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _access_ttl_seconds() -> int:
    return _settings.access_token_ttl_minutes * 60


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@limiter.limit(_settings.register_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an email/password account.

    The verification token is handed to the mail collaborator, never to the
    HTTP caller. Until mail delivery is wired in it is logged at DEBUG.
    """
    result = request.app.state.sessions.register(
        email=str(body.email),
        password=body.password,
        name=body.name.strip() if body.name else None,
        client=client_info(request),
    )
    logger.debug("Verification token issued for user %s", result.user.id)
    return RegisterResponse(user=UserSummary.from_user(result.user))


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    When the account has 2FA on and no code was sent, answers 200 with
    requires_two_factor=true and no tokens. The client re-submits with
    two_factor_code (TOTP or backup code).
    """
    result = request.app.state.sessions.login(
        email=str(body.email),
        password=body.password,
        two_factor_code=body.two_factor_code,
        client=client_info(request),
    )
    if isinstance(result, TwoFactorRequired):
        return _no_store(LoginResponse(requires_two_factor=True, user_id=result.user_id).model_dump(mode="json"))
    return _no_store(
        LoginResponse(
            user=UserSummary.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_access_ttl_seconds(),
        ).model_dump(mode="json")
    )


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    pair = request.app.state.sessions.refresh(body.refresh_token, client=client_info(request))
    return _no_store(
        TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=_access_ttl_seconds(),
        ).model_dump()
    )


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> MessageResponse:
    request.app.state.sessions.logout(principal, client=client_info(request))
    return MessageResponse(message="Logged out.")


@router.get("/auth/verify-email", response_model=UserSummary)
def verify_email(request: Request, token: str = Query(min_length=1)) -> UserSummary:
    user = request.app.state.sessions.verify_email(token, client=client_info(request))
    return UserSummary.from_user(user)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserSummary)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> UserSummary:
    user = request.app.state.credential_store.find_user_by_id(principal.user_id)
    if user is None:
        raise NotFound("User not found.")
    return UserSummary.from_user(user)


@router.get("/auth/status", response_model=AuthStatusResponse)
def auth_status(request: Request, principal: Principal | None = Depends(get_optional_principal)) -> AuthStatusResponse:
    """Public endpoint that also reports who the caller is, when known."""
    if principal is None:
        return AuthStatusResponse(authenticated=False)
    user = request.app.state.credential_store.find_user_by_id(principal.user_id)
    return AuthStatusResponse(authenticated=True, user=UserSummary.from_user(user) if user else None)


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/init", response_model=TwoFactorInitResponse)
def two_factor_init(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    enrollment = request.app.state.two_factor.initiate(principal.user_id, client=client_info(request))
    return _no_store(
        TwoFactorInitResponse(
            qr_code=enrollment.qr_code,
            provisioning_uri=enrollment.provisioning_uri,
            secret=enrollment.secret,
        ).model_dump()
    )


@router.post("/auth/2fa/enable", response_model=BackupCodesResponse)
def two_factor_enable(
    request: Request,
    body: TwoFactorCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    codes = request.app.state.two_factor.confirm(principal.user_id, body.code, client=client_info(request))
    return _no_store(BackupCodesResponse(backup_codes=codes).model_dump())


@router.post("/auth/2fa/disable", response_model=MessageResponse)
def two_factor_disable(
    request: Request,
    body: TwoFactorDisableRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    request.app.state.two_factor.disable(
        principal.user_id, password=body.password, code=body.code, client=client_info(request)
    )
    return MessageResponse(message="Two-factor authentication disabled.")


@router.post("/auth/2fa/backup-codes", response_model=BackupCodesResponse)
def two_factor_regenerate(
    request: Request,
    body: TwoFactorCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    codes = request.app.state.two_factor.regenerate_backup_codes(
        principal.user_id, body.code, client=client_info(request)
    )
    return _no_store(BackupCodesResponse(backup_codes=codes).model_dump())


@router.get("/auth/2fa/status")
def two_factor_status(request: Request, principal: Principal = Depends(get_current_principal)) -> dict:
    user = request.app.state.credential_store.find_user_by_id(principal.user_id)
    if user is None:
        raise NotFound("User not found.")
    return {
        "state": user.two_factor_state.value,
        "backup_codes_remaining": request.app.state.two_factor.backup_codes_remaining(user.id),
    }


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers (empty list if none)."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_login(provider: str, request: Request):
    """Redirect the browser to the provider's consent page."""
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise NotFound(f"OAuth provider '{provider}' is not configured.")
    redirect_uri = request.url_for("oauth_callback", provider=provider)
    return await client.authorize_redirect(request, str(redirect_uri))


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(provider: str, request: Request) -> RedirectResponse:
    """Finish the handshake and hand the tokens to the frontend.

    Tokens travel in the URL fragment, which browsers never send to servers,
    so they stay out of access logs and Referer headers.
    """
    frontend = _settings.frontend_url.rstrip("/")
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise NotFound(f"OAuth provider '{provider}' is not configured.")
    try:
        token = await client.authorize_access_token(request)
        identity = await fetch_federated_identity(client, provider, token)
        result = await run_in_threadpool(request.app.state.sessions.federated_login, identity, client_info(request))
    except (OAuthError, AuthenticationError, httpx.HTTPError) as exc:
        logger.warning("OAuth login via %s failed: %s", provider, type(exc).__name__)
        return RedirectResponse(f"{frontend}/auth/error?{urlencode({'message': 'oauth_failed'})}", status_code=302)
    fragment = urlencode(
        {"access_token": result.tokens.access_token, "refresh_token": result.tokens.refresh_token}
    )
    resp = RedirectResponse(f"{frontend}/auth/callback#{fragment}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp
