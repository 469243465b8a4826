"""
auth/dependencies.py -- Per-request authentication and FastAPI Depends() helpers.

RequestAuthenticator maps an "Authorization: Bearer <token>" header to a
Principal. A signature-valid JWT is necessary but not sufficient:

  1. header present and well-formed         else AuthenticationRequired
  2. JWT verifies as an *access* token       else TokenExpired / TokenInvalid /
                                                  TokenTypeMismatch
  3. a Session row carries this exact token  else TokenInvalid
     and it is not revoked                   else TokenInvalid (session_revoked)
     and it has not expired                  else TokenExpired
  4. the user still exists, is active, and   else TokenInvalid / AccountInactive /
     is not locked                                AccountLocked
  5. stamp session.last_activity_at

Step 3 is what makes logout and password change effective: the JWT stays
cryptographically valid until it expires, but its session row does not.

try_authenticate() is the soft variant: same checks, returns None instead of
raising. Used by endpoints that behave differently for signed-in callers.

API keys (X-API-Key) are a separate credential with their own dependency,
get_api_key_identity(), and never yield a Principal.

Layer rule: auth/dependencies.py may import from fastapi (Depends, Request)
because this module is part of the FastAPI dependency injection system.
It raises core.errors exceptions; api/main.py maps them to responses.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import Depends, Request

from auth.models import ApiKeyIdentity, ClientInfo, Principal
from auth.store import CredentialStore
from auth.tokens import TokenService
from core.errors import (
    AccountInactive,
    AccountLocked,
    AuthenticationError,
    AuthenticationRequired,
    PermissionDenied,
    TokenExpired,
    TokenInvalid,
)

logger = logging.getLogger("authvault.auth.dependencies")

_BEARER_PREFIX = "bearer "


def extract_bearer_token(header: str | None) -> str:
    """Return the token from an Authorization header value, or raise."""
    if not header or not header.lower().startswith(_BEARER_PREFIX):
        raise AuthenticationRequired()
    token = header[len(_BEARER_PREFIX) :].strip()
    if not token or " " in token:
        raise AuthenticationRequired("Malformed Authorization header.")
    return token


class RequestAuthenticator:
    def __init__(self, store: CredentialStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def authenticate(self, authorization: str | None) -> Principal:
        token = extract_bearer_token(authorization)
        claims = self.tokens.verify_access_token(token)

        session = self.store.find_session_by_token(token)
        if session is None:
            raise TokenInvalid("Session not found.", code="session_not_found")
        if session.is_revoked:
            raise TokenInvalid("Session has been revoked.", code="session_revoked")
        now = datetime.now(timezone.utc)
        if session.expires_at <= now:
            raise TokenExpired("Session has expired.")

        user = self.store.find_user_by_id(claims.user_id)
        if user is None or user.id != session.user_id:
            raise TokenInvalid("Account no longer exists.")
        if not user.is_active:
            raise AccountInactive()
        if user.is_locked:
            raise AccountLocked()

        self.store.update_session(session.id, last_activity_at=now)
        return Principal(user_id=user.id, email=user.email, session_id=session.id, token=token)

    def try_authenticate(self, authorization: str | None) -> Principal | None:
        try:
            return self.authenticate(authorization)
        except AuthenticationError:
            return None


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def client_info(request: Request) -> ClientInfo:
    """Network snapshot of the caller for sessions and audit rows."""
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def get_current_principal(request: Request) -> Principal:
    """Require a valid bearer session. Raises an AuthenticationError subclass.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    authenticator: RequestAuthenticator = request.app.state.authenticator
    return authenticator.authenticate(request.headers.get("Authorization"))


def get_optional_principal(request: Request) -> Principal | None:
    authenticator: RequestAuthenticator = request.app.state.authenticator
    return authenticator.try_authenticate(request.headers.get("Authorization"))


def get_api_key_identity(request: Request) -> ApiKeyIdentity:
    raw_key = request.headers.get("X-API-Key", "")
    if not raw_key:
        raise AuthenticationRequired("X-API-Key header required.")
    return request.app.state.api_keys.validate(raw_key)


def require_scope(scope: str):
    """Dependency factory: an API-key identity that carries `scope` (admin implies all)."""

    def dependency(identity: ApiKeyIdentity = Depends(get_api_key_identity)) -> ApiKeyIdentity:
        if not identity.has_scope(scope):
            raise PermissionDenied(f"API key lacks the '{scope}' scope.", code="insufficient_scope")
        return identity

    return dependency
