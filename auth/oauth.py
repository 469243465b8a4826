"""
auth/oauth.py -- Authlib OAuth registry and provider payload normalization.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

The handshake itself (authorize redirect, state check, code exchange) is
authlib's job. This module only turns what each provider returns into a
FederatedIdentity, the single shape AuthSessionManager.federated_login()
accepts.

Security notes:
  provider_verified_email is copied from the provider, never assumed. The
  session manager refuses identities where it is False, so an address the
  user typed into a provider without proving ownership cannot be linked to
  an existing AuthVault account.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers:
  google -- Authorization code flow; OIDC discovery; claims from id_token.
  kakao  -- Authorization code flow; static endpoints; GET /v2/user/me.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import FederatedIdentity, Provider
from core.config import Settings, get_settings
from core.errors import InvalidCredentials

logger = logging.getLogger("authvault.auth.oauth")

_PROVIDERS = {
    "google": (Provider.GOOGLE, "Google"),
    "kakao": (Provider.KAKAO, "Kakao"),
}

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_registry(settings: Settings) -> OAuth:
    registry = OAuth()

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        registry.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # Kakao -- static endpoints; Kakao expects the client secret in the POST body
    if settings.kakao_client_id and settings.kakao_client_secret:
        registry.register(
            name="kakao",
            client_id=settings.kakao_client_id,
            client_secret=settings.kakao_client_secret,
            authorize_url="https://kauth.kakao.com/oauth/authorize",
            access_token_url="https://kauth.kakao.com/oauth/token",  # noqa: S106 -- URL, not a password
            api_base_url="https://kapi.kakao.com/",
            client_kwargs={
                "scope": "account_email profile_nickname profile_image",
                "token_endpoint_auth_method": "client_secret_post",
            },
        )
        logger.info("Kakao OAuth provider registered")

    return registry


oauth = build_registry(get_settings())


def get_enabled_providers(settings: Settings | None = None) -> list[dict]:
    """Return {"name", "label"} for every configured provider."""
    cfg = settings or get_settings()
    configured = {
        "google": cfg.google_client_id and cfg.google_client_secret,
        "kakao": cfg.kakao_client_id and cfg.kakao_client_secret,
    }
    return [{"name": name, "label": label} for name, (_, label) in _PROVIDERS.items() if configured[name]]


def provider_for(name: str) -> Provider:
    try:
        return _PROVIDERS[name][0]
    except KeyError:
        raise InvalidCredentials(f"Unknown OAuth provider: {name!r}") from None


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------


async def fetch_federated_identity(client, provider: str, token: dict) -> FederatedIdentity:
    """Turn a completed token exchange into a FederatedIdentity.

    Raises InvalidCredentials for an unknown provider name, or if the
    provider response lacks a stable id or an email address.
    """
    kind = provider_for(provider)
    if kind is Provider.GOOGLE:
        return google_identity(token.get("userinfo") or {})
    resp = await client.get("v2/user/me", token=token)
    resp.raise_for_status()
    return kakao_identity(resp.json())


def google_identity(userinfo: dict) -> FederatedIdentity:
    """Build an identity from Google's OIDC userinfo claims."""
    subject = userinfo.get("sub")
    email = userinfo.get("email")
    if not subject or not email:
        raise InvalidCredentials("Google OAuth: missing email or sub claim in userinfo.")
    return FederatedIdentity(
        provider=Provider.GOOGLE,
        provider_id=str(subject),
        email=email,
        provider_verified_email=bool(userinfo.get("email_verified", False)),
        display_name=userinfo.get("name"),
        avatar_url=userinfo.get("picture"),
    )


def kakao_identity(payload: dict) -> FederatedIdentity:
    """Build an identity from Kakao's /v2/user/me response.

    Kakao reports verification as two flags; both must hold for the address
    to count as proven (is_email_valid goes False when the address is later
    taken over by another Kakao account).
    """
    account = payload.get("kakao_account") or {}
    profile = account.get("profile") or {}
    subject = payload.get("id")
    email = account.get("email")
    if subject is None or not email:
        raise InvalidCredentials("Kakao OAuth: missing id or email in user payload.")
    verified = bool(account.get("is_email_verified")) and bool(account.get("is_email_valid", True))
    return FederatedIdentity(
        provider=Provider.KAKAO,
        provider_id=str(subject),
        email=email,
        provider_verified_email=verified,
        display_name=profile.get("nickname"),
        avatar_url=profile.get("profile_image_url"),
    )
