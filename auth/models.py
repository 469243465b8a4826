"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores map rows to
these; services do the work; routes map them to pydantic response models.

Two families live here:
  Records   -- User, Session, ApiKey, BackupCode, UserProfile, AuditLog.
               One per table in auth/store.py.
  Results   -- TokenPair, LoginSuccess, TwoFactorRequired, Registration, ...
               Return values of service operations. Expected outcomes such as
               "second factor required" are result variants, never exceptions.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    EMAIL = "EMAIL"
    GOOGLE = "GOOGLE"
    KAKAO = "KAKAO"


class TwoFactorState(str, Enum):
    DISABLED = "DISABLED"
    PENDING = "PENDING"  # secret stored, not yet confirmed
    ENABLED = "ENABLED"


class AuditAction(str, Enum):
    REGISTER = "REGISTER"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    EMAIL_VERIFY = "EMAIL_VERIFY"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    ACCOUNT_DELETE = "ACCOUNT_DELETE"
    ACCOUNT_UNLOCK = "ACCOUNT_UNLOCK"
    TWO_FACTOR_INIT = "TWO_FACTOR_INIT"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    BACKUP_CODES_REGENERATE = "BACKUP_CODES_REGENERATE"
    API_KEY_CREATE = "API_KEY_CREATE"
    API_KEY_DEACTIVATE = "API_KEY_DEACTIVATE"
    API_KEY_DELETE = "API_KEY_DELETE"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An identity record.

    password_hash is None for accounts created through a federated provider.
    Every password-dependent operation checks has_password first.

    two_factor_secret holds the AES-GCM envelope of the TOTP secret, never the
    raw base32 value. A stored secret with two_factor_enabled=False is the
    PENDING enrollment state.
    """

    email: str
    id: int | None = None
    password_hash: str | None = None
    provider: Provider = Provider.EMAIL
    provider_id: str | None = None
    name: str | None = None
    profile_image: str | None = None
    email_verified: bool = False
    verification_token_hash: str | None = None
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    failed_login_attempts: int = 0
    is_locked: bool = False
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def two_factor_state(self) -> TwoFactorState:
        if self.two_factor_enabled:
            return TwoFactorState.ENABLED
        if self.two_factor_secret:
            return TwoFactorState.PENDING
        return TwoFactorState.DISABLED


@dataclass
class Session:
    """One issued token pair.

    A revoked or expired session never authorizes a request, even when the
    JWT inside it still verifies.
    """

    user_id: int
    token: str
    refresh_token: str
    expires_at: datetime
    id: int | None = None
    is_revoked: bool = False
    ip_address: str | None = None
    user_agent: str | None = None
    last_activity_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class ApiKey:
    """A long-lived machine credential.

    key_hash is SHA-256 of the raw key; the raw key is never persisted and is
    returned exactly once at creation. key_preview is the first 8 characters
    followed by "..." so users can tell keys apart in listings.
    """

    user_id: int
    name: str
    key_hash: str
    key_preview: str
    scopes: list[str] = field(default_factory=lambda: ["read"])
    id: int | None = None
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class BackupCode:
    user_id: int
    code_hash: str
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class UserProfile:
    """Extended profile. phone_number, address and date_of_birth are stored
    as AES-GCM envelopes; the remaining fields are plaintext."""

    user_id: int
    phone_number: str | None = None
    address: str | None = None
    date_of_birth: str | None = None
    bio: str | None = None
    website: str | None = None
    timezone: str | None = None
    language: str | None = None
    updated_at: datetime | None = None


@dataclass
class AuditLog:
    action: AuditAction
    status: AuditStatus
    user_id: int | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientInfo:
    """Network snapshot of the caller, recorded on sessions and audit rows."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request."""

    user_id: int
    email: str
    session_id: int
    token: str


@dataclass(frozen=True)
class ApiKeyIdentity:
    """The identity derived from a valid X-API-Key header."""

    user_id: int
    email: str
    scopes: tuple[str, ...]
    key_id: int

    def has_scope(self, scope: str) -> bool:
        # admin implies every other scope
        return scope in self.scopes or "admin" in self.scopes


@dataclass(frozen=True)
class FederatedIdentity:
    """What an external identity provider vouched for after a completed handshake."""

    provider: Provider
    provider_id: str
    email: str
    provider_verified_email: bool
    display_name: str | None = None
    avatar_url: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    email: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LoginSuccess:
    user: User
    tokens: TokenPair
    session: Session

    requires_two_factor = False


@dataclass(frozen=True)
class TwoFactorRequired:
    """Password accepted, second factor still needed. Grants nothing."""

    user_id: int

    requires_two_factor = True


LoginResult = LoginSuccess | TwoFactorRequired


@dataclass(frozen=True)
class Registration:
    user: User
    verification_token: str


@dataclass(frozen=True)
class TwoFactorEnrollment:
    """One-time provisioning payload. The only place the raw secret leaves the service."""

    qr_code: str
    provisioning_uri: str
    secret: str


@dataclass(frozen=True)
class CreatedApiKey:
    api_key: str
    metadata: ApiKey
