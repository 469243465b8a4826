"""
API request and response models for AuthVault REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Input rules enforced here, before a request reaches the auth core:
  password   -- 8..72 chars with at least one lowercase, one uppercase, one
                digit and one special character from @$!%*?&
  name       -- 2..100 chars
  2FA code   -- 6 digits (TOTP); login also accepts 8 digits (backup code)
  phone      -- digits and + - ( ) only
  address    -- up to 200 chars
  birth date -- YYYY-MM-DD and a real calendar date
  bio        -- up to 500 chars
  language   -- two-letter code
  key name   -- 3..100 chars; scopes non-empty subset of read/write/admin

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import re
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, field_validator

from auth.models import ApiKey, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_SPECIALS = "@$!%*?&"
TOTP_PATTERN = r"^\d{6}$"
LOGIN_CODE_PATTERN = r"^\d{6}(\d{2})?$"
PHONE_PATTERN = r"^[0-9\-+()]*$"


def check_password_strength(value: str) -> str:
    """Raise ValueError unless the password meets the complexity rule.

    Done in Python rather than with a Field(pattern=...) because pydantic-core's
    regex engine has no look-ahead support.
    """
    missing = []
    if not re.search(r"[a-z]", value):
        missing.append("a lowercase letter")
    if not re.search(r"[A-Z]", value):
        missing.append("an uppercase letter")
    if not re.search(r"\d", value):
        missing.append("a digit")
    if not any(c in PASSWORD_SPECIALS for c in value):
        missing.append(f"a special character ({PASSWORD_SPECIALS})")
    if missing:
        raise ValueError("Password must contain " + ", ".join(missing) + ".")
    if len(value.encode("utf-8")) > 72:
        raise ValueError("Password must be at most 72 bytes.")
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ScopeEnum(str, Enum):
    read = "read"
    write = "write"
    admin = "admin"


# ---------------------------------------------------------------------------
# Shared envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Inner error object carried by every non-2xx response."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope: {"error": {"code", "message", "detail"}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=255)
    two_factor_code: Optional[str] = Field(default=None, pattern=LOGIN_CODE_PATTERN)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(pattern=TOTP_PATTERN)


class TwoFactorDisableRequest(BaseModel):
    """Password for password-backed accounts; a current code for federated ones."""

    password: Optional[str] = Field(default=None, max_length=255)
    code: Optional[str] = Field(default=None, pattern=LOGIN_CODE_PATTERN)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    id: int
    email: str
    name: Optional[str] = None
    provider: str
    profile_image: Optional[str] = None
    email_verified: bool
    two_factor_enabled: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            provider=user.provider.value,
            profile_image=user.profile_image,
            email_verified=user.email_verified,
            two_factor_enabled=user.two_factor_enabled,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class RegisterResponse(BaseModel):
    user: UserSummary
    message: str = "Registration successful. Check your email to verify your address."


class LoginResponse(BaseModel):
    """Either requires_two_factor=True alone, or the user plus both tokens."""

    requires_two_factor: bool = False
    user_id: Optional[int] = None
    user: Optional[UserSummary] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthStatusResponse(BaseModel):
    authenticated: bool
    user: Optional[UserSummary] = None


class TwoFactorInitResponse(BaseModel):
    qr_code: str
    provisioning_uri: str
    secret: str


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]
    message: str = "Store these backup codes somewhere safe. Each can be used once."


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class ProfileUpdate(BaseModel):
    """PATCH body. Only fields present in the JSON are changed."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    profile_image: Optional[HttpUrl] = None
    phone_number: Optional[str] = Field(default=None, max_length=30, pattern=PHONE_PATTERN)
    address: Optional[str] = Field(default=None, max_length=200)
    date_of_birth: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    bio: Optional[str] = Field(default=None, max_length=500)
    website: Optional[HttpUrl] = None
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, min_length=2, max_length=2)

    @field_validator("date_of_birth")
    @classmethod
    def real_date(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            date.fromisoformat(value)
        return value


class ProfileResponse(BaseModel):
    user: UserSummary
    phone_number: Optional[str] = None
    address: Optional[str] = None
    date_of_birth: Optional[str] = None
    bio: Optional[str] = None
    website: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=8, max_length=72)

    @field_validator("new_password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class DeleteAccountRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=100)
    scopes: list[ScopeEnum] = Field(default_factory=lambda: [ScopeEnum.read], min_length=1)
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    """Key metadata. Never includes the key itself."""

    id: int
    name: str
    key_preview: str
    scopes: list[str]
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_api_key(cls, key: ApiKey) -> "ApiKeyResponse":
        return cls(
            id=key.id,
            name=key.name,
            key_preview=key.key_preview,
            scopes=list(key.scopes),
            is_active=key.is_active,
            expires_at=key.expires_at,
            last_used_at=key.last_used_at,
            created_at=key.created_at,
        )


class ApiKeyCreatedResponse(BaseModel):
    """Returned once, at creation. api_key is never retrievable again."""

    api_key: str
    metadata: ApiKeyResponse


class ApiKeyWhoAmIResponse(BaseModel):
    user_id: int
    email: str
    scopes: list[str]
    key_id: int
