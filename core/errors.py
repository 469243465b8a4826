"""
core/errors.py -- Exception taxonomy for AuthVault.

Every failure the auth core can report is a subclass of AuthVaultError. Each
carries a human-readable message, a stable machine-readable code, and an
optional details dict. The HTTP layer (api/main.py) maps classes to status
codes in one place; services never import fastapi to raise HTTPException.

Hierarchy:
  AuthVaultError
    ValidationError
    AuthenticationError
      AuthenticationRequired
      InvalidCredentials
      InvalidTwoFactorCode
      AccountLocked
      AccountInactive
      TokenError
        TokenExpired
        TokenInvalid
        TokenTypeMismatch
    CryptoError
      EncryptionError
      DecryptionError
    NotFound
    EmailTaken
    StorageError
    PermissionDenied

Security notes:
  InvalidCredentials uses the same message for unknown email and wrong
  password so the response cannot be used to enumerate accounts.

  CryptoError and StorageError messages are logged server-side only. The API
  surfaces them as a generic 500 body.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

from typing import Any


class AuthVaultError(Exception):
    """Base class for all AuthVault errors."""

    code = "error"
    default_message = "An error occurred."

    def __init__(self, message: str | None = None, code: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(AuthVaultError):
    code = "validation_error"
    default_message = "Invalid input."


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationError(AuthVaultError):
    code = "authentication_failed"
    default_message = "Authentication failed."


class AuthenticationRequired(AuthenticationError):
    code = "authentication_required"
    default_message = "Authentication required."


class InvalidCredentials(AuthenticationError):
    code = "invalid_credentials"
    default_message = "Invalid email or password."


class InvalidTwoFactorCode(AuthenticationError):
    code = "invalid_two_factor_code"
    default_message = "Invalid two-factor authentication code."


class AccountLocked(AuthenticationError):
    code = "account_locked"
    default_message = "Account is locked due to too many failed login attempts."


class AccountInactive(AuthenticationError):
    code = "account_inactive"
    default_message = "Account is inactive."


class TokenError(AuthenticationError):
    code = "token_error"
    default_message = "Token verification failed."


class TokenExpired(TokenError):
    code = "token_expired"
    default_message = "Token has expired."


class TokenInvalid(TokenError):
    code = "token_invalid"
    default_message = "Token is invalid."


class TokenTypeMismatch(TokenError):
    code = "token_type_mismatch"
    default_message = "Token type is not accepted here."


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class CryptoError(AuthVaultError):
    code = "crypto_error"
    default_message = "Cryptographic operation failed."


class EncryptionError(CryptoError):
    code = "encryption_failed"
    default_message = "Encryption failed."


class DecryptionError(CryptoError):
    code = "decryption_failed"
    default_message = "Decryption failed."


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class NotFound(AuthVaultError):
    code = "not_found"
    default_message = "Resource not found."


class EmailTaken(AuthVaultError):
    code = "email_taken"
    default_message = "Email is already registered."


class StorageError(AuthVaultError):
    code = "storage_error"
    default_message = "Storage operation failed."


class PermissionDenied(AuthVaultError):
    code = "forbidden"
    default_message = "You do not have permission to perform this action."
