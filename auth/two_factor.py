"""
auth/two_factor.py -- TOTP enrollment, verification, and backup codes.

State machine per user (see User.two_factor_state):

    DISABLED --initiate()--> PENDING --confirm(code)--> ENABLED
        ^                      |  ^                        |
        |                      +--+ initiate() again       |
        +----------------------- disable(...) ------------+

  PENDING means an encrypted secret is stored but two_factor_enabled is
  still False. Login ignores a PENDING secret entirely.

Security design decisions:
  Secrets: pyotp.random_base32() (160 bits). Persisted only as an AES-GCM
       envelope under ENCRYPTION_KEY. The raw base32 value leaves this module
       exactly once, inside the TwoFactorEnrollment returned by initiate(),
       and is never logged.

  Verification: RFC 6238 with a 30-second step and valid_window=1, so the
       codes for the previous and next step are accepted to absorb clock skew.
       A code two steps away is rejected.

  Backup codes: ten 8-digit codes drawn with core.crypto.secure_random_int
       and stored as SHA-256 hashes. They are single-use: consuming one is a
       DELETE, and only the request whose DELETE removed the row succeeds.

  disable() requires fresh proof of identity: the password for accounts
       that have one, otherwise a current TOTP or backup code.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from datetime import datetime

import pyotp
import qrcode

from auth import audit
from auth.models import AuditAction, AuditStatus, ClientInfo, TwoFactorEnrollment, TwoFactorState, User
from auth.store import CredentialStore
from core.config import get_settings
from core.crypto import (
    decrypt_pii,
    encrypt_pii,
    hash_one_way,
    secure_random_int,
    verify_password,
)
from core.errors import DecryptionError, InvalidCredentials, InvalidTwoFactorCode, NotFound, ValidationError

logger = logging.getLogger("authvault.auth.two_factor")

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_VALID_WINDOW = 1
BACKUP_CODE_DIGITS = 8

_TOTP_RE = re.compile(rf"^\d{{{TOTP_DIGITS}}}$")
_BACKUP_RE = re.compile(rf"^\d{{{BACKUP_CODE_DIGITS}}}$")

METHOD_TOTP = "totp"
METHOD_BACKUP = "backup_code"


def generate_backup_codes(count: int = 10) -> list[str]:
    """Return `count` distinct 8-digit codes (no leading zero)."""
    low = 10 ** (BACKUP_CODE_DIGITS - 1)
    high = 10**BACKUP_CODE_DIGITS - 1
    codes: list[str] = []
    while len(codes) < count:
        code = str(secure_random_int(low, high))
        if code not in codes:
            codes.append(code)
    return codes


class TwoFactorService:
    """TOTP second factor for one CredentialStore."""

    def __init__(
        self,
        store: CredentialStore,
        encryption_key: str,
        issuer: str = "AuthVault",
        backup_code_count: int = 10,
    ) -> None:
        self.store = store
        self._key = encryption_key
        self.issuer = issuer
        self.backup_code_count = backup_code_count

    @classmethod
    def from_settings(cls, store: CredentialStore, settings=None) -> TwoFactorService:
        settings = settings or get_settings()
        return cls(
            store,
            encryption_key=settings.encryption_key,
            issuer=settings.two_factor_issuer,
            backup_code_count=settings.backup_code_count,
        )

    # ------------------------------------------------------------------
    # Pure helpers
    # ------------------------------------------------------------------

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, email: str, secret: str) -> str:
        return pyotp.TOTP(secret, interval=TOTP_INTERVAL).provisioning_uri(name=email, issuer_name=self.issuer)

    @staticmethod
    def render_qr_code(data: str) -> str:
        """Render `data` as a PNG QR code and return it as a data URI."""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()

    @staticmethod
    def verify(code: str, secret: str, for_time: datetime | int | None = None) -> bool:
        """Check a 6-digit TOTP code against a base32 secret, +/- one step.

        Malformed codes or secrets are a plain False, never an exception.
        """
        if not code or not _TOTP_RE.match(code):
            return False
        try:
            totp = pyotp.TOTP(secret, interval=TOTP_INTERVAL)
            return totp.verify(code, for_time=for_time, valid_window=TOTP_VALID_WINDOW)
        except (binascii.Error, ValueError, TypeError):
            return False

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def initiate(self, user_id: int, client: ClientInfo | None = None) -> TwoFactorEnrollment:
        """Generate a fresh secret and store it encrypted in the PENDING state.

        Calling again while PENDING replaces the secret; an authenticator app
        set up with the old one will stop matching.
        """
        user = self._require_user(user_id)
        if user.two_factor_state is TwoFactorState.ENABLED:
            raise ValidationError("Two-factor authentication is already enabled.", code="two_factor_already_enabled")
        secret = self.generate_secret()
        uri = self.provisioning_uri(user.email, secret)
        enrollment = TwoFactorEnrollment(qr_code=self.render_qr_code(uri), provisioning_uri=uri, secret=secret)
        self.store.update_user(user_id, two_factor_secret=encrypt_pii(secret, self._key), two_factor_enabled=False)
        audit.record(self.store, AuditAction.TWO_FACTOR_INIT, AuditStatus.SUCCESS, user_id=user_id, client=client)
        return enrollment

    def confirm(self, user_id: int, code: str, client: ClientInfo | None = None) -> list[str]:
        """Verify the first code from the authenticator and switch 2FA on.

        Returns the plaintext backup codes. They are shown once and only
        their hashes are kept.
        """
        user = self._require_user(user_id)
        if user.two_factor_state is not TwoFactorState.PENDING:
            raise ValidationError(
                "Two-factor setup has not been started or is already complete.", code="two_factor_not_pending"
            )
        secret = self._decrypt_secret(user)
        if not self.verify(code, secret):
            audit.record(
                self.store,
                AuditAction.TWO_FACTOR_ENABLED,
                AuditStatus.FAILURE,
                user_id=user_id,
                client=client,
                reason="2FA_INVALID",
            )
            raise InvalidTwoFactorCode()
        self.store.update_user(user_id, two_factor_enabled=True)
        codes = self._replace_backup_codes(user_id)
        audit.record(self.store, AuditAction.TWO_FACTOR_ENABLED, AuditStatus.SUCCESS, user_id=user_id, client=client)
        logger.info("Two-factor enabled for user %s", user_id)
        return codes

    def disable(
        self,
        user_id: int,
        password: str | None = None,
        code: str | None = None,
        client: ClientInfo | None = None,
    ) -> None:
        """Turn 2FA off and purge the secret and every backup code."""
        user = self._require_user(user_id)
        if user.has_password:
            if not password or not verify_password(password, user.password_hash):
                audit.record(
                    self.store,
                    AuditAction.TWO_FACTOR_DISABLED,
                    AuditStatus.FAILURE,
                    user_id=user_id,
                    client=client,
                    reason="INVALID_PASSWORD",
                )
                raise InvalidCredentials("Password is incorrect.")
        elif user.two_factor_enabled:
            if not code or self.verify_login_code(user, code) is None:
                raise InvalidTwoFactorCode()
        self.store.update_user(user_id, two_factor_enabled=False, two_factor_secret=None)
        self.store.delete_backup_codes_for_user(user_id)
        audit.record(self.store, AuditAction.TWO_FACTOR_DISABLED, AuditStatus.SUCCESS, user_id=user_id, client=client)
        logger.info("Two-factor disabled for user %s", user_id)

    # ------------------------------------------------------------------
    # Login-time verification and backup codes
    # ------------------------------------------------------------------

    def verify_login_code(self, user: User, code: str) -> str | None:
        """Accept a TOTP code or an unused backup code for an ENABLED user.

        Returns the method that matched ("totp" or "backup_code"), or None.
        A matching backup code is consumed.
        """
        if not user.two_factor_enabled or not code:
            return None
        code = code.strip()
        if _TOTP_RE.match(code):
            return METHOD_TOTP if self.verify(code, self._decrypt_secret(user)) else None
        if _BACKUP_RE.match(code):
            if self.store.consume_backup_code(user.id, hash_one_way(code)):
                logger.info("Backup code consumed for user %s", user.id)
                return METHOD_BACKUP
        return None

    def regenerate_backup_codes(self, user_id: int, code: str, client: ClientInfo | None = None) -> list[str]:
        """Replace the backup-code batch. Requires a current TOTP code."""
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled.", code="two_factor_not_enabled")
        if not self.verify(code, self._decrypt_secret(user)):
            raise InvalidTwoFactorCode()
        codes = self._replace_backup_codes(user_id)
        audit.record(
            self.store, AuditAction.BACKUP_CODES_REGENERATE, AuditStatus.SUCCESS, user_id=user_id, client=client
        )
        return codes

    def backup_codes_remaining(self, user_id: int) -> int:
        return self.store.count_backup_codes(user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _decrypt_secret(self, user: User) -> str:
        if not user.two_factor_secret:
            raise ValidationError("Two-factor secret is missing.", code="two_factor_not_configured")
        try:
            return decrypt_pii(user.two_factor_secret, self._key)
        except DecryptionError:
            logger.error("Stored two-factor secret for user %s could not be decrypted", user.id)
            raise

    def _replace_backup_codes(self, user_id: int) -> list[str]:
        codes = generate_backup_codes(self.backup_code_count)
        self.store.delete_backup_codes_for_user(user_id)
        self.store.create_backup_codes(user_id, [hash_one_way(c) for c in codes])
        return codes
