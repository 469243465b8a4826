"""
auth/profile.py -- Profile reads and writes with field-level PII encryption,
password change, and account deletion.

Encrypted at rest (AES-256-GCM envelopes, see core.crypto):
  phone_number, address, date_of_birth
Plaintext:
  bio, website, timezone, language

A stored envelope that fails to decrypt raises DecryptionError for the whole
read. Returning the other fields with a hole in them would hide key rotation
mistakes and tampering.

change_password() revokes every session of the user, including the one that
made the request, so a stolen token stops working the moment the owner
changes the password.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth import audit
from auth.models import AuditAction, AuditStatus, ClientInfo, User, UserProfile
from auth.store import CredentialStore
from core.crypto import decrypt_pii, encrypt_pii, hash_password, verify_password
from core.errors import InvalidCredentials, NotFound, ValidationError

logger = logging.getLogger("authvault.auth.profile")

ENCRYPTED_FIELDS = ("phone_number", "address", "date_of_birth")
PLAIN_FIELDS = ("bio", "website", "timezone", "language")
USER_FIELDS = ("name", "profile_image")


@dataclass(frozen=True)
class ProfileView:
    """Decrypted profile joined with the owning user's public fields."""

    user: User
    phone_number: str | None = None
    address: str | None = None
    date_of_birth: str | None = None
    bio: str | None = None
    website: str | None = None
    timezone: str | None = None
    language: str | None = None


class ProfileGuard:
    def __init__(self, store: CredentialStore, encryption_key: str) -> None:
        self.store = store
        self._key = encryption_key

    def get_profile(self, user_id: int) -> ProfileView:
        user = self._require_user(user_id)
        return self._view(user, self.store.get_profile(user_id))

    def update_profile(self, user_id: int, changes: dict, client: ClientInfo | None = None) -> ProfileView:
        """Apply a partial update. Keys absent from `changes` are left alone;
        a key present with value None clears the field."""
        allowed = set(ENCRYPTED_FIELDS) | set(PLAIN_FIELDS) | set(USER_FIELDS)
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        user = self._require_user(user_id)

        user_updates = {k: v for k, v in changes.items() if k in USER_FIELDS}
        if user_updates:
            self.store.update_user(user_id, **user_updates)

        profile_updates = {}
        for name in ENCRYPTED_FIELDS:
            if name in changes:
                value = changes[name]
                profile_updates[name] = encrypt_pii(value, self._key) if value else None
        for name in PLAIN_FIELDS:
            if name in changes:
                profile_updates[name] = changes[name]

        profile = self.store.upsert_profile(user_id, **profile_updates) if profile_updates else None
        audit.record(
            self.store,
            AuditAction.PROFILE_UPDATE,
            AuditStatus.SUCCESS,
            user_id=user_id,
            client=client,
            fields=sorted(changes),
        )
        if user_updates:
            user = self._require_user(user_id)
        return self._view(user, profile or self.store.get_profile(user_id))

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        client: ClientInfo | None = None,
    ) -> int:
        """Replace the password and revoke every session. Returns sessions revoked."""
        user = self._require_user(user_id)
        if not user.has_password:
            raise ValidationError("This account signs in through an external provider and has no password.")
        if not verify_password(current_password, user.password_hash):
            audit.record(
                self.store,
                AuditAction.PASSWORD_CHANGE,
                AuditStatus.FAILURE,
                user_id=user_id,
                client=client,
                reason="INVALID_PASSWORD",
            )
            raise InvalidCredentials("Current password is incorrect.")
        self.store.update_user(user_id, password_hash=hash_password(new_password))
        revoked = self.store.revoke_sessions_for_user(user_id)
        audit.record(
            self.store,
            AuditAction.PASSWORD_CHANGE,
            AuditStatus.SUCCESS,
            user_id=user_id,
            client=client,
            sessions_revoked=revoked,
        )
        logger.info("Password changed for user %s; %d sessions revoked", user_id, revoked)
        return revoked

    def delete_account(self, user_id: int, password: str | None = None, client: ClientInfo | None = None) -> None:
        """Delete the account and everything it owns.

        Password-backed accounts must confirm with the password. Federated
        accounts have none to give and are deleted on the session alone.
        """
        user = self._require_user(user_id)
        if user.has_password and (not password or not verify_password(password, user.password_hash)):
            audit.record(
                self.store,
                AuditAction.ACCOUNT_DELETE,
                AuditStatus.FAILURE,
                user_id=user_id,
                client=client,
                reason="INVALID_PASSWORD",
            )
            raise InvalidCredentials("Password is incorrect.")
        # audited before the delete so the row still references a real user id
        audit.record(self.store, AuditAction.ACCOUNT_DELETE, AuditStatus.SUCCESS, user_id=user_id, client=client)
        self.store.delete_user(user_id)
        logger.info("Deleted user %s", user_id)

    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _view(self, user: User, profile: UserProfile | None) -> ProfileView:
        if profile is None:
            return ProfileView(user=user)
        decrypted = {
            name: decrypt_pii(getattr(profile, name), self._key) if getattr(profile, name) else None
            for name in ENCRYPTED_FIELDS
        }
        return ProfileView(user=user, **decrypted, **{name: getattr(profile, name) for name in PLAIN_FIELDS})
