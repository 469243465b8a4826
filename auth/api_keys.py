"""
auth/api_keys.py -- Issuance, validation, and revocation of API keys.

Security design decisions:
  Secret: generate_random_secret(32) -> 64 hex chars, 256 bits of entropy.
       Only SHA-256(raw_key) is stored. Lookup is an exact match on the hash
       through a UNIQUE index; no secret material is ever compared by prefix.

  Preview: first 8 characters plus "..." so users can tell keys apart. Eight
       hex chars reveal 32 of 256 bits, which leaves the rest infeasible.

  One-time reveal: create() returns the plaintext once. list_keys() returns
       metadata only and there is no operation that can recover the key.

  Owner scoping: deactivate() and delete() act only on keys owned by the
       caller. A key id belonging to someone else is reported as NotFound,
       the same as an id that does not exist.

  Cap: at most API_KEY_LIMIT (10) active keys per user, so a compromised
       account cannot mint an unbounded number of credentials.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from auth import audit
from auth.models import ApiKey, ApiKeyIdentity, AuditAction, AuditStatus, ClientInfo, CreatedApiKey
from auth.store import CredentialStore
from core.crypto import generate_random_secret, hash_one_way
from core.errors import AccountInactive, AccountLocked, InvalidCredentials, NotFound, ValidationError

logger = logging.getLogger("authvault.auth.api_keys")

VALID_SCOPES = ("read", "write", "admin")
DEFAULT_SCOPES = ["read"]
PREVIEW_LENGTH = 8
MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class ApiKeyManager:
    def __init__(self, store: CredentialStore, max_keys: int = 10) -> None:
        self.store = store
        self.max_keys = max_keys

    def create(
        self,
        user_id: int,
        name: str,
        scopes: list[str] | None = None,
        expires_at: datetime | None = None,
        client: ClientInfo | None = None,
    ) -> CreatedApiKey:
        name = (name or "").strip()
        if not MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH:
            raise ValidationError(f"Key name must be {MIN_NAME_LENGTH}-{MAX_NAME_LENGTH} characters.")
        scopes = self._validate_scopes(DEFAULT_SCOPES if scopes is None else scopes)
        if expires_at is not None:
            expires_at = _aware(expires_at)
            if expires_at <= _utcnow():
                raise ValidationError("Expiry must be in the future.")
        if self.store.count_active_api_keys(user_id) >= self.max_keys:
            raise ValidationError(
                f"Maximum of {self.max_keys} active API keys per user. Deactivate an existing key first.",
                code="key_limit_reached",
            )

        raw_key = generate_random_secret(32)
        metadata = self.store.create_api_key(
            ApiKey(
                user_id=user_id,
                name=name,
                key_hash=hash_one_way(raw_key),
                key_preview=raw_key[:PREVIEW_LENGTH] + "...",
                scopes=scopes,
                expires_at=expires_at,
            )
        )
        audit.record(
            self.store,
            AuditAction.API_KEY_CREATE,
            AuditStatus.SUCCESS,
            user_id=user_id,
            client=client,
            resource_id=metadata.id,
            name=name,
            scopes=scopes,
        )
        return CreatedApiKey(api_key=raw_key, metadata=metadata)

    def list_keys(self, user_id: int) -> list[ApiKey]:
        return self.store.list_api_keys_for_user(user_id)

    def validate(self, raw_key: str) -> ApiKeyIdentity:
        """Resolve a presented key to its owner and scopes, or raise.

        Unknown, inactive and expired keys are all InvalidCredentials so a
        caller cannot probe which keys once existed.
        """
        if not raw_key:
            raise InvalidCredentials("Invalid API key.")
        key = self.store.find_api_key_by_hash(hash_one_way(raw_key))
        if key is None or not key.is_active:
            raise InvalidCredentials("Invalid API key.")
        if key.expires_at is not None and key.expires_at <= _utcnow():
            raise InvalidCredentials("API key has expired.")
        user = self.store.find_user_by_id(key.user_id)
        if user is None or not user.is_active:
            raise AccountInactive()
        if user.is_locked:
            raise AccountLocked()
        self.store.update_api_key(key.id, last_used_at=_utcnow())
        return ApiKeyIdentity(user_id=user.id, email=user.email, scopes=tuple(key.scopes), key_id=key.id)

    def deactivate(self, user_id: int, key_id: int, client: ClientInfo | None = None) -> ApiKey:
        key = self._owned_key(user_id, key_id)
        self.store.update_api_key(key.id, is_active=False)
        audit.record(
            self.store, AuditAction.API_KEY_DEACTIVATE, AuditStatus.SUCCESS, user_id=user_id, client=client, resource_id=key_id
        )
        return self.store.find_api_key(key.id)

    def delete(self, user_id: int, key_id: int, client: ClientInfo | None = None) -> None:
        if not self.store.delete_api_key(key_id, user_id):
            raise NotFound("API key not found.")
        audit.record(
            self.store, AuditAction.API_KEY_DELETE, AuditStatus.SUCCESS, user_id=user_id, client=client, resource_id=key_id
        )

    # ------------------------------------------------------------------

    def _owned_key(self, user_id: int, key_id: int) -> ApiKey:
        key = self.store.find_api_key(key_id)
        if key is None or key.user_id != user_id:
            raise NotFound("API key not found.")
        return key

    @staticmethod
    def _validate_scopes(scopes: list[str]) -> list[str]:
        if not scopes:
            raise ValidationError("At least one scope is required.")
        unknown = [s for s in scopes if s not in VALID_SCOPES]
        if unknown:
            raise ValidationError(f"Unknown scopes: {', '.join(unknown)}. Allowed: {', '.join(VALID_SCOPES)}.")
        # de-duplicate, keep the canonical order
        return [s for s in VALID_SCOPES if s in scopes]
