"""Unit tests for auth/api_keys.py -- ApiKeyManager.

Covers:
- create(): one-time plaintext, hash-only storage, preview, scope/name/expiry rules
- the per-user active key cap
- validate(): unknown, inactive, expired keys and unusable owners
- deactivate()/delete() owner scoping
"""

from datetime import datetime, timedelta, timezone

import pytest

from auth.api_keys import ApiKeyManager
from auth.models import User
from core.crypto import hash_one_way
from core.errors import AccountInactive, AccountLocked, InvalidCredentials, NotFound, ValidationError


@pytest.fixture
def manager(store) -> ApiKeyManager:
    return ApiKeyManager(store, max_keys=3)


@pytest.fixture
def alice(store) -> User:
    return store.create_user(User(email="alice@example.com", password_hash="x"))


@pytest.fixture
def bob(store) -> User:
    return store.create_user(User(email="bob@example.com", password_hash="x"))


class TestCreate:
    def test_plaintext_returned_once_and_only_hash_stored(self, store, manager, alice):
        created = manager.create(alice.id, "ci pipeline", scopes=["read", "write"])
        assert len(created.api_key) == 64
        assert created.metadata.key_hash == hash_one_way(created.api_key)
        assert created.metadata.key_preview == created.api_key[:8] + "..."
        listed = manager.list_keys(alice.id)
        assert listed[0].id == created.metadata.id
        assert created.api_key not in repr(listed)

    def test_default_scope_is_read(self, manager, alice):
        assert manager.create(alice.id, "reader").metadata.scopes == ["read"]

    def test_duplicate_scopes_collapsed(self, manager, alice):
        assert manager.create(alice.id, "dupes", scopes=["read", "read", "write"]).metadata.scopes == ["read", "write"]

    @pytest.mark.parametrize("scopes", [[], ["delete"], ["read", "root"]])
    def test_invalid_scopes(self, manager, alice, scopes):
        with pytest.raises(ValidationError):
            manager.create(alice.id, "bad scopes", scopes=scopes)

    @pytest.mark.parametrize("name", ["", "ab", "x" * 101, "   "])
    def test_invalid_names(self, manager, alice, name):
        with pytest.raises(ValidationError):
            manager.create(alice.id, name)

    def test_expiry_must_be_in_future(self, manager, alice):
        with pytest.raises(ValidationError):
            manager.create(alice.id, "stale", expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))

    def test_cap_counts_active_keys_only(self, manager, alice):
        keys = [manager.create(alice.id, f"key {i}") for i in range(3)]
        with pytest.raises(ValidationError) as exc_info:
            manager.create(alice.id, "one too many")
        assert exc_info.value.code == "key_limit_reached"
        manager.deactivate(alice.id, keys[0].metadata.id)
        manager.create(alice.id, "fits again")


class TestValidate:
    def test_valid_key_resolves_owner_and_stamps_usage(self, store, manager, alice):
        created = manager.create(alice.id, "reader", scopes=["read"])
        identity = manager.validate(created.api_key)
        assert identity.user_id == alice.id
        assert identity.email == "alice@example.com"
        assert identity.scopes == ("read",)
        assert identity.has_scope("read") and not identity.has_scope("write")
        assert store.find_api_key(created.metadata.id).last_used_at is not None

    def test_admin_scope_implies_all(self, manager, alice):
        identity = manager.validate(manager.create(alice.id, "admin", scopes=["admin"]).api_key)
        assert identity.has_scope("write")

    def test_unknown_key(self, manager):
        with pytest.raises(InvalidCredentials):
            manager.validate("f" * 64)

    def test_deactivated_key(self, manager, alice):
        created = manager.create(alice.id, "short lived")
        manager.deactivate(alice.id, created.metadata.id)
        with pytest.raises(InvalidCredentials):
            manager.validate(created.api_key)

    def test_expired_key(self, store, manager, alice):
        created = manager.create(alice.id, "expiring", expires_at=datetime.now(timezone.utc) + timedelta(hours=1))
        store.update_api_key(created.metadata.id, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        with pytest.raises(InvalidCredentials):
            manager.validate(created.api_key)

    def test_locked_owner(self, store, manager, alice):
        created = manager.create(alice.id, "reader")
        store.update_user(alice.id, is_locked=True)
        with pytest.raises(AccountLocked):
            manager.validate(created.api_key)

    def test_inactive_owner(self, store, manager, alice):
        created = manager.create(alice.id, "reader")
        store.update_user(alice.id, is_active=False)
        with pytest.raises(AccountInactive):
            manager.validate(created.api_key)


class TestOwnership:
    def test_other_users_key_is_not_found(self, store, manager, alice, bob):
        created = manager.create(alice.id, "alice key")
        with pytest.raises(NotFound):
            manager.deactivate(bob.id, created.metadata.id)
        with pytest.raises(NotFound):
            manager.delete(bob.id, created.metadata.id)
        assert store.find_api_key(created.metadata.id).is_active is True

    def test_owner_can_delete(self, store, manager, alice):
        created = manager.create(alice.id, "alice key")
        manager.delete(alice.id, created.metadata.id)
        assert store.find_api_key(created.metadata.id) is None
        with pytest.raises(InvalidCredentials):
            manager.validate(created.api_key)
