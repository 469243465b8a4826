"""Unit tests for core/config.py -- secret policy enforced by Settings.

Settings is constructed directly with keyword arguments so these tests do not
depend on (or disturb) the cached get_settings() instance.
"""

import pytest
from pydantic import ValidationError

from core.config import Settings

_SECRETS = {
    "secret_key": "s" * 32,
    "encryption_key": "e" * 32,
    "jwt_access_secret": "a" * 32,
    "jwt_refresh_secret": "r" * 32,
}


class TestSecretPolicy:
    def test_debug_generates_missing_secrets(self):
        s = Settings(
            debug=True, secret_key="", encryption_key="", jwt_access_secret="", jwt_refresh_secret="", _env_file=None
        )
        assert len(s.secret_key) == 64
        assert s.jwt_access_secret != s.jwt_refresh_secret

    def test_production_requires_every_secret(self):
        with pytest.raises(ValidationError, match="ENCRYPTION_KEY"):
            Settings(debug=False, **{**_SECRETS, "encryption_key": ""}, _env_file=None)

    def test_production_accepts_full_configuration(self):
        s = Settings(debug=False, **_SECRETS, _env_file=None)
        assert s.encryption_key == "e" * 32

    def test_identical_jwt_secrets_rejected(self):
        with pytest.raises(ValidationError, match="must be different"):
            Settings(debug=False, **{**_SECRETS, "jwt_refresh_secret": "a" * 32}, _env_file=None)

    def test_short_secret_only_warns(self, caplog):
        s = Settings(debug=False, **{**_SECRETS, "secret_key": "short"}, _env_file=None)
        assert s.secret_key == "short"
        assert "shorter than 32" in caplog.text

    def test_lockout_threshold_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(debug=True, max_failed_login_attempts=0, _env_file=None)


class TestDefaults:
    def test_policy_defaults(self):
        s = Settings(debug=True, _env_file=None)
        assert s.access_token_ttl_minutes == 15
        assert s.refresh_token_ttl_days == 7
        assert s.max_failed_login_attempts == 5
        assert s.api_key_limit == 10
        assert s.backup_code_count == 10
