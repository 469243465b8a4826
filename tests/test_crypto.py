"""Unit tests for core/crypto.py -- password hashing, PII envelopes, randomness.

Covers:
- bcrypt hash/verify, 72-byte limit, malformed hashes are a mismatch
- AES-GCM envelope format, nonce freshness, tamper and wrong-key detection
- fit_key() padding and truncation
- secure_random_int() bounds
- mask_email() output
- constant_time_equals()
"""

import pytest

from core.crypto import (
    constant_time_equals,
    decrypt_pii,
    encrypt_pii,
    fit_key,
    generate_random_secret,
    hash_one_way,
    hash_password,
    mask_email,
    secure_random_int,
    verify_password,
)
from core.errors import DecryptionError, ValidationError

KEY = "k" * 32


class TestPasswordHashing:
    def test_hash_then_verify(self):
        hashed = hash_password("Str0ng!Pass")
        assert hashed.startswith("$2")
        assert verify_password("Str0ng!Pass", hashed)
        assert not verify_password("Str0ng!Pasz", hashed)

    def test_same_password_hashes_differently(self):
        assert hash_password("Str0ng!Pass") != hash_password("Str0ng!Pass")

    def test_password_over_72_bytes_rejected(self):
        with pytest.raises(ValidationError):
            hash_password("a" * 73)

    def test_multibyte_password_counted_in_bytes(self):
        # 25 x 3-byte characters = 75 bytes
        with pytest.raises(ValidationError):
            hash_password("€" * 25)

    def test_malformed_hash_is_a_mismatch(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestPiiEnvelope:
    def test_round_trip(self):
        envelope = encrypt_pii("010-1234-5678", KEY)
        assert decrypt_pii(envelope, KEY) == "010-1234-5678"

    def test_envelope_has_three_hex_fields(self):
        nonce, tag, ciphertext = encrypt_pii("hello", KEY).split(":")
        assert len(bytes.fromhex(nonce)) == 12
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("hello")

    def test_fresh_nonce_per_call(self):
        assert encrypt_pii("same", KEY) != encrypt_pii("same", KEY)

    def test_empty_string_round_trips(self):
        assert decrypt_pii(encrypt_pii("", KEY), KEY) == ""

    def test_wrong_key_fails(self):
        envelope = encrypt_pii("secret", KEY)
        with pytest.raises(DecryptionError):
            decrypt_pii(envelope, "x" * 32)

    def test_flipped_ciphertext_bit_fails(self):
        nonce, tag, ciphertext = encrypt_pii("secret", KEY).split(":")
        flipped = bytes([bytes.fromhex(ciphertext)[0] ^ 0x01]) + bytes.fromhex(ciphertext)[1:]
        with pytest.raises(DecryptionError):
            decrypt_pii(f"{nonce}:{tag}:{flipped.hex()}", KEY)

    def test_tampered_tag_fails(self):
        nonce, tag, ciphertext = encrypt_pii("secret", KEY).split(":")
        bad_tag = ("0" if tag[0] != "0" else "1") + tag[1:]
        with pytest.raises(DecryptionError):
            decrypt_pii(f"{nonce}:{bad_tag}:{ciphertext}", KEY)

    @pytest.mark.parametrize("field", [0, 1, 2], ids=["nonce", "tag", "ciphertext"])
    def test_flipping_any_byte_of_any_field_fails(self, field):
        parts = encrypt_pii("secret", KEY).split(":")
        raw = bytes.fromhex(parts[field])
        for position in range(len(raw)):
            mutated = list(parts)
            mutated[field] = (raw[:position] + bytes([raw[position] ^ 0x80]) + raw[position + 1 :]).hex()
            with pytest.raises(DecryptionError):
                decrypt_pii(":".join(mutated), KEY)

    @pytest.mark.parametrize("envelope", ["", "abc", "a:b", "zz:zz:zz", "00:00:00", "a:b:c:d"])
    def test_malformed_envelopes_fail(self, envelope):
        with pytest.raises(DecryptionError):
            decrypt_pii(envelope, KEY)

    def test_short_key_is_padded_not_rejected(self):
        envelope = encrypt_pii("value", "short")
        assert decrypt_pii(envelope, "short") == "value"


class TestFitKey:
    def test_pads_with_ascii_zero(self):
        assert fit_key("abc") == b"abc" + b"0" * 29

    def test_truncates_long_keys(self):
        assert fit_key("x" * 40) == b"x" * 32

    def test_bytes_accepted(self):
        assert len(fit_key(b"\x01\x02")) == 32


class TestRandomness:
    def test_secret_is_hex_of_requested_length(self):
        secret = generate_random_secret(32)
        assert len(secret) == 64
        int(secret, 16)

    def test_secure_random_int_stays_in_bounds(self):
        values = {secure_random_int(1, 6) for _ in range(500)}
        assert values <= set(range(1, 7))
        assert len(values) > 1, "Expected more than one distinct value in 500 draws"

    def test_secure_random_int_degenerate_range(self):
        assert secure_random_int(7, 7) == 7

    def test_secure_random_int_rejects_inverted_range(self):
        with pytest.raises(ValidationError):
            secure_random_int(10, 1)

    def test_hash_one_way_is_sha256_hex(self):
        assert hash_one_way("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestMaskEmail:
    def test_masks_local_part(self):
        assert mask_email("alice@example.com") == "a***@example.com"

    def test_no_at_sign(self):
        assert mask_email("garbage") == "***"


class TestConstantTimeEquals:
    def test_equal_strings(self):
        assert constant_time_equals("abc123", "abc123")

    @pytest.mark.parametrize("other", ["abc124", "abc12", "", "ABC123"])
    def test_different_strings(self, other):
        assert not constant_time_equals("abc123", other)

    def test_non_ascii_is_compared_by_utf8_bytes(self):
        assert constant_time_equals("päss", "päss")
        assert not constant_time_equals("päss", "pass")
