"""
core/crypto.py -- Cryptographic primitives for AuthVault.

Everything that touches key material, hashing, or randomness lives here so the
services above never import bcrypt, cryptography, or secrets directly.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Cost factor comes
       from Settings.bcrypt_rounds (12 by default; tests lower it to 4).
       bcrypt only looks at the first 72 bytes of its input and bcrypt 4.x
       raises on longer input, so hash_password() rejects it up front with a
       ValidationError instead of silently truncating.

  PII: AES-256-GCM via cryptography's AESGCM. Envelope format is three hex
       fields "nonce:tag:ciphertext". A fresh 96-bit nonce per call means the
       same plaintext never encrypts to the same envelope twice. GCM's tag
       makes any bit flip in nonce, tag, or ciphertext fail decryption with
       DecryptionError rather than yield altered plaintext.

  Keys: fit_key() pads with ASCII "0" and truncates to exactly 32 bytes.
       A too-short key from the environment therefore degrades entropy but
       never raises or selects a different AES variant.

  One-way digests: SHA-256 for API keys, backup codes, and email
       verification tokens. Those inputs are already high-entropy, so the
       deliberate slowness bcrypt brings to low-entropy passwords buys
       nothing and would make every API call pay ~250ms.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets

import bcrypt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import get_settings
from core.errors import DecryptionError, EncryptionError, ValidationError

logger = logging.getLogger("authvault.crypto")

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
BCRYPT_MAX_BYTES = 72

# Extra random bytes drawn beyond what the range needs. With 8 spare bytes the
# modulo bias of secure_random_int() is below 2**-64.
_RANDOM_HEADROOM_BYTES = 8

# ---------------------------------------------------------------------------
# Password hashing (bcrypt)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Raises ValidationError if the UTF-8 encoding exceeds bcrypt's 72-byte
    input limit.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes.")
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises: a malformed hash or oversize input is simply a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# ---------------------------------------------------------------------------
# Key fitting
# ---------------------------------------------------------------------------


def fit_key(key: str | bytes, length: int = KEY_LENGTH) -> bytes:
    """Pad with ASCII '0' or truncate so the key is exactly `length` bytes."""
    raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    return raw.ljust(length, b"0")[:length]


# ---------------------------------------------------------------------------
# PII encryption (AES-256-GCM)
# ---------------------------------------------------------------------------


def encrypt_pii(plaintext: str, key: str | bytes) -> str:
    """Encrypt a string and return the "nonce:tag:ciphertext" hex envelope.

    AESGCM.encrypt() returns ciphertext with the 16-byte tag appended; the
    tag is split off so the envelope carries it as its own field.
    """
    try:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = AESGCM(fit_key(key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    except (ValueError, TypeError, AttributeError) as exc:
        logger.error("PII encryption failed: %s", type(exc).__name__)
        raise EncryptionError() from exc
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_pii(envelope: str, key: str | bytes) -> str:
    """Decrypt a "nonce:tag:ciphertext" envelope produced by encrypt_pii().

    Raises DecryptionError on a malformed envelope, a wrong key, or any
    tampering. Never returns partially decrypted data.
    """
    parts = envelope.split(":") if isinstance(envelope, str) else []
    if len(parts) != 3:
        raise DecryptionError("Malformed ciphertext envelope.")
    try:
        nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
    except ValueError as exc:
        raise DecryptionError("Malformed ciphertext envelope.") from exc
    if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
        raise DecryptionError("Malformed ciphertext envelope.")
    try:
        plaintext = AESGCM(fit_key(key)).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError() from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError() from exc


# ---------------------------------------------------------------------------
# Random secrets and one-way digests
# ---------------------------------------------------------------------------


def generate_random_secret(byte_length: int = 32) -> str:
    """Return `byte_length` CSPRNG bytes as a hex string (2x chars)."""
    return secrets.token_hex(byte_length)


def hash_one_way(value: str) -> str:
    """SHA-256 hex digest. Only for high-entropy inputs, never passwords."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def secure_random_int(minimum: int, maximum: int) -> int:
    """Return a CSPRNG integer in the inclusive range [minimum, maximum].

    Draws enough bytes to cover the range plus headroom and reduces modulo
    the range size. No rejection loop, so the call always finishes in one draw.
    """
    if minimum > maximum:
        raise ValidationError("minimum must not exceed maximum.")
    if minimum == maximum:
        return minimum
    span = maximum - minimum + 1
    byte_count = (span.bit_length() + 7) // 8 + _RANDOM_HEADROOM_BYTES
    value = int.from_bytes(secrets.token_bytes(byte_count), "big")
    return minimum + value % span


def mask_email(email: str) -> str:
    """Return a log-safe form of an email address, e.g. 'a***@example.com'."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    head = local[:1] if local else ""
    return f"{head}***@{domain}"
