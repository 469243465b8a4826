"""
auth/tokens.py -- JWT issuance and verification for access and refresh tokens.

Security design decisions:
  Algorithm: python-jose with HS256. Each token kind has its own signing key
       (JWT_ACCESS_SECRET, JWT_REFRESH_SECRET), fitted to 32 bytes by
       core.crypto.fit_key so a short key from the environment never fails.

  Type binding: the "type" claim is part of the signed payload. verify()
       picks the key from the claimed type, verifies the token fully with it,
       and only then compares the claimed type to the one the caller expects.
       A genuine refresh token presented as an access token therefore fails
       with TokenTypeMismatch, while a forged token fails with TokenInvalid.

  jti: every token carries a random jti, so two tokens minted in the same
       second for the same user are still distinct strings. Session rows are
       looked up by the exact token string and must never collide.

  A verified token is not authorization on its own. auth/dependencies.py
       also requires a live, unrevoked Session row for the token.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwk, jwt

from auth.models import TokenClaims, TokenPair
from core.config import Settings, get_settings
from core.crypto import fit_key
from core.errors import TokenExpired, TokenInvalid, TokenTypeMismatch

logger = logging.getLogger("authvault.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
_TOKEN_TYPES = (ACCESS, REFRESH)


class TokenService:
    """Issues and verifies the two JWT kinds.

    Usage:
        tokens = TokenService.from_settings(get_settings())
        pair = tokens.issue_token_pair(user.id, user.email)
        claims = tokens.verify_access_token(pair.access_token)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self._keys = {
            ACCESS: jwk.construct(fit_key(access_secret), _ALGORITHM),
            REFRESH: jwk.construct(fit_key(refresh_secret), _ALGORITHM),
        }
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> TokenService:
        settings = settings or get_settings()
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue(self, user_id: int, email: str, token_type: str) -> tuple[str, datetime]:
        """Encode one signed token. Returns (token, expires_at)."""
        if token_type not in _TOKEN_TYPES:
            raise ValueError(f"Unknown token type: {token_type!r}")
        now = datetime.now(timezone.utc)
        expires_at = now + self._ttls[token_type]
        payload = {
            "sub": str(user_id),
            "email": email,
            "type": token_type,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(payload, self._keys[token_type], algorithm=_ALGORITHM), expires_at

    def issue_token_pair(self, user_id: int, email: str) -> TokenPair:
        access_token, access_exp = self.issue(user_id, email, ACCESS)
        refresh_token, refresh_exp = self.issue(user_id, email, REFRESH)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_type: str) -> TokenClaims:
        """Verify signature, issuer, audience, expiry and type.

        Raises TokenExpired, TokenInvalid or TokenTypeMismatch.
        """
        claimed = self.decode_unverified(token).get("type")
        if claimed not in _TOKEN_TYPES:
            raise TokenInvalid()
        try:
            payload = jwt.decode(
                token,
                self._keys[claimed],
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenInvalid() from exc
        if claimed != expected_type:
            raise TokenTypeMismatch(f"Expected a {expected_type} token, got a {claimed} token.")
        try:
            return TokenClaims(
                user_id=int(payload["sub"]),
                email=payload["email"],
                token_type=claimed,
                jti=payload.get("jti", ""),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("Token is missing required claims.") from exc

    def verify_access_token(self, token: str) -> TokenClaims:
        return self.verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self.verify(token, REFRESH)

    # ------------------------------------------------------------------
    # Inspection helpers (no signature check -- never use for auth)
    # ------------------------------------------------------------------

    @staticmethod
    def decode_unverified(token: str) -> dict:
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenInvalid() from exc

    def expires_at(self, token: str) -> datetime | None:
        exp = self.decode_unverified(token).get("exp")
        return datetime.fromtimestamp(exp, tz=timezone.utc) if isinstance(exp, (int, float)) else None

    def is_expiring_soon(self, token: str, threshold: timedelta = timedelta(minutes=5)) -> bool:
        """True when the token expires within `threshold` (or has no exp at all)."""
        expires_at = self.expires_at(token)
        if expires_at is None:
            return True
        return expires_at - datetime.now(timezone.utc) <= threshold
