"""
auth/sessions.py -- Registration, login, logout, refresh, and federated login.

AuthSessionManager is the orchestrator that ties the primitives together:
password hashing (core.crypto), tokens (auth.tokens), the second factor
(auth.two_factor), and persistence (auth.store).

Login is a sequence of guarded transitions, checked in this order:
  1. unknown email / no password hash  -> InvalidCredentials
  2. account locked                    -> AccountLocked (password not consulted)
  3. wrong password                    -> atomic counter++ (lock at threshold),
                                          InvalidCredentials
     account inactive                  -> AccountInactive
  4. 2FA on, no code supplied          -> TwoFactorRequired result, no session
  5. 2FA code wrong                    -> InvalidTwoFactorCode
  6. success                           -> token pair + Session row, counter reset

Security notes:
  Timing equalization: step 1 still runs bcrypt against a dummy hash so an
  unknown email costs the same as a wrong password. Both failures carry the
  same message, so neither timing nor wording reveals whether an account
  exists.

  Wrong second-factor codes do not count toward the password lockout. The
  attacker has already proven the password at that point, and TOTP guessing
  is bounded by the audit trail and the route rate limit.

  Lockout does not expire on its own. unlock() is the administrative way out.

  Federated identities are only trusted when the provider vouches for the
  email. Linking an unverified email to an existing account would let anyone
  who can register that address at the provider take the account over.
  The reverse also holds: a local account with a password but no verified
  email is never linked, or the password's setter would share the account
  with the address owner. Refused and locked logins change nothing on the row.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from auth import audit
from auth.models import (
    AuditAction,
    AuditStatus,
    ClientInfo,
    FederatedIdentity,
    LoginResult,
    LoginSuccess,
    Principal,
    Provider,
    Registration,
    Session,
    TokenPair,
    TwoFactorRequired,
    User,
)
from auth.store import CredentialStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorService
from core.config import get_settings
from core.crypto import (
    constant_time_equals,
    generate_random_secret,
    hash_one_way,
    hash_password,
    mask_email,
    verify_password,
)
from core.errors import (
    AccountInactive,
    AccountLocked,
    EmailTaken,
    InvalidCredentials,
    InvalidTwoFactorCode,
    NotFound,
    TokenExpired,
    TokenInvalid,
)

logger = logging.getLogger("authvault.auth.sessions")


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    """bcrypt hash used to equalize timing for unknown emails.

    Built once, on first use, at the configured cost so it takes as long to
    check as a real user's hash.
    """
    return hash_password("authvault_timing_dummy")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthSessionManager:
    """Account and session lifecycle on top of one CredentialStore."""

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        two_factor: TwoFactorService,
        session_ttl: timedelta = timedelta(days=7),
        max_failed_attempts: int = 5,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.two_factor = two_factor
        self.session_ttl = session_ttl
        self.max_failed_attempts = max_failed_attempts

    @classmethod
    def from_settings(
        cls, store: CredentialStore, tokens: TokenService, two_factor: TwoFactorService, settings=None
    ) -> AuthSessionManager:
        settings = settings or get_settings()
        return cls(
            store,
            tokens,
            two_factor,
            session_ttl=timedelta(days=settings.session_ttl_days),
            max_failed_attempts=settings.max_failed_login_attempts,
        )

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        client: ClientInfo | None = None,
    ) -> Registration:
        """Create an EMAIL account and return it with a verification token.

        Only the SHA-256 of the verification token is stored; delivering the
        plaintext token (email) is the caller's job.
        """
        email = normalize_email(email)
        if self.store.find_user_by_email(email) is not None:
            raise EmailTaken()
        verification_token = generate_random_secret(32)
        # create_user raises EmailTaken itself if a concurrent request wins the race
        user = self.store.create_user(
            User(
                email=email,
                password_hash=hash_password(password),
                provider=Provider.EMAIL,
                name=name,
                email_verified=False,
                verification_token_hash=hash_one_way(verification_token),
            )
        )
        audit.record(self.store, AuditAction.REGISTER, AuditStatus.SUCCESS, user_id=user.id, client=client)
        logger.info("Registered user %s (%s)", user.id, mask_email(email))
        return Registration(user=user, verification_token=verification_token)

    def verify_email(self, token: str, client: ClientInfo | None = None) -> User:
        """Mark the account owning `token` as verified. Tokens are single-use."""
        user = self.store.find_user_by_verification_hash(hash_one_way(token)) if token else None
        if user is None:
            raise TokenInvalid("Verification token is invalid or already used.")
        self.store.update_user(user.id, email_verified=True, verification_token_hash=None)
        audit.record(self.store, AuditAction.EMAIL_VERIFY, AuditStatus.SUCCESS, user_id=user.id, client=client)
        return self.store.find_user_by_id(user.id)

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        two_factor_code: str | None = None,
        client: ClientInfo | None = None,
    ) -> LoginResult:
        """Authenticate with email and password (and a second factor when enabled).

        Returns LoginSuccess, or TwoFactorRequired when the password is right
        but a code is still needed. Every rejection is raised.
        """
        email = normalize_email(email)
        user = self.store.find_user_by_email(email)

        if user is None or not user.has_password:
            verify_password(password, _dummy_hash())
            audit.record(
                self.store,
                AuditAction.LOGIN,
                AuditStatus.FAILURE,
                user_id=user.id if user else None,
                client=client,
                email=mask_email(email),
                reason="UNKNOWN_ACCOUNT" if user is None else "NO_PASSWORD",
            )
            raise InvalidCredentials()

        if user.is_locked:
            audit.record(
                self.store, AuditAction.LOGIN, AuditStatus.FAILURE, user_id=user.id, client=client, reason="LOCKED"
            )
            raise AccountLocked()

        if not verify_password(password, user.password_hash):
            updated = self.store.record_failed_login(user.id, self.max_failed_attempts)
            locked = bool(updated and updated.is_locked)
            audit.record(
                self.store,
                AuditAction.LOGIN,
                AuditStatus.FAILURE,
                user_id=user.id,
                client=client,
                reason="INVALID_PASSWORD",
                attempts=updated.failed_login_attempts if updated else None,
                locked=locked,
            )
            if locked:
                logger.warning("User %s locked after %d failed attempts", user.id, updated.failed_login_attempts)
            raise InvalidCredentials()

        if not user.is_active:
            audit.record(
                self.store, AuditAction.LOGIN, AuditStatus.FAILURE, user_id=user.id, client=client, reason="INACTIVE"
            )
            raise AccountInactive()

        method = None
        if user.two_factor_enabled:
            if not two_factor_code:
                return TwoFactorRequired(user_id=user.id)
            method = self.two_factor.verify_login_code(user, two_factor_code)
            if method is None:
                audit.record(
                    self.store,
                    AuditAction.LOGIN,
                    AuditStatus.FAILURE,
                    user_id=user.id,
                    client=client,
                    reason="2FA_INVALID",
                )
                raise InvalidTwoFactorCode()

        details = {"two_factor_method": method} if method else {}
        return self._issue_session(user, client, **details)

    # ------------------------------------------------------------------
    # Logout and refresh
    # ------------------------------------------------------------------

    def logout(self, principal: Principal, client: ClientInfo | None = None) -> None:
        """Revoke the caller's session. Logging out twice is not an error."""
        revoked = self.store.revoke_session_token(principal.token)
        audit.record(
            self.store,
            AuditAction.LOGOUT,
            AuditStatus.SUCCESS,
            user_id=principal.user_id,
            client=client,
            resource_id=principal.session_id,
        )
        logger.info("User %s logged out (%d session rows revoked)", principal.user_id, revoked)

    def refresh(self, refresh_token: str, client: ClientInfo | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair, rotating both on the same session.

        The old access token stops authorizing immediately because the
        session row no longer carries it.
        """
        claims = self.tokens.verify_refresh_token(refresh_token)
        session = self.store.find_session_by_refresh_token(refresh_token)
        if (
            session is None
            or session.is_revoked
            or session.user_id != claims.user_id
            or not constant_time_equals(session.refresh_token, refresh_token)
        ):
            raise TokenInvalid("Session has been revoked.", code="session_revoked")
        if session.expires_at <= _utcnow():
            raise TokenExpired("Session has expired.")
        user = self._require_usable_user(session.user_id)
        pair = self.tokens.issue_token_pair(user.id, user.email)
        self.store.update_session(
            session.id,
            token=pair.access_token,
            refresh_token=pair.refresh_token,
            last_activity_at=_utcnow(),
        )
        audit.record(
            self.store,
            AuditAction.TOKEN_REFRESH,
            AuditStatus.SUCCESS,
            user_id=user.id,
            client=client,
            resource_id=session.id,
        )
        return pair

    # ------------------------------------------------------------------
    # Federated login
    # ------------------------------------------------------------------

    def federated_login(self, identity: FederatedIdentity, client: ClientInfo | None = None) -> LoginSuccess:
        """Find-or-create the account for a provider identity and open a session.

        Matching is by (provider, provider_id) first, then by email. Password
        and 2FA state are never touched.
        """
        if not identity.provider_verified_email:
            audit.record(
                self.store,
                AuditAction.LOGIN,
                AuditStatus.FAILURE,
                client=client,
                provider=identity.provider.value,
                email=mask_email(identity.email),
                reason="UNVERIFIED_EMAIL",
            )
            raise InvalidCredentials("The identity provider has not verified this email address.")

        email = normalize_email(identity.email)
        user = self.store.find_user_by_provider(identity.provider, identity.provider_id)
        if user is None:
            user = self.store.find_user_by_email(email)
            if user is not None and user.has_password and not user.email_verified:
                # Whoever set that password never proved they own the address.
                audit.record(
                    self.store,
                    AuditAction.LOGIN,
                    AuditStatus.FAILURE,
                    user_id=user.id,
                    client=client,
                    provider=identity.provider.value,
                    reason="UNVERIFIED_LOCAL_ACCOUNT",
                )
                raise InvalidCredentials(
                    "An unverified account already uses this email address. Verify it before linking a provider."
                )

        if user is None:
            try:
                user = self.store.create_user(
                    User(
                        email=email,
                        provider=identity.provider,
                        provider_id=identity.provider_id,
                        name=identity.display_name,
                        profile_image=identity.avatar_url,
                        email_verified=True,
                    )
                )
            except EmailTaken:
                # lost a race with a concurrent first login for the same email
                user = self.store.find_user_by_email(email)
                if user is None:
                    raise
            else:
                audit.record(
                    self.store,
                    AuditAction.REGISTER,
                    AuditStatus.SUCCESS,
                    user_id=user.id,
                    client=client,
                    provider=identity.provider.value,
                )
                logger.info("Created %s account %s", identity.provider.value, user.id)

        if user.is_locked or not user.is_active:
            audit.record(
                self.store,
                AuditAction.LOGIN,
                AuditStatus.FAILURE,
                user_id=user.id,
                client=client,
                provider=identity.provider.value,
                reason="LOCKED" if user.is_locked else "INACTIVE",
            )
            raise AccountLocked() if user.is_locked else AccountInactive()

        updates: dict = {"email_verified": True}
        if user.provider_id is None:
            updates.update(provider=identity.provider, provider_id=identity.provider_id)
        if not user.name and identity.display_name:
            updates["name"] = identity.display_name
        if identity.avatar_url and identity.avatar_url != user.profile_image:
            updates["profile_image"] = identity.avatar_url
        self.store.update_user(user.id, **updates)

        user = self._require_usable_user(user.id)
        return self._issue_session(user, client, provider=identity.provider.value)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def unlock(self, user_id: int, client: ClientInfo | None = None) -> None:
        """Clear a lockout and reset the failed-attempt counter."""
        if not self.store.update_user(user_id, is_locked=False, failed_login_attempts=0):
            raise NotFound("User not found.")
        audit.record(self.store, AuditAction.ACCOUNT_UNLOCK, AuditStatus.SUCCESS, user_id=user_id, client=client)
        logger.info("User %s unlocked", user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_usable_user(self, user_id: int) -> User:
        user = self.store.find_user_by_id(user_id)
        if user is None:
            raise TokenInvalid("Account no longer exists.")
        if user.is_locked:
            raise AccountLocked()
        if not user.is_active:
            raise AccountInactive()
        return user

    def _issue_session(self, user: User, client: ClientInfo | None, **details) -> LoginSuccess:
        client = client or ClientInfo()
        now = _utcnow()
        pair = self.tokens.issue_token_pair(user.id, user.email)
        session = self.store.create_session(
            Session(
                user_id=user.id,
                token=pair.access_token,
                refresh_token=pair.refresh_token,
                expires_at=now + self.session_ttl,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                last_activity_at=now,
            )
        )
        self.store.update_user(user.id, failed_login_attempts=0, last_login_at=now)
        audit.record(
            self.store,
            AuditAction.LOGIN,
            AuditStatus.SUCCESS,
            user_id=user.id,
            client=client,
            resource_id=session.id,
            **details,
        )
        return LoginSuccess(user=self.store.find_user_by_id(user.id), tokens=pair, session=session)
