"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; the _row_to_* functions are the mappers.
Services never touch SQL directly, and every service receives the store it
works on through its constructor (the FastAPI lifespan owns the instance).

Security:
  All queries use bound parameters. No f-strings in SQL.

  record_failed_login() increments the counter and sets is_locked in ONE
  UPDATE statement. SQL evaluates every SET expression against the pre-update
  row, so two concurrent wrong passwords both land and the lock flag flips on
  exactly the attempt that reaches the threshold.

  consume_backup_code() is a single DELETE. Only the caller whose DELETE
  reports rowcount 1 gets to use the code, so a backup code cannot be spent
  twice by racing requests.

Transactions:
  Each public method runs in its own engine.begin() block. A write that has
  returned is committed, whatever happens to the HTTP request afterwards.
  SQLAlchemyError is logged and re-raised as core.errors.StorageError so raw
  driver messages never reach a response body. IntegrityError is re-raised
  untouched for callers that treat it as a domain signal (duplicate email).

  Ids are never reused (sqlite_autoincrement). Audit rows outlive the user
  they describe, so a recycled users.id would inherit a stranger's trail.

  UNIQUE(provider, provider_id) is enforced in code rather than SQL because
  SQLite treats two NULL values as distinct in UNIQUE constraints, and EMAIL
  accounts have no provider_id.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import (
    ApiKey,
    AuditAction,
    AuditLog,
    AuditStatus,
    BackupCode,
    Provider,
    Session,
    User,
    UserProfile,
)
from core.config import get_settings
from core.errors import EmailTaken, StorageError

logger = logging.getLogger("authvault.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for federated-only users
    Column("provider", String(16), nullable=False, server_default="EMAIL"),
    Column("provider_id", String(255)),
    Column("name", String(255)),
    Column("profile_image", Text),
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("verification_token_hash", String(64), index=True),
    Column("two_factor_enabled", Boolean, nullable=False, default=False),
    Column("two_factor_secret", Text),  # AES-GCM envelope
    Column("failed_login_attempts", Integer, nullable=False, default=0),
    Column("is_locked", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    sqlite_autoincrement=True,
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token", Text, nullable=False, index=True),
    Column("refresh_token", Text, nullable=False, index=True),
    Column("is_revoked", Boolean, nullable=False, default=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("expires_at", String(32), nullable=False),
    Column("last_activity_at", String(32)),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("key_preview", String(16), nullable=False),  # display only
    Column("scopes", JSON, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("expires_at", String(32)),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_backup_codes = Table(
    "backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_profiles = Table(
    "user_profiles",
    _metadata,
    Column("user_id", Integer, primary_key=True),
    Column("phone_number", Text),  # AES-GCM envelope
    Column("address", Text),  # AES-GCM envelope
    Column("date_of_birth", Text),  # AES-GCM envelope
    Column("bio", Text),
    Column("website", String(255)),
    Column("timezone", String(64)),
    Column("language", String(8)),
    Column("updated_at", String(32), nullable=False),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),  # NULL for pre-auth failures
    Column("action", String(40), nullable=False),
    Column("status", String(10), nullable=False),
    Column("resource_id", String(64)),
    Column("details", JSON),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

# Columns update_user() accepts. Anything else is a programming error.
_USER_MUTABLE = {
    "password_hash",
    "provider",
    "provider_id",
    "name",
    "profile_image",
    "email_verified",
    "verification_token_hash",
    "two_factor_enabled",
    "two_factor_secret",
    "failed_login_attempts",
    "is_locked",
    "is_active",
    "last_login_at",
}
_SESSION_MUTABLE = {"token", "refresh_token", "is_revoked", "expires_at", "last_activity_at"}
_API_KEY_MUTABLE = {"name", "is_active", "last_used_at", "expires_at"}
_PROFILE_FIELDS = ("phone_number", "address", "date_of_birth", "bio", "website", "timezone", "language")


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _column_values(fields: dict[str, Any]) -> dict[str, Any]:
    """Convert domain values (datetimes, enums) into column values."""
    values: dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            value = _to_iso(value)
        elif isinstance(value, Provider):
            value = value.value
        values[key] = value
    return values


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    m = row._mapping
    return User(
        id=m["id"],
        email=m["email"],
        password_hash=m["password_hash"],
        provider=Provider(m["provider"]),
        provider_id=m["provider_id"],
        name=m["name"],
        profile_image=m["profile_image"],
        email_verified=bool(m["email_verified"]),
        verification_token_hash=m["verification_token_hash"],
        two_factor_enabled=bool(m["two_factor_enabled"]),
        two_factor_secret=m["two_factor_secret"],
        failed_login_attempts=m["failed_login_attempts"],
        is_locked=bool(m["is_locked"]),
        is_active=bool(m["is_active"]),
        created_at=_parse_dt(m["created_at"]),
        updated_at=_parse_dt(m["updated_at"]),
        last_login_at=_parse_dt(m["last_login_at"]),
    )


def _row_to_session(row) -> Session:
    m = row._mapping
    return Session(
        id=m["id"],
        user_id=m["user_id"],
        token=m["token"],
        refresh_token=m["refresh_token"],
        is_revoked=bool(m["is_revoked"]),
        ip_address=m["ip_address"],
        user_agent=m["user_agent"],
        expires_at=_parse_dt(m["expires_at"]),
        last_activity_at=_parse_dt(m["last_activity_at"]),
        created_at=_parse_dt(m["created_at"]),
    )


def _row_to_api_key(row) -> ApiKey:
    m = row._mapping
    return ApiKey(
        id=m["id"],
        user_id=m["user_id"],
        name=m["name"],
        key_hash=m["key_hash"],
        key_preview=m["key_preview"],
        scopes=list(m["scopes"] or []),
        is_active=bool(m["is_active"]),
        expires_at=_parse_dt(m["expires_at"]),
        last_used_at=_parse_dt(m["last_used_at"]),
        created_at=_parse_dt(m["created_at"]),
    )


def _row_to_profile(row) -> UserProfile:
    m = row._mapping
    return UserProfile(
        user_id=m["user_id"],
        updated_at=_parse_dt(m["updated_at"]),
        **{name: m[name] for name in _PROFILE_FIELDS},
    )


def _row_to_audit_log(row) -> AuditLog:
    m = row._mapping
    return AuditLog(
        id=m["id"],
        user_id=m["user_id"],
        action=AuditAction(m["action"]),
        status=AuditStatus(m["status"]),
        resource_id=m["resource_id"],
        details=m["details"],
        ip_address=m["ip_address"],
        user_agent=m["user_agent"],
        created_at=_parse_dt(m["created_at"]),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for every auth entity.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user = store.create_user(User(email="alice@example.com", password_hash=hash_password("...")))
        store.find_user_by_email("alice@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Storage operation failed: %s", exc)
            raise StorageError() from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._transaction() as conn:
                conn.execute(text("SELECT 1"))
        except StorageError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and timestamps filled in.

        Raises EmailTaken if the email is already registered, including when
        a concurrent request inserted it between the caller's check and this
        insert.
        """
        now = _now_iso()
        values = _column_values(
            {
                "email": user.email,
                "password_hash": user.password_hash,
                "provider": user.provider,
                "provider_id": user.provider_id,
                "name": user.name,
                "profile_image": user.profile_image,
                "email_verified": user.email_verified,
                "verification_token_hash": user.verification_token_hash,
                "two_factor_enabled": user.two_factor_enabled,
                "two_factor_secret": user.two_factor_secret,
                "failed_login_attempts": user.failed_login_attempts,
                "is_locked": user.is_locked,
                "is_active": user.is_active,
                "last_login_at": user.last_login_at,
            }
        )
        try:
            with self._transaction() as conn:
                result = conn.execute(_users.insert().values(created_at=now, updated_at=now, **values))
                user_id = result.inserted_primary_key[0]
                row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        except IntegrityError as exc:
            raise EmailTaken() from exc
        return _row_to_user(row)

    def find_user_by_email(self, email: str) -> User | None:
        """Exact, case-sensitive lookup. Callers normalize email casing first."""
        with self._transaction() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: int) -> User | None:
        with self._transaction() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_provider(self, provider: Provider, provider_id: str) -> User | None:
        with self._transaction() as conn:
            row = conn.execute(
                _users.select().where((_users.c.provider == provider.value) & (_users.c.provider_id == provider_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_verification_hash(self, token_hash: str) -> User | None:
        with self._transaction() as conn:
            row = conn.execute(_users.select().where(_users.c.verification_token_hash == token_hash)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable columns on a user. Returns False if user_id is unknown.

        Only names in _USER_MUTABLE are accepted; unknown names raise
        ValueError rather than being silently dropped.
        """
        unknown = set(fields) - _USER_MUTABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        values = _column_values(fields)
        with self._transaction() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **values)
            )
        return result.rowcount > 0

    def record_failed_login(self, user_id: int, threshold: int) -> User | None:
        """Atomically count a failed password attempt and lock at `threshold`.

        Returns the user as it stands after the update, or None if it vanished.
        """
        attempts = _users.c.failed_login_attempts + 1
        with self._transaction() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    failed_login_attempts=attempts,
                    is_locked=case((attempts >= threshold, True), else_=_users.c.is_locked),
                    updated_at=_now_iso(),
                )
            )
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and everything it owns, in one transaction.

        Cascades to sessions, API keys, backup codes, and the profile. Audit
        log rows are kept: the ledger is append-only.
        """
        with self._transaction() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.execute(_api_keys.delete().where(_api_keys.c.user_id == user_id))
            conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
            conn.execute(_profiles.delete().where(_profiles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        now = _now_iso()
        with self._transaction() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token=session.token,
                    refresh_token=session.refresh_token,
                    is_revoked=session.is_revoked,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    expires_at=_to_iso(session.expires_at),
                    last_activity_at=_to_iso(session.last_activity_at) or now,
                    created_at=now,
                )
            )
            session_id = result.inserted_primary_key[0]
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row)

    def find_session_by_token(self, token: str) -> Session | None:
        with self._transaction() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.token == token).order_by(_sessions.c.id.desc())
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_session_by_refresh_token(self, refresh_token: str) -> Session | None:
        with self._transaction() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.refresh_token == refresh_token).order_by(_sessions.c.id.desc())
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def update_session(self, session_id: int, **fields) -> bool:
        unknown = set(fields) - _SESSION_MUTABLE
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)!r}")
        with self._transaction() as conn:
            result = conn.execute(
                _sessions.update().where(_sessions.c.id == session_id).values(**_column_values(fields))
            )
        return result.rowcount > 0

    def revoke_session_token(self, token: str) -> int:
        """Revoke every session carrying this access token. Returns rows touched."""
        with self._transaction() as conn:
            result = conn.execute(_sessions.update().where(_sessions.c.token == token).values(is_revoked=True))
        return result.rowcount

    def revoke_sessions_for_user(self, user_id: int) -> int:
        """Revoke all of a user's live sessions. Returns the number revoked."""
        with self._transaction() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_revoked.is_(False)))
                .values(is_revoked=True)
            )
        return result.rowcount

    def list_sessions_for_user(self, user_id: int) -> list[Session]:
        with self._transaction() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._transaction() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    user_id=api_key.user_id,
                    name=api_key.name,
                    key_hash=api_key.key_hash,
                    key_preview=api_key.key_preview,
                    scopes=list(api_key.scopes),
                    is_active=api_key.is_active,
                    expires_at=_to_iso(api_key.expires_at),
                    created_at=_now_iso(),
                )
            )
            key_id = result.inserted_primary_key[0]
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row)

    def find_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Exact lookup by SHA-256 hash. O(1) via the UNIQUE index."""
        with self._transaction() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def find_api_key(self, key_id: int) -> ApiKey | None:
        with self._transaction() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def update_api_key(self, key_id: int, **fields) -> bool:
        unknown = set(fields) - _API_KEY_MUTABLE
        if unknown:
            raise ValueError(f"Unknown api key fields: {sorted(unknown)!r}")
        with self._transaction() as conn:
            result = conn.execute(
                _api_keys.update().where(_api_keys.c.id == key_id).values(**_column_values(fields))
            )
        return result.rowcount > 0

    def delete_api_key(self, key_id: int, user_id: int) -> bool:
        """Delete a key. Both id and owner must match, so one user can never
        delete another user's key by guessing its id."""
        with self._transaction() as conn:
            result = conn.execute(
                _api_keys.delete().where((_api_keys.c.id == key_id) & (_api_keys.c.user_id == user_id))
            )
        return result.rowcount > 0

    def list_api_keys_for_user(self, user_id: int) -> list[ApiKey]:
        """Return all of a user's keys, active or not, newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where(_api_keys.c.user_id == user_id)
                .order_by(_api_keys.c.created_at.desc(), _api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def count_active_api_keys(self, user_id: int) -> int:
        with self._transaction() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_api_keys)
                .where((_api_keys.c.user_id == user_id) & (_api_keys.c.is_active.is_(True)))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def create_backup_codes(self, user_id: int, code_hashes: list[str]) -> None:
        now = _now_iso()
        if not code_hashes:
            return
        with self._transaction() as conn:
            conn.execute(
                _backup_codes.insert(),
                [{"user_id": user_id, "code_hash": h, "created_at": now} for h in code_hashes],
            )

    def delete_backup_codes_for_user(self, user_id: int) -> int:
        with self._transaction() as conn:
            result = conn.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
        return result.rowcount

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        """Delete one matching backup code. True only for the caller that deleted it."""
        with self._transaction() as conn:
            result = conn.execute(
                _backup_codes.delete().where(
                    (_backup_codes.c.user_id == user_id) & (_backup_codes.c.code_hash == code_hash)
                )
            )
        return result.rowcount > 0

    def count_backup_codes(self, user_id: int) -> int:
        with self._transaction() as conn:
            result = conn.execute(
                select(func.count()).select_from(_backup_codes).where(_backup_codes.c.user_id == user_id)
            ).scalar()
        return result or 0

    def list_backup_codes(self, user_id: int) -> list[BackupCode]:
        with self._transaction() as conn:
            rows = conn.execute(_backup_codes.select().where(_backup_codes.c.user_id == user_id)).fetchall()
        return [
            BackupCode(
                id=r._mapping["id"],
                user_id=r._mapping["user_id"],
                code_hash=r._mapping["code_hash"],
                created_at=_parse_dt(r._mapping["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, user_id: int) -> UserProfile | None:
        with self._transaction() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.user_id == user_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def upsert_profile(self, user_id: int, **fields) -> UserProfile:
        """Create the profile row on first write, update the given columns after.

        Columns not named in `fields` keep their stored value.
        """
        unknown = set(fields) - set(_PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {sorted(unknown)!r}")
        now = _now_iso()
        with self._transaction() as conn:
            exists = conn.execute(select(_profiles.c.user_id).where(_profiles.c.user_id == user_id)).fetchone()
            if exists is None:
                conn.execute(_profiles.insert().values(user_id=user_id, updated_at=now, **fields))
            else:
                conn.execute(_profiles.update().where(_profiles.c.user_id == user_id).values(updated_at=now, **fields))
            row = conn.execute(_profiles.select().where(_profiles.c.user_id == user_id)).fetchone()
        return _row_to_profile(row)

    # ------------------------------------------------------------------
    # Audit log (append-only)
    # ------------------------------------------------------------------

    def append_audit_log(self, entry: AuditLog) -> None:
        with self._transaction() as conn:
            conn.execute(
                _audit_logs.insert().values(
                    user_id=entry.user_id,
                    action=entry.action.value,
                    status=entry.status.value,
                    resource_id=entry.resource_id,
                    details=entry.details,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    created_at=_now_iso(),
                )
            )

    def list_audit_logs(
        self,
        user_id: int | None = None,
        action: AuditAction | None = None,
        limit: int = 100,
    ) -> list[AuditLog]:
        """Return audit rows newest first, optionally filtered. Read-only inspection."""
        query = _audit_logs.select()
        if user_id is not None:
            query = query.where(_audit_logs.c.user_id == user_id)
        if action is not None:
            query = query.where(_audit_logs.c.action == action.value)
        query = query.order_by(_audit_logs.c.id.desc()).limit(limit)
        with self._transaction() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_log(r) for r in rows]
