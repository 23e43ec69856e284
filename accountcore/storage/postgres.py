from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from accountcore.logging import get_logger
from accountcore.storage.common import SecretCipher, normalize_email, normalize_phone, safe_row_value
from accountcore.storage.errors import ConstraintViolation, NotFound
from accountcore.storage.models import (
    Account,
    ApprovalStatus,
    AttemptKind,
    LockoutState,
    RefreshTokenRecord,
    Role,
    Session,
    TwoFactorState,
    utcnow,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL,
        profile JSONB NOT NULL DEFAULT '{}'::jsonb,
        phone TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verification_token_hash TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        password_reset_token_hash TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret TEXT,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        backup_code_salt TEXT,
        two_factor_enrolled_at TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        last_failed_login_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        two_factor_failed_attempts INTEGER NOT NULL DEFAULT 0,
        two_factor_last_failed_at TIMESTAMPTZ,
        two_factor_locked_until TIMESTAMPTZ,
        approval_status TEXT NOT NULL DEFAULT 'approved',
        rejection_reason TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS account_phone_idx ON account (phone) WHERE phone IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS account_verification_token_idx ON account (email_verification_token_hash)",
    "CREATE INDEX IF NOT EXISTS account_reset_token_idx ON account (password_reset_token_hash)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        device TEXT,
        origin TEXT,
        access_token_fingerprint TEXT,
        refresh_token_fingerprint TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        session_id TEXT,
        device TEXT,
        origin TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_session_idx ON refresh_token (session_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)

# counter columns per failure kind; fixed identifiers, never caller input
_LOCKOUT_COLUMNS = {
    AttemptKind.PASSWORD: ("failed_login_attempts", "last_failed_login_at", "locked_until"),
    AttemptKind.TWO_FACTOR: (
        "two_factor_failed_attempts",
        "two_factor_last_failed_at",
        "two_factor_locked_until",
    ),
}


def _violated_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    return "phone" if "phone" in constraint else "email"


class PostgresStore:
    """Postgres-backed account, session and refresh-token store."""

    def __init__(self, dsn: str, *, encryption_key: str, pool: ConnectionPool | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(encryption_key)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create tables and indexes when they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        *,
        email: str,
        password_hash: str,
        role: Role,
        profile: Optional[dict] = None,
        phone: Optional[str] = None,
        approval_status: ApprovalStatus = ApprovalStatus.APPROVED,
        email_verified: bool = False,
        email_verification_token_hash: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> Account:
        account_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, email, password_hash, role, profile, phone, email_verified,
                        email_verification_token_hash, email_verification_expires_at,
                        approval_status, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_email(email),
                        password_hash,
                        Role(role).value,
                        json.dumps(profile or {}),
                        normalize_phone(phone),
                        email_verified,
                        email_verification_token_hash,
                        email_verification_expires_at,
                        ApprovalStatus(approval_status).value,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already registered", {"field": field})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s", (normalize_email(email),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def find_account_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM account
                WHERE email_verification_token_hash = %s AND email_verification_expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_email_verification(
        self, account_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        self._update_account(
            account_id,
            "email_verification_token_hash = %s, email_verification_expires_at = %s",
            (token_hash, expires_at),
        )

    def mark_email_verified(self, account_id: str) -> None:
        self._update_account(
            account_id,
            "email_verified = TRUE, email_verification_token_hash = NULL, email_verification_expires_at = NULL",
            (),
        )

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        self._update_account(account_id, "password_hash = %s", (password_hash,))

    def set_password_reset(
        self, account_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        self._update_account(
            account_id,
            "password_reset_token_hash = %s, password_reset_expires_at = %s",
            (token_hash, expires_at),
        )

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH target AS (
                    SELECT id, password_reset_expires_at AS expires_at
                    FROM account WHERE password_reset_token_hash = %s
                    FOR UPDATE
                )
                UPDATE account AS a
                SET password_reset_token_hash = NULL,
                    password_reset_expires_at = NULL,
                    updated_at = %s
                FROM target
                WHERE a.id = target.id
                RETURNING a.id, target.expires_at
                """,
                (token_hash, now),
            ).fetchone()
        if not row or not row["expires_at"] or row["expires_at"] <= now:
            return None
        return self.get_account(row["id"])

    def update_profile(self, account_id: str, profile: dict, phone: Optional[str] = None) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE account SET profile = %s, phone = %s, updated_at = %s
                    WHERE id = %s RETURNING *
                    """,
                    (json.dumps(profile), normalize_phone(phone), utcnow(), account_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("phone already registered", {"field": "phone"})
        if not row:
            raise NotFound(f"account {account_id} not found")
        return self._account_from_row(row)

    def set_active(self, account_id: str, active: bool) -> None:
        self._update_account(account_id, "is_active = %s", (active,))

    def set_approval(
        self, account_id: str, status: ApprovalStatus, reason: Optional[str] = None
    ) -> None:
        self._update_account(
            account_id,
            "approval_status = %s, rejection_reason = %s",
            (ApprovalStatus(status).value, reason),
        )

    # -- lockout ------------------------------------------------------------

    def record_failed_attempt(
        self,
        account_id: str,
        kind: AttemptKind,
        *,
        threshold: int,
        window: timedelta,
        lock_duration: timedelta,
        now: datetime,
    ) -> LockoutState:
        attempts_col, last_col, locked_col = _LOCKOUT_COLUMNS[AttemptKind(kind)]
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {attempts_col} AS attempts, {last_col} AS last_failed, {locked_col} AS locked_until "
                "FROM account WHERE id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if not row:
                raise NotFound(f"account {account_id} not found")
            if row["locked_until"] is not None and row["locked_until"] > now:
                # failures that raced past the lock check do not extend it
                return LockoutState(
                    failed_attempts=row["attempts"],
                    last_failed_at=row["last_failed"],
                    locked_until=row["locked_until"],
                )
            last_failed = row["last_failed"]
            if last_failed is None or now - last_failed > window:
                attempts = 1
            else:
                attempts = row["attempts"] + 1
            locked_until = row["locked_until"]
            if attempts >= threshold:
                locked_until = now + lock_duration
                attempts = 0
            conn.execute(
                f"UPDATE account SET {attempts_col} = %s, {last_col} = %s, {locked_col} = %s, "
                "updated_at = %s WHERE id = %s",
                (attempts, now, locked_until, now, account_id),
            )
        return LockoutState(failed_attempts=attempts, last_failed_at=now, locked_until=locked_until)

    def reset_failed_attempts(self, account_id: str, kind: AttemptKind) -> None:
        attempts_col, last_col, _ = _LOCKOUT_COLUMNS[AttemptKind(kind)]
        with self._connect() as conn:
            conn.execute(
                f"UPDATE account SET {attempts_col} = 0, {last_col} = NULL "
                f"WHERE id = %s AND ({attempts_col} <> 0 OR {last_col} IS NOT NULL)",
                (account_id,),
            )

    # -- two-factor ---------------------------------------------------------

    def set_two_factor_pending(
        self, account_id: str, secret: str, backup_code_hashes: List[str], salt: str
    ) -> None:
        self._update_account(
            account_id,
            "two_factor_enabled = FALSE, two_factor_secret = %s, backup_code_hashes = %s, "
            "backup_code_salt = %s, two_factor_enrolled_at = NULL",
            (self._cipher.encrypt(secret), list(backup_code_hashes), salt),
        )

    def enable_two_factor(self, account_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET two_factor_enabled = TRUE, two_factor_enrolled_at = %s, updated_at = %s
                WHERE id = %s AND two_factor_secret IS NOT NULL AND NOT two_factor_enabled
                RETURNING id
                """,
                (now, now, account_id),
            ).fetchone()
        return row is not None

    def clear_two_factor(self, account_id: str) -> None:
        self._update_account(
            account_id,
            "two_factor_enabled = FALSE, two_factor_secret = NULL, backup_code_hashes = '{}', "
            "backup_code_salt = NULL, two_factor_enrolled_at = NULL, "
            "two_factor_failed_attempts = 0, two_factor_last_failed_at = NULL, two_factor_locked_until = NULL",
            (),
        )

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        # concurrent consumers serialize on the row lock; the loser's WHERE no longer matches
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET backup_code_hashes = array_remove(backup_code_hashes, %s), updated_at = %s
                WHERE id = %s AND %s = ANY(backup_code_hashes)
                RETURNING id
                """,
                (code_hash, utcnow(), account_id, code_hash),
            ).fetchone()
        return row is not None

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, account_id, created_at, expires_at, last_activity_at, device, origin,
                        access_token_fingerprint, refresh_token_fingerprint
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.created_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.device,
                        session.origin,
                        session.access_token_fingerprint,
                        session.refresh_token_fingerprint,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise NotFound(f"account {session.account_id} not found")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s RETURNING id",
                (at, session_id),
            ).fetchone()
        return row is not None

    def delete_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE id = %s RETURNING *", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_account_sessions(self, account_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s RETURNING id", (account_id,)
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def list_account_sessions(self, account_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE account_id = %s AND expires_at > %s
                ORDER BY last_activity_at DESC
                """,
                (account_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # -- refresh tokens -----------------------------------------------------

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (
                    token_hash, account_id, session_id, device, origin, created_at, expires_at, revoked
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                """,
                (
                    record.token_hash,
                    record.account_id,
                    record.session_id,
                    record.device,
                    record.origin,
                    record.created_at,
                    record.expires_at,
                    record.revoked,
                ),
            )

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token_hash = %s AND NOT revoked RETURNING token_hash",
                (token_hash,),
            ).fetchone()
        return row is not None

    def revoke_session_refresh_tokens(self, session_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE session_id = %s AND NOT revoked",
                (session_id,),
            )
            return cur.rowcount

    def revoke_account_refresh_tokens(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE account_id = %s AND NOT revoked",
                (account_id,),
            )
            return cur.rowcount

    def purge_expired(self, now: datetime) -> int:
        with self._connect() as conn:
            sessions = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            ).rowcount
            tokens = conn.execute(
                "DELETE FROM refresh_token WHERE revoked OR expires_at <= %s", (now,)
            ).rowcount
        return sessions + tokens

    # -- row mapping --------------------------------------------------------

    def _update_account(self, account_id: str, assignments: str, params: tuple) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE account SET {assignments}, updated_at = %s WHERE id = %s",
                (*params, utcnow(), account_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"account {account_id} not found")

    def _account_from_row(self, row: Any) -> Account:
        profile = safe_row_value(row, "profile") or {}
        if isinstance(profile, str):
            profile = json.loads(profile)
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row["role"]),
            profile=profile,
            phone=safe_row_value(row, "phone"),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            email_verification_token_hash=safe_row_value(row, "email_verification_token_hash"),
            email_verification_expires_at=safe_row_value(row, "email_verification_expires_at"),
            password_reset_token_hash=safe_row_value(row, "password_reset_token_hash"),
            password_reset_expires_at=safe_row_value(row, "password_reset_expires_at"),
            two_factor=TwoFactorState(
                enabled=bool(safe_row_value(row, "two_factor_enabled", False)),
                secret=self._cipher.decrypt(safe_row_value(row, "two_factor_secret")),
                backup_code_hashes=list(safe_row_value(row, "backup_code_hashes") or []),
                backup_code_salt=safe_row_value(row, "backup_code_salt"),
                enrolled_at=safe_row_value(row, "two_factor_enrolled_at"),
            ),
            lockout=LockoutState(
                failed_attempts=safe_row_value(row, "failed_login_attempts", 0) or 0,
                last_failed_at=safe_row_value(row, "last_failed_login_at"),
                locked_until=safe_row_value(row, "locked_until"),
            ),
            two_factor_lockout=LockoutState(
                failed_attempts=safe_row_value(row, "two_factor_failed_attempts", 0) or 0,
                last_failed_at=safe_row_value(row, "two_factor_last_failed_at"),
                locked_until=safe_row_value(row, "two_factor_locked_until"),
            ),
            approval_status=ApprovalStatus(safe_row_value(row, "approval_status", "approved")),
            rejection_reason=safe_row_value(row, "rejection_reason"),
            is_active=bool(safe_row_value(row, "is_active", True)),
            created_at=safe_row_value(row, "created_at") or utcnow(),
            updated_at=safe_row_value(row, "updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Any) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity_at=safe_row_value(row, "last_activity_at") or row["created_at"],
            device=safe_row_value(row, "device"),
            origin=safe_row_value(row, "origin"),
            access_token_fingerprint=safe_row_value(row, "access_token_fingerprint"),
            refresh_token_fingerprint=safe_row_value(row, "refresh_token_fingerprint"),
        )

    @staticmethod
    def _refresh_from_row(row: Any) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            session_id=safe_row_value(row, "session_id"),
            device=safe_row_value(row, "device"),
            origin=safe_row_value(row, "origin"),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked=bool(safe_row_value(row, "revoked", False)),
        )
