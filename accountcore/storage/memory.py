from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from accountcore.logging import get_logger
from accountcore.storage.common import SecretCipher, generate_uuid, normalize_email, normalize_phone
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


class MemoryStore:
    """In-process account, session and refresh-token store.

    Every mutation runs under a single ``RLock`` so the compound operations
    (failed-attempt counting, backup-code consumption, reset-token
    consumption) are atomic with respect to concurrent callers. Records are
    copied on the way in and out; callers never hold references into the
    store's own state. When ``fs_root`` is given the state is mirrored to
    ``<fs_root>/state/account_store.json`` after each write.
    """

    def __init__(
        self, fs_root: str | None = None, *, encryption_key: str
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self._phone_index: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(encryption_key)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

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
        normalized = normalize_email(email)
        phone = normalize_phone(phone)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already registered", {"field": "email"})
            if phone and phone in self._phone_index:
                raise ConstraintViolation("phone already registered", {"field": "phone"})
            now = utcnow()
            account = Account(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                role=Role(role),
                profile=dict(profile or {}),
                phone=phone,
                email_verified=email_verified,
                email_verification_token_hash=email_verification_token_hash,
                email_verification_expires_at=email_verification_expires_at,
                approval_status=ApprovalStatus(approval_status),
                created_at=now,
                updated_at=now,
            )
            self.accounts[account.id] = account
            self._email_index[normalized] = account.id
            if phone:
                self._phone_index[phone] = account.id
            self._persist_state()
            return self._export(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._export(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(normalize_email(email))
            return self.get_account(account_id) if account_id else None

    def find_account_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.email_verification_token_hash == token_hash
                    and account.email_verification_expires_at
                    and account.email_verification_expires_at > now
                ):
                    return self._export(account)
        return None

    def set_email_verification(
        self, account_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.email_verification_token_hash = token_hash
            account.email_verification_expires_at = expires_at
            self._touch(account)

    def mark_email_verified(self, account_id: str) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.email_verified = True
            account.email_verification_token_hash = None
            account.email_verification_expires_at = None
            self._touch(account)

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.password_hash = password_hash
            self._touch(account)

    def set_password_reset(
        self, account_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.password_reset_token_hash = token_hash
            account.password_reset_expires_at = expires_at
            self._touch(account)

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[Account]:
        """Clear and return the account owning a live reset token, at most once."""
        with self._data_lock:
            for account in self.accounts.values():
                if account.password_reset_token_hash != token_hash:
                    continue
                live = account.password_reset_expires_at and account.password_reset_expires_at > now
                account.password_reset_token_hash = None
                account.password_reset_expires_at = None
                self._touch(account)
                return self._export(account) if live else None
        return None

    def update_profile(self, account_id: str, profile: dict, phone: Optional[str] = None) -> Account:
        phone = normalize_phone(phone)
        with self._data_lock:
            account = self._require(account_id)
            owner = self._phone_index.get(phone) if phone else None
            if owner and owner != account_id:
                raise ConstraintViolation("phone already registered", {"field": "phone"})
            if account.phone and account.phone != phone:
                self._phone_index.pop(account.phone, None)
            if phone:
                self._phone_index[phone] = account_id
            account.phone = phone
            account.profile = dict(profile)
            self._touch(account)
            return self._export(account)

    def set_active(self, account_id: str, active: bool) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.is_active = active
            self._touch(account)

    def set_approval(
        self, account_id: str, status: ApprovalStatus, reason: Optional[str] = None
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.approval_status = ApprovalStatus(status)
            account.rejection_reason = reason
            self._touch(account)

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
        with self._data_lock:
            account = self._require(account_id)
            state = account.lockout_for(kind)
            if state.is_locked(now):
                # failures that raced past the lock check do not extend it
                return copy.copy(state)
            if state.last_failed_at is None or now - state.last_failed_at > window:
                attempts = 1
            else:
                attempts = state.failed_attempts + 1
            state.last_failed_at = now
            if attempts >= threshold:
                state.locked_until = now + lock_duration
                state.failed_attempts = 0
            else:
                state.failed_attempts = attempts
            self._touch(account)
            return copy.copy(state)

    def reset_failed_attempts(self, account_id: str, kind: AttemptKind) -> None:
        with self._data_lock:
            account = self._require(account_id)
            state = account.lockout_for(kind)
            if state.failed_attempts == 0 and state.last_failed_at is None:
                return
            state.failed_attempts = 0
            state.last_failed_at = None
            self._touch(account)

    # -- two-factor ---------------------------------------------------------

    def set_two_factor_pending(
        self, account_id: str, secret: str, backup_code_hashes: List[str], salt: str
    ) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.two_factor = TwoFactorState(
                enabled=False,
                secret=self._cipher.encrypt(secret),
                backup_code_hashes=list(backup_code_hashes),
                backup_code_salt=salt,
            )
            self._touch(account)

    def enable_two_factor(self, account_id: str, now: datetime) -> bool:
        with self._data_lock:
            account = self._require(account_id)
            if not account.two_factor.secret or account.two_factor.enabled:
                return False
            account.two_factor.enabled = True
            account.two_factor.enrolled_at = now
            self._touch(account)
            return True

    def clear_two_factor(self, account_id: str) -> None:
        with self._data_lock:
            account = self._require(account_id)
            account.two_factor = TwoFactorState()
            account.two_factor_lockout = LockoutState()
            self._touch(account)

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or code_hash not in account.two_factor.backup_code_hashes:
                return False
            account.two_factor.backup_code_hashes.remove(code_hash)
            self._touch(account)
            return True

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise NotFound(f"account {session.account_id} not found")
            self.sessions[session.id] = copy.copy(session)
            self._persist_state()
            return copy.copy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.copy(session) if session else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session:
                return False
            session.last_activity_at = at
            self._persist_state()
            return True

    def delete_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.pop(session_id, None)
            if session:
                self._persist_state()
            return session

    def delete_account_sessions(self, account_id: str) -> List[str]:
        with self._data_lock:
            removed = [sid for sid, s in self.sessions.items() if s.account_id == account_id]
            for sid in removed:
                del self.sessions[sid]
            if removed:
                self._persist_state()
            return removed

    def list_account_sessions(self, account_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            live = [
                copy.copy(s)
                for s in self.sessions.values()
                if s.account_id == account_id and not s.is_expired(now)
            ]
        return sorted(live, key=lambda s: s.last_activity_at, reverse=True)

    # -- refresh tokens -----------------------------------------------------

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            self.refresh_tokens[record.token_hash] = copy.copy(record)
            self._persist_state()

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return copy.copy(record) if record else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        """Flip a live record to revoked; False when it was already revoked or unknown."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.revoked:
                return False
            record.revoked = True
            self._persist_state()
            return True

    def revoke_session_refresh_tokens(self, session_id: str) -> int:
        return self._revoke_refresh_where(lambda r: r.session_id == session_id)

    def revoke_account_refresh_tokens(self, account_id: str) -> int:
        return self._revoke_refresh_where(lambda r: r.account_id == account_id)

    def _revoke_refresh_where(self, predicate) -> int:
        with self._data_lock:
            count = 0
            for record in self.refresh_tokens.values():
                if not record.revoked and predicate(record):
                    record.revoked = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_expired(self, now: datetime) -> int:
        """Drop expired sessions and expired or revoked refresh records."""
        with self._data_lock:
            stale_sessions = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            stale_tokens = [
                h for h, r in self.refresh_tokens.items() if r.revoked or r.expires_at <= now
            ]
            for sid in stale_sessions:
                del self.sessions[sid]
            for token_hash in stale_tokens:
                del self.refresh_tokens[token_hash]
            removed = len(stale_sessions) + len(stale_tokens)
            if removed:
                self._persist_state()
            return removed

    # -- internals ----------------------------------------------------------

    def _require(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if not account:
            raise NotFound(f"account {account_id} not found")
        return account

    def _touch(self, account: Account) -> None:
        account.updated_at = utcnow()
        self._persist_state()

    def _export(self, account: Account) -> Account:
        exported = copy.deepcopy(account)
        exported.two_factor.secret = self._cipher.decrypt(account.two_factor.secret)
        return exported

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "account_store.json"

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [s.to_dict() for s in self.sessions.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist account store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self._phone_index = {a.phone: a.id for a in self.accounts.values() if a.phone}
        self.sessions = {
            s["id"]: Session.from_dict(s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "account_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_lockout(self, state: LockoutState) -> dict:
        return {
            "failed_attempts": state.failed_attempts,
            "last_failed_at": self._dt(state.last_failed_at),
            "locked_until": self._dt(state.locked_until),
        }

    def _deserialize_lockout(self, data: Optional[dict]) -> LockoutState:
        data = data or {}
        return LockoutState(
            failed_attempts=data.get("failed_attempts", 0),
            last_failed_at=self._parse_dt(data.get("last_failed_at")),
            locked_until=self._parse_dt(data.get("locked_until")),
        )

    def _serialize_account(self, account: Account) -> dict:
        # two_factor.secret is already encrypted in the live state
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "role": account.role.value,
            "profile": account.profile,
            "phone": account.phone,
            "email_verified": account.email_verified,
            "email_verification_token_hash": account.email_verification_token_hash,
            "email_verification_expires_at": self._dt(account.email_verification_expires_at),
            "password_reset_token_hash": account.password_reset_token_hash,
            "password_reset_expires_at": self._dt(account.password_reset_expires_at),
            "two_factor": {
                "enabled": account.two_factor.enabled,
                "secret": account.two_factor.secret,
                "backup_code_hashes": account.two_factor.backup_code_hashes,
                "backup_code_salt": account.two_factor.backup_code_salt,
                "enrolled_at": self._dt(account.two_factor.enrolled_at),
            },
            "lockout": self._serialize_lockout(account.lockout),
            "two_factor_lockout": self._serialize_lockout(account.two_factor_lockout),
            "approval_status": account.approval_status.value,
            "rejection_reason": account.rejection_reason,
            "is_active": account.is_active,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat(),
        }

    def _deserialize_account(self, data: dict) -> Account:
        tf = data.get("two_factor") or {}
        return Account(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data["role"]),
            profile=data.get("profile") or {},
            phone=data.get("phone"),
            email_verified=data.get("email_verified", False),
            email_verification_token_hash=data.get("email_verification_token_hash"),
            email_verification_expires_at=self._parse_dt(data.get("email_verification_expires_at")),
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_expires_at=self._parse_dt(data.get("password_reset_expires_at")),
            two_factor=TwoFactorState(
                enabled=tf.get("enabled", False),
                secret=tf.get("secret"),
                backup_code_hashes=list(tf.get("backup_code_hashes") or []),
                backup_code_salt=tf.get("backup_code_salt"),
                enrolled_at=self._parse_dt(tf.get("enrolled_at")),
            ),
            lockout=self._deserialize_lockout(data.get("lockout")),
            two_factor_lockout=self._deserialize_lockout(data.get("two_factor_lockout")),
            approval_status=ApprovalStatus(data.get("approval_status", "approved")),
            rejection_reason=data.get("rejection_reason"),
            is_active=data.get("is_active", True),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "token_hash": record.token_hash,
            "account_id": record.account_id,
            "session_id": record.session_id,
            "device": record.device,
            "origin": record.origin,
            "created_at": record.created_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "revoked": record.revoked,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=data["token_hash"],
            account_id=data["account_id"],
            session_id=data.get("session_id"),
            device=data.get("device"),
            origin=data.get("origin"),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            revoked=data.get("revoked", False),
        )
