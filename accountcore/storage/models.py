from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TWO_FACTOR = "two_factor"


class AttemptKind(str, Enum):
    """Which failure counter an attempt is charged against."""

    PASSWORD = "password"
    TWO_FACTOR = "two_factor"


@dataclass
class LockoutState:
    failed_attempts: int = 0
    last_failed_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def retry_after_seconds(self, now: datetime) -> int:
        if not self.is_locked(now):
            return 0
        return max(1, int((self.locked_until - now).total_seconds()))


@dataclass
class TwoFactorState:
    enabled: bool = False
    secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    backup_code_salt: Optional[str] = None
    enrolled_at: Optional[datetime] = None

    @property
    def pending(self) -> bool:
        return bool(self.secret) and not self.enabled


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: Role
    profile: Dict = field(default_factory=dict)
    phone: Optional[str] = None
    email_verified: bool = False
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    two_factor: TwoFactorState = field(default_factory=TwoFactorState)
    lockout: LockoutState = field(default_factory=LockoutState)
    two_factor_lockout: LockoutState = field(default_factory=LockoutState)
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    rejection_reason: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def lockout_for(self, kind: AttemptKind) -> LockoutState:
        if kind == AttemptKind.TWO_FACTOR:
            return self.two_factor_lockout
        return self.lockout


@dataclass
class Session:
    id: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    device: Optional[str] = None
    origin: Optional[str] = None
    access_token_fingerprint: Optional[str] = None
    refresh_token_fingerprint: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl_minutes: int = 7 * 24 * 60,
        device: str | None = None,
        origin: str | None = None,
        *,
        session_id: str | None = None,
        now: datetime | None = None,
        access_token_fingerprint: str | None = None,
        refresh_token_fingerprint: str | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            account_id=account_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_activity_at=now,
            device=device,
            origin=origin,
            access_token_fingerprint=access_token_fingerprint,
            refresh_token_fingerprint=refresh_token_fingerprint,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "device": self.device,
            "origin": self.origin,
            "access_token_fingerprint": self.access_token_fingerprint,
            "refresh_token_fingerprint": self.refresh_token_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            last_activity_at=datetime.fromisoformat(data["last_activity_at"]),
            device=data.get("device"),
            origin=data.get("origin"),
            access_token_fingerprint=data.get("access_token_fingerprint"),
            refresh_token_fingerprint=data.get("refresh_token_fingerprint"),
        )


@dataclass
class RefreshTokenRecord:
    token_hash: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    session_id: Optional[str] = None
    device: Optional[str] = None
    origin: Optional[str] = None
    revoked: bool = False

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class TokenPayload:
    account_id: str
    email: str
    role: str
    type: TokenType
    issued_at: datetime
    expires_at: datetime
    jti: str
    session_id: Optional[str] = None
