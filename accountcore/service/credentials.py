from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from accountcore.config import Settings
from accountcore.logging import get_logger, hash_email
from accountcore.service.errors import DuplicateEmailError, WeakPasswordError
from accountcore.storage.errors import ConstraintViolation
from accountcore.storage.models import (
    Account,
    ApprovalStatus,
    AttemptKind,
    LockoutState,
    Role,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")


class AccountStore(Protocol):
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
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def find_account_by_verification_token(
        self, token_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def set_email_verification(
        self, account_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None: ...

    def mark_email_verified(self, account_id: str) -> None: ...

    def set_password_hash(self, account_id: str, password_hash: str) -> None: ...

    def set_password_reset(
        self, account_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None: ...

    def consume_password_reset(self, token_hash: str, now: datetime) -> Optional[Account]: ...

    def update_profile(self, account_id: str, profile: dict, phone: Optional[str] = None) -> Account: ...

    def set_active(self, account_id: str, active: bool) -> None: ...

    def set_approval(
        self, account_id: str, status: ApprovalStatus, reason: Optional[str] = None
    ) -> None: ...

    def record_failed_attempt(
        self,
        account_id: str,
        kind: AttemptKind,
        *,
        threshold: int,
        window: timedelta,
        lock_duration: timedelta,
        now: datetime,
    ) -> LockoutState: ...

    def reset_failed_attempts(self, account_id: str, kind: AttemptKind) -> None: ...

    def set_two_factor_pending(
        self, account_id: str, secret: str, backup_code_hashes: List[str], salt: str
    ) -> None: ...

    def enable_two_factor(self, account_id: str, now: datetime) -> bool: ...

    def clear_two_factor(self, account_id: str) -> None: ...

    def consume_backup_code(self, account_id: str, code_hash: str) -> bool: ...


def check_password_strength(password: str) -> None:
    """Raise WeakPasswordError unless the password meets the account policy."""
    problems = []
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"at least {MIN_PASSWORD_LENGTH} characters")
    elif len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"at most {MAX_PASSWORD_LENGTH} characters")
    if isinstance(password, str):
        if not _UPPER.search(password):
            problems.append("an uppercase letter")
        if not _LOWER.search(password):
            problems.append("a lowercase letter")
        if not _DIGIT.search(password):
            problems.append("a number")
    if problems:
        raise WeakPasswordError(
            "Password must contain " + ", ".join(problems),
            detail={"requirements": problems},
        )


class CredentialService:
    """Password hashing plus account creation and lookup."""

    def __init__(self, store: AccountStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # verified against when the email is unknown so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("timing-equalizer-Password1")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def create_account(
        self,
        email: str,
        password: str,
        role: Role,
        profile: dict,
        *,
        phone: Optional[str] = None,
        verification_token_hash: Optional[str] = None,
        verification_expires_at: Optional[datetime] = None,
    ) -> Account:
        check_password_strength(password)
        role = Role(role)
        approval = ApprovalStatus.PENDING if role == Role.PROVIDER else ApprovalStatus.APPROVED
        try:
            account = self.store.create_account(
                email=email,
                password_hash=self.hash_password(password),
                role=role,
                profile=profile,
                phone=phone,
                approval_status=approval,
                email_verification_token_hash=verification_token_hash,
                email_verification_expires_at=verification_expires_at,
            )
        except ConstraintViolation as exc:
            logger.info("registration_duplicate", field=exc.field, email_hash=hash_email(email))
            if exc.field == "phone":
                raise DuplicateEmailError(
                    "Phone number already registered", detail={"field": "phone"}
                )
            raise DuplicateEmailError("Email already registered", detail={"field": "email"})
        logger.info("account_created", account_id=account.id, role=role.value)
        return account

    def find_by_email(self, email: str) -> Optional[Account]:
        return self.store.get_account_by_email(email)

    def verify_password(self, account: Account, candidate: str) -> bool:
        try:
            return self._pwd_hasher.verify(account.password_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable", account_id=account.id)
            return False

    def burn_verification(self, candidate: str) -> None:
        """Spend one hash verification for an unknown account."""
        try:
            self._pwd_hasher.verify(self._dummy_hash, candidate)
        except VerificationError:
            pass

    def set_password(self, account: Account, new_password: str) -> None:
        check_password_strength(new_password)
        self.store.set_password_hash(account.id, self.hash_password(new_password))
        logger.info("password_changed", account_id=account.id)

    def needs_rehash(self, account: Account) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(account.password_hash)
        except InvalidHash:
            return False
