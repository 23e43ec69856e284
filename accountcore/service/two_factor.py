from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from accountcore.config import Settings
from accountcore.logging import get_logger
from accountcore.service.credentials import AccountStore, CredentialService
from accountcore.service.errors import (
    InvalidPasswordError,
    InvalidTwoFactorCodeError,
    TwoFactorRequiredError,
    TwoFactorStateError,
)
from accountcore.storage.models import Account, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20
BACKUP_CODE_BYTES = 4


@dataclass
class Enrollment:
    secret: str
    qr_payload: str
    backup_codes: List[str]


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for an unusable secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def normalize_backup_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


def hash_backup_code(code: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{normalize_backup_code(code)}".encode()).hexdigest()


class TwoFactorManager:
    """TOTP enrollment and verification with single-use backup codes.

    The secret is generated server side and handed to the account holder once
    (as base32 and as an ``otpauth://`` provisioning URI). Backup codes are
    only ever stored as salted digests; a code is consumed by the store in one
    atomic step, so two concurrent logins presenting the same code cannot both
    succeed.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        credentials: CredentialService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self._clock = clock

    def _verify_totp(self, secret: Optional[str], code: Optional[str]) -> bool:
        if not secret or not code:
            return False
        code = code.strip().replace(" ", "")
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now = self._clock().timestamp()
        window = self.settings.two_factor_window_steps
        for offset in range(-window, window + 1):
            generated = generate_totp(secret, now + offset * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def provisioning_uri(self, account: Account, secret: str) -> str:
        issuer = self.settings.two_factor_issuer
        label = quote(f"{issuer}:{account.email}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    def _require_password(self, account: Account, password: str) -> None:
        if not password or not self.credentials.verify_password(account, password):
            logger.warning("two_factor_password_rejected", account_id=account.id)
            raise InvalidPasswordError("Invalid password")

    def begin_enrollment(self, account: Account, password: str) -> Enrollment:
        """Store a pending secret and fresh backup codes; plaintext is returned only here."""
        self._require_password(account, password)
        if account.two_factor.enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled")
        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")
        codes = [
            secrets.token_hex(BACKUP_CODE_BYTES).upper()
            for _ in range(self.settings.backup_code_count)
        ]
        salt = secrets.token_hex(16)
        self.store.set_two_factor_pending(
            account.id, secret, [hash_backup_code(code, salt) for code in codes], salt
        )
        logger.info("two_factor_enrollment_started", account_id=account.id)
        return Enrollment(
            secret=secret,
            qr_payload=self.provisioning_uri(account, secret),
            backup_codes=codes,
        )

    def confirm_enrollment(self, account: Account, code: str) -> None:
        if account.two_factor.enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled")
        if not account.two_factor.secret:
            raise TwoFactorStateError("Two-factor setup has not been started")
        if not self._verify_totp(account.two_factor.secret, code):
            raise InvalidTwoFactorCodeError("Invalid verification code")
        if not self.store.enable_two_factor(account.id, self._clock()):
            raise TwoFactorStateError("Two-factor setup is no longer pending")
        logger.info("two_factor_enabled", account_id=account.id)

    def verify_login(self, account: Account, code: Optional[str]) -> bool:
        """True for a valid TOTP, or for the one call that consumes a matching backup code."""
        if not account.two_factor.enabled or not code:
            return False
        if self._verify_totp(account.two_factor.secret, code):
            return True
        normalized = normalize_backup_code(code)
        if not normalized or not account.two_factor.backup_code_salt:
            return False
        consumed = self.store.consume_backup_code(
            account.id, hash_backup_code(normalized, account.two_factor.backup_code_salt)
        )
        if consumed:
            logger.info(
                "backup_code_consumed",
                account_id=account.id,
                backup_codes_remaining=max(0, len(account.two_factor.backup_code_hashes) - 1),
            )
        return consumed

    def disable(self, account: Account, password: str, code: Optional[str] = None) -> None:
        """Clear 2FA state. An enabled account must also present a valid code."""
        self._require_password(account, password)
        if account.two_factor.enabled:
            if not code:
                raise TwoFactorRequiredError("Two-factor code required")
            if not self.verify_login(account, code):
                raise InvalidTwoFactorCodeError("Invalid two-factor code")
        self.store.clear_two_factor(account.id)
        logger.info("two_factor_disabled", account_id=account.id)
