from __future__ import annotations

import contextlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, List, Optional

from accountcore.config import Settings
from accountcore.logging import (
    correlation_id_var,
    get_correlation_id,
    get_logger,
    hash_email,
    set_correlation_id,
)
from accountcore.service.approvals import AccountApprovalReader, ApprovalReader
from accountcore.service.credentials import (
    AccountStore,
    CredentialService,
    check_password_strength,
)
from accountcore.service.errors import (
    AccountInactiveError,
    ApprovalPendingError,
    ApprovalRejectedError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidPasswordError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    SessionNotFoundError,
    TokenRevokedError,
    TwoFactorStateError,
)
from accountcore.service.lockout import LoginPolicy
from accountcore.service.notifications import (
    NotificationDispatcher,
    NotificationEvent,
    Notifier,
)
from accountcore.service.schemas import (
    dump_profile,
    normalize_registration_email,
    parse_profile,
)
from accountcore.service.sessions import (
    SessionCache,
    SessionInfo,
    SessionRegistry,
    SessionStore,
)
from accountcore.service.tokens import TokenService, fingerprint
from accountcore.service.two_factor import Enrollment, TwoFactorManager
from accountcore.storage.errors import ConstraintViolation
from accountcore.storage.models import (
    Account,
    ApprovalStatus,
    AttemptKind,
    TokenType,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_RESET_MESSAGE = "If the email exists, a password reset link has been sent"
VERIFICATION_MESSAGE = "If the account exists and is unverified, a verification email has been sent"
RATE_LIMIT_WINDOW_SECONDS = 60


@dataclass
class RegisterResult:
    account_id: str
    email: str
    role: str
    requires_email_verification: bool


@dataclass
class LoginResult:
    account_id: str
    requires_two_factor: bool = False
    two_factor_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    session_id: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass
class RefreshResult:
    access_token: str
    session_id: str
    expires_in: int
    refresh_token: Optional[str] = None


@dataclass
class AuthContext:
    account_id: str
    email: str
    role: str
    session_id: str


class AuthService:
    """Register, login, refresh, logout and account-security flows.

    Composes the credential service, login policy, two-factor manager, token
    service and session registry. Every public coroutine either returns its
    result or raises a :class:`ServiceError`; anything else escaping a flow is
    logged with context and surfaced as a generic ``ServerError``.
    """

    def __init__(
        self,
        store: Any,
        cache: Optional[SessionCache],
        settings: Settings,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        approvals: Optional[ApprovalReader] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AccountStore = store
        self.cache = cache
        self.settings = settings
        self._clock = clock or utcnow
        self.notifier = Notifier(dispatcher)
        self.approvals = approvals or AccountApprovalReader()
        self.credentials = CredentialService(store, settings)
        self.tokens = TokenService(settings, clock=self._clock)
        self.two_factor = TwoFactorManager(store, settings, self.credentials, clock=self._clock)
        self.policy = LoginPolicy(store, settings, self.notifier, clock=self._clock)
        session_store: SessionStore = store
        self.sessions = SessionRegistry(session_store, cache, settings, clock=self._clock)

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str, **context: Any) -> AsyncIterator[None]:
        # a caller-supplied correlation id is kept; otherwise one is minted per operation
        previous = get_correlation_id()
        set_correlation_id(previous)
        try:
            yield
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "auth_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                **context,
            )
            raise ServerError("internal error") from exc
        finally:
            correlation_id_var.set(previous)

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    async def _enforce_rate_limit(self, scope: str, origin: Optional[str]) -> None:
        limit = self.settings.login_rate_limit_per_minute
        if not self.cache or limit <= 0 or not origin:
            return
        try:
            allowed, _, reset_after = await self.cache.check_rate_limit(
                f"{scope}:{origin}", limit, RATE_LIMIT_WINDOW_SECONDS, return_remaining=True
            )
        except Exception as exc:
            logger.warning("rate_limit_check_failed", scope=scope, error=str(exc))
            return
        if not allowed:
            retry_after = max(1, int(reset_after or RATE_LIMIT_WINDOW_SECONDS))
            logger.warning("rate_limited", scope=scope, origin=origin, retry_after_seconds=retry_after)
            raise RateLimitedError(
                "Too many attempts, please try again later",
                detail={"retry_after_seconds": retry_after},
            )

    # -- registration -------------------------------------------------------

    async def register(
        self, email: str, password: str, role: str, profile: Optional[dict] = None
    ) -> RegisterResult:
        async with self._guard("register"):
            normalized = normalize_registration_email(email)
            parsed = parse_profile(role, profile)
            token = secrets.token_hex(32)
            expires_at = self._clock() + timedelta(hours=self.settings.email_verification_ttl_hours)
            account = self.credentials.create_account(
                normalized,
                password,
                role,
                dump_profile(parsed),
                phone=parsed.phone,
                verification_token_hash=fingerprint(token),
                verification_expires_at=expires_at,
            )
            self.notifier.notify(
                NotificationEvent.VERIFICATION_EMAIL,
                {"account_id": account.id, "email": account.email, "token": token},
            )
            logger.info(
                "account_registered",
                account_id=account.id,
                role=account.role.value,
                email_hash=hash_email(account.email),
            )
            return RegisterResult(
                account_id=account.id,
                email=account.email,
                role=account.role.value,
                requires_email_verification=self.settings.require_email_verification,
            )

    async def verify_email(self, token: str) -> Account:
        async with self._guard("verify_email"):
            if not isinstance(token, str) or not token:
                raise InvalidTokenError("Invalid or expired verification token")
            account = self.store.find_account_by_verification_token(
                fingerprint(token), self._clock()
            )
            if not account:
                logger.warning("email_verification_invalid_token")
                raise InvalidTokenError("Invalid or expired verification token")
            self.store.mark_email_verified(account.id)
            self.notifier.notify(
                NotificationEvent.WELCOME,
                {
                    "account_id": account.id,
                    "email": account.email,
                    "first_name": account.profile.get("first_name"),
                },
            )
            logger.info("email_verified", account_id=account.id)
            return self._require_account(account.id)

    async def request_email_verification(self, email: str) -> str:
        """Re-issue a verification token. The answer never reveals whether the email exists."""
        async with self._guard("request_email_verification"):
            account = self.store.get_account_by_email(email) if isinstance(email, str) else None
            if not account or account.email_verified or not account.is_active:
                logger.info("email_verification_request_ignored", email_hash=hash_email(email))
                return VERIFICATION_MESSAGE
            token = secrets.token_hex(32)
            self.store.set_email_verification(
                account.id,
                fingerprint(token),
                self._clock() + timedelta(hours=self.settings.email_verification_ttl_hours),
            )
            self.notifier.notify(
                NotificationEvent.VERIFICATION_EMAIL,
                {"account_id": account.id, "email": account.email, "token": token},
            )
            logger.info("email_verification_requested", account_id=account.id)
            return VERIFICATION_MESSAGE

    # -- login --------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        device: Optional[str] = None,
        origin: Optional[str] = None,
        two_factor_code: Optional[str] = None,
    ) -> LoginResult:
        async with self._guard("login"):
            await self._enforce_rate_limit("login", origin)
            account = self.credentials.find_by_email(email) if isinstance(email, str) else None
            if not account:
                self.credentials.burn_verification(password or "")
                logger.info("login_failed", reason="unknown_email", email_hash=hash_email(email))
                raise InvalidCredentialsError()

            # a locked account never reaches the hash comparison
            self.policy.ensure_unlocked(account)
            if not self.credentials.verify_password(account, password or ""):
                logger.info("login_failed", reason="bad_password", account_id=account.id)
                self.policy.record_failure(account)
                raise InvalidCredentialsError()
            self.policy.record_success(account)
            if self.credentials.needs_rehash(account):
                self.store.set_password_hash(account.id, self.credentials.hash_password(password))
                logger.info("password_rehashed", account_id=account.id)

            self._ensure_can_sign_in(account)

            if account.two_factor.enabled:
                if not two_factor_code:
                    logger.info("login_two_factor_challenge", account_id=account.id)
                    return LoginResult(
                        account_id=account.id,
                        requires_two_factor=True,
                        two_factor_token=self.tokens.issue_two_factor(
                            account.id, account.email, account.role.value
                        ),
                    )
                self._check_second_factor(account, two_factor_code)
            return await self._open_session(account, device, origin)

    async def complete_two_factor_login(
        self,
        two_factor_token: str,
        code: str,
        device: Optional[str] = None,
        origin: Optional[str] = None,
    ) -> LoginResult:
        """Finish a login that stopped at the second factor."""
        async with self._guard("complete_two_factor_login"):
            await self._enforce_rate_limit("login", origin)
            payload = self.tokens.verify(two_factor_token, TokenType.TWO_FACTOR)
            account = self.store.get_account(payload.account_id)
            if not account:
                raise InvalidCredentialsError()
            # the account may have changed since the password step
            self.policy.ensure_unlocked(account)
            self._ensure_can_sign_in(account)
            if not account.two_factor.enabled:
                raise TwoFactorStateError("Two-factor authentication is not enabled")
            self._check_second_factor(account, code)
            return await self._open_session(account, device, origin)

    def _ensure_can_sign_in(self, account: Account) -> None:
        if not account.is_active:
            logger.info("login_blocked_inactive", account_id=account.id)
            raise AccountInactiveError("Account is inactive. Please contact support.")
        if self.settings.require_email_verification and not account.email_verified:
            logger.info("login_blocked_unverified", account_id=account.id)
            raise EmailNotVerifiedError("Please verify your email before logging in")
        decision = self.approvals.get_decision(account)
        if decision.status == ApprovalStatus.PENDING:
            logger.info("login_blocked_approval_pending", account_id=account.id)
            raise ApprovalPendingError("Your provider account is pending admin approval")
        if decision.status == ApprovalStatus.REJECTED:
            logger.info("login_blocked_approval_rejected", account_id=account.id)
            raise ApprovalRejectedError(
                "Your provider account has been rejected. Reason: "
                + (decision.reason or "No reason provided"),
                detail={"reason": decision.reason},
            )

    def _check_second_factor(self, account: Account, code: str) -> None:
        self.policy.ensure_unlocked(account, AttemptKind.TWO_FACTOR)
        if not self.two_factor.verify_login(account, code):
            logger.info("two_factor_failed", account_id=account.id)
            self.policy.record_failure(account, AttemptKind.TWO_FACTOR)
            raise InvalidTwoFactorCodeError("Invalid two-factor code")
        self.policy.record_success(account, AttemptKind.TWO_FACTOR)

    async def _open_session(
        self, account: Account, device: Optional[str], origin: Optional[str]
    ) -> LoginResult:
        session_id = self.sessions.new_session_id()
        role = account.role.value
        access = self.tokens.issue_access(account.id, account.email, role, session_id=session_id)
        refresh = self.tokens.issue_refresh(account.id, account.email, role, session_id=session_id)
        await self.sessions.create(
            account.id, access, refresh, device, origin, session_id=session_id
        )
        logger.info("login_succeeded", account_id=account.id, session_id=session_id)
        return LoginResult(
            account_id=account.id,
            access_token=access,
            refresh_token=refresh,
            session_id=session_id,
            expires_in=int(self.tokens.ttl(TokenType.ACCESS).total_seconds()),
        )

    # -- tokens and sessions ------------------------------------------------

    async def refresh(self, refresh_token: str) -> RefreshResult:
        async with self._guard("refresh"):
            payload = self.tokens.verify(refresh_token, TokenType.REFRESH)
            record = self.sessions.find_refresh_token(refresh_token)
            if (
                not record
                or not record.is_live(self._clock())
                or record.account_id != payload.account_id
            ):
                logger.warning("refresh_token_rejected", account_id=payload.account_id)
                raise TokenRevokedError("Refresh token has been revoked")
            session_id = record.session_id or payload.session_id
            session = await self.sessions.get(session_id) if session_id else None
            if not session or session.account_id != payload.account_id:
                raise SessionNotFoundError("Session not found")
            account = self.store.get_account(payload.account_id)
            if not account or not account.is_active:
                raise AccountInactiveError("Account is inactive. Please contact support.")

            role = account.role.value
            access = self.tokens.issue_access(account.id, account.email, role, session_id=session.id)
            rotated: Optional[str] = None
            if self.settings.rotate_refresh_tokens:
                rotated = self.tokens.issue_refresh(
                    account.id, account.email, role, session_id=session.id
                )
                if not self.sessions.rotate_refresh_token(record, rotated):
                    # a concurrent refresh already spent this token
                    raise TokenRevokedError("Refresh token has been revoked")
            await self.sessions.touch(session.id)
            logger.info("tokens_refreshed", account_id=account.id, session_id=session.id, rotated=bool(rotated))
            return RefreshResult(
                access_token=access,
                session_id=session.id,
                expires_in=int(self.tokens.ttl(TokenType.ACCESS).total_seconds()),
                refresh_token=rotated,
            )

    async def logout(self, session_id: str, refresh_token: Optional[str] = None) -> None:
        """Revoke one session and optionally its paired refresh token. Safe to repeat."""
        async with self._guard("logout", session_id=session_id):
            if refresh_token:
                record = self.sessions.find_refresh_token(refresh_token)
                if record and record.session_id in (None, session_id):
                    self.sessions.revoke_refresh_token(refresh_token)
            revoked = await self.sessions.revoke(session_id)
            logger.info("logout", session_id=session_id, revoked=revoked)

    async def authenticate(self, access_token: str) -> AuthContext:
        async with self._guard("authenticate"):
            payload = self.tokens.verify(access_token, TokenType.ACCESS)
            session = await self.sessions.get(payload.session_id) if payload.session_id else None
            if not session or session.account_id != payload.account_id:
                raise SessionNotFoundError("Session not found")
            await self.sessions.touch(session.id)
            return AuthContext(
                account_id=payload.account_id,
                email=payload.email,
                role=payload.role,
                session_id=session.id,
            )

    def list_sessions(self, account_id: str) -> List[SessionInfo]:
        return self.sessions.list(account_id)

    async def revoke_session(self, session_id: str, *, account_id: Optional[str] = None) -> None:
        """Revoke a session; with ``account_id`` the session must belong to that account."""
        async with self._guard("revoke_session", session_id=session_id):
            if account_id is not None:
                session = await self.sessions.get(session_id)
                if not session or session.account_id != account_id:
                    raise SessionNotFoundError("Session not found")
            if not await self.sessions.revoke(session_id):
                raise SessionNotFoundError("Session not found")

    async def revoke_all_sessions(self, account_id: str) -> int:
        async with self._guard("revoke_all_sessions", account_id=account_id):
            return await self.sessions.revoke_all(account_id)

    # -- passwords ----------------------------------------------------------

    async def request_password_reset(self, email: str) -> str:
        async with self._guard("request_password_reset"):
            account = self.store.get_account_by_email(email) if isinstance(email, str) else None
            if not account or not account.is_active:
                logger.info("password_reset_request_ignored", email_hash=hash_email(email))
                return PASSWORD_RESET_MESSAGE
            token = secrets.token_urlsafe(32)
            self.store.set_password_reset(
                account.id,
                fingerprint(token),
                self._clock() + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
            self.notifier.notify(
                NotificationEvent.PASSWORD_RESET,
                {"account_id": account.id, "email": account.email, "token": token},
            )
            logger.info("password_reset_requested", account_id=account.id)
            return PASSWORD_RESET_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        async with self._guard("reset_password"):
            if not isinstance(token, str) or not token:
                raise InvalidTokenError("Invalid or expired reset token")
            # a weak password must not burn the single-use token
            check_password_strength(new_password)
            account = self.store.consume_password_reset(fingerprint(token), self._clock())
            if not account:
                logger.warning("password_reset_invalid_token")
                raise InvalidTokenError("Invalid or expired reset token")
            self.credentials.set_password(account, new_password)
            revoked = await self.sessions.revoke_all(account.id)
            logger.info("password_reset_completed", account_id=account.id, sessions_revoked=revoked)

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        async with self._guard("change_password", account_id=account_id):
            account = self._require_account(account_id)
            self.policy.ensure_unlocked(account)
            if not self.credentials.verify_password(account, current_password or ""):
                logger.warning("password_change_rejected", account_id=account.id)
                self.policy.record_failure(account)
                raise InvalidPasswordError("Current password is incorrect")
            self.policy.record_success(account)
            self.credentials.set_password(account, new_password)
            revoked = await self.sessions.revoke_all(account.id)
            logger.info("password_change_completed", account_id=account.id, sessions_revoked=revoked)

    # -- two-factor ---------------------------------------------------------

    async def enroll_2fa(self, account_id: str, password: str) -> Enrollment:
        async with self._guard("enroll_2fa", account_id=account_id):
            account = self._require_account(account_id)
            self.policy.ensure_unlocked(account)
            self.policy.ensure_unlocked(account, AttemptKind.TWO_FACTOR)
            try:
                return self.two_factor.begin_enrollment(account, password)
            except InvalidPasswordError:
                self.policy.record_failure(account, AttemptKind.TWO_FACTOR)
                raise

    async def confirm_2fa(self, account_id: str, code: str) -> None:
        async with self._guard("confirm_2fa", account_id=account_id):
            account = self._require_account(account_id)
            self.policy.ensure_unlocked(account, AttemptKind.TWO_FACTOR)
            try:
                self.two_factor.confirm_enrollment(account, code)
            except InvalidTwoFactorCodeError:
                self.policy.record_failure(account, AttemptKind.TWO_FACTOR)
                raise
            self.policy.record_success(account, AttemptKind.TWO_FACTOR)
            self.notifier.notify(
                NotificationEvent.TWO_FACTOR_ENABLED,
                {"account_id": account.id, "email": account.email},
            )

    async def disable_2fa(self, account_id: str, password: str, code: Optional[str] = None) -> None:
        async with self._guard("disable_2fa", account_id=account_id):
            account = self._require_account(account_id)
            self.policy.ensure_unlocked(account)
            self.policy.ensure_unlocked(account, AttemptKind.TWO_FACTOR)
            try:
                self.two_factor.disable(account, password, code)
            except (InvalidPasswordError, InvalidTwoFactorCodeError):
                self.policy.record_failure(account, AttemptKind.TWO_FACTOR)
                raise

    # -- account ------------------------------------------------------------

    def get_account(self, account_id: str) -> Account:
        return self._require_account(account_id)

    async def update_profile(self, account_id: str, profile: dict) -> dict:
        async with self._guard("update_profile", account_id=account_id):
            account = self._require_account(account_id)
            parsed = parse_profile(account.role, profile)
            try:
                updated = self.store.update_profile(account.id, dump_profile(parsed), parsed.phone)
            except ConstraintViolation:
                raise DuplicateEmailError(
                    "Phone number already registered", detail={"field": "phone"}
                )
            logger.info("profile_updated", account_id=account.id)
            return updated.profile

    async def deactivate_account(self, account_id: str) -> None:
        async with self._guard("deactivate_account", account_id=account_id):
            account = self._require_account(account_id)
            self.store.set_active(account.id, False)
            revoked = await self.sessions.revoke_all(account.id)
            logger.warning("account_deactivated", account_id=account.id, sessions_revoked=revoked)

    def purge_expired(self) -> int:
        return self.sessions.purge_expired()

    async def drain_notifications(self) -> None:
        await self.notifier.drain()
