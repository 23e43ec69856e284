from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from accountcore.config import Settings
from accountcore.logging import get_logger
from accountcore.service.credentials import AccountStore
from accountcore.service.errors import AccountLockedError
from accountcore.service.notifications import NotificationEvent, Notifier
from accountcore.storage.models import Account, AttemptKind, LockoutState, utcnow

logger = get_logger(__name__)


class LoginPolicy:
    """Brute-force lockout per account.

    Password failures and second-factor failures are counted separately.
    The counting itself happens in the store so concurrent failures cannot
    race past the threshold.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self._clock = clock
        self._limits = {
            AttemptKind.PASSWORD: (
                settings.max_login_attempts,
                timedelta(minutes=settings.lockout_window_minutes),
                timedelta(minutes=settings.lockout_duration_minutes),
            ),
            AttemptKind.TWO_FACTOR: (
                settings.two_factor_max_attempts,
                timedelta(minutes=settings.two_factor_lockout_minutes),
                timedelta(minutes=settings.two_factor_lockout_minutes),
            ),
        }

    def ensure_unlocked(self, account: Account, kind: AttemptKind = AttemptKind.PASSWORD) -> None:
        now = self._clock()
        state = account.lockout_for(kind)
        if state.is_locked(now):
            logger.info("login_blocked_locked", account_id=account.id, kind=kind.value)
            raise AccountLockedError(state.retry_after_seconds(now), detail={"kind": kind.value})

    def record_failure(
        self, account: Account, kind: AttemptKind = AttemptKind.PASSWORD
    ) -> LockoutState:
        """Count one failure; raises AccountLockedError when it crosses the threshold."""
        threshold, window, duration = self._limits[kind]
        now = self._clock()
        state = self.store.record_failed_attempt(
            account.id,
            kind,
            threshold=threshold,
            window=window,
            lock_duration=duration,
            now=now,
        )
        if not state.is_locked(now):
            logger.info(
                "login_attempt_failed",
                account_id=account.id,
                kind=kind.value,
                failed_attempts=state.failed_attempts,
            )
            return state
        retry_after = state.retry_after_seconds(now)
        if state.locked_until != now + duration:
            # already locked by an earlier failure
            raise AccountLockedError(retry_after, detail={"kind": kind.value})
        logger.warning(
            "account_locked",
            account_id=account.id,
            kind=kind.value,
            locked_until=state.locked_until.isoformat(),
        )
        if kind == AttemptKind.PASSWORD:
            self.notifier.notify(
                NotificationEvent.ACCOUNT_LOCKED,
                {
                    "account_id": account.id,
                    "email": account.email,
                    "locked_until": state.locked_until.isoformat(),
                    "retry_after_seconds": retry_after,
                },
            )
        raise AccountLockedError(retry_after, detail={"kind": kind.value})

    def record_success(self, account: Account, kind: AttemptKind = AttemptKind.PASSWORD) -> None:
        """Clear the failure counter. An active lock is left alone."""
        state = account.lockout_for(kind)
        if state.failed_attempts or state.last_failed_at:
            self.store.reset_failed_attempts(account.id, kind)
