from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol, Set

from accountcore.config import Settings
from accountcore.logging import get_logger
from accountcore.service.tokens import fingerprint
from accountcore.storage.models import RefreshTokenRecord, Session, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...

    def delete_session(self, session_id: str) -> Optional[Session]: ...

    def delete_account_sessions(self, account_id: str) -> List[str]: ...

    def list_account_sessions(self, account_id: str, now: datetime) -> List[Session]: ...

    def save_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def revoke_session_refresh_tokens(self, session_id: str) -> int: ...

    def revoke_account_refresh_tokens(self, account_id: str) -> int: ...

    def purge_expired(self, now: datetime) -> int: ...


class SessionCache(Protocol):
    async def put_session(self, session: Session, now: Optional[datetime] = None) -> None: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def touch_session(self, session_id: str, last_activity_at: datetime) -> bool: ...

    async def delete_session(self, session_id: str, account_id: Optional[str] = None) -> None: ...

    async def account_session_ids(self, account_id: str) -> Set[str]: ...

    async def delete_account_sessions(
        self, account_id: str, extra_session_ids: Iterable[str] = ()
    ) -> int: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...


@dataclass
class SessionInfo:
    session_id: str
    device: Optional[str]
    origin: Optional[str]
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime


class SessionRegistry:
    """Login sessions and their refresh-token records.

    The durable store is the source of truth and the cache is best effort.
    Cache misses fall through to the store and repopulate the cache.
    Revocation always hits the store first.
    """

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[SessionCache],
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self.session_ttl = timedelta(minutes=settings.session_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    @staticmethod
    def new_session_id() -> str:
        return str(uuid.uuid4())

    async def create(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str,
        device: Optional[str],
        origin: Optional[str],
        *,
        session_id: Optional[str] = None,
    ) -> Session:
        now = self._clock()
        session = Session.new(
            account_id,
            ttl_minutes=self.settings.session_ttl_minutes,
            device=device,
            origin=origin,
            session_id=session_id,
            now=now,
            access_token_fingerprint=fingerprint(access_token),
            refresh_token_fingerprint=fingerprint(refresh_token),
        )
        self.store.create_session(session)
        self._save_refresh(account_id, refresh_token, session.id, device, origin, now)
        await self._cache_put(session, now)
        logger.info("session_created", account_id=account_id, session_id=session.id)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        now = self._clock()
        if self.cache:
            try:
                cached = await self.cache.get_session(session_id)
            except Exception as exc:
                logger.warning("session_cache_read_failed", session_id=session_id, error=str(exc))
                cached = None
            if cached and not cached.is_expired(now):
                return cached
        session = self.store.get_session(session_id)
        if not session:
            return None
        if session.is_expired(now):
            self.store.delete_session(session_id)
            self.store.revoke_session_refresh_tokens(session_id)
            return None
        await self._cache_put(session, now)
        return session

    async def touch(self, session_id: str) -> bool:
        now = self._clock()
        if not self.store.touch_session(session_id, now):
            return False
        if self.cache:
            try:
                await self.cache.touch_session(session_id, now)
            except Exception as exc:
                logger.warning("session_cache_touch_failed", session_id=session_id, error=str(exc))
        return True

    async def revoke(self, session_id: str) -> bool:
        """Remove one session and its refresh tokens; False when nothing was there."""
        session = self.store.delete_session(session_id)
        self.store.revoke_session_refresh_tokens(session_id)
        if self.cache:
            try:
                await self.cache.delete_session(session_id, session.account_id if session else None)
            except Exception as exc:
                logger.warning("session_cache_revoke_failed", session_id=session_id, error=str(exc))
        if session:
            logger.info("session_revoked", account_id=session.account_id, session_id=session_id)
        return session is not None

    async def revoke_all(self, account_id: str) -> int:
        removed = self.store.delete_account_sessions(account_id)
        self.store.revoke_account_refresh_tokens(account_id)
        if self.cache:
            try:
                await self.cache.delete_account_sessions(account_id, removed)
            except Exception as exc:
                # refresh records are already revoked in the store, so a stale
                # entry cannot outlive the access tokens already issued
                logger.warning(
                    "revoke_account_sessions_cache_clear_failed",
                    account_id=account_id,
                    error=str(exc),
                )
        logger.info("sessions_revoked_all", account_id=account_id, count=len(removed))
        return len(removed)

    def list(self, account_id: str) -> List[SessionInfo]:
        return [
            SessionInfo(
                session_id=s.id,
                device=s.device,
                origin=s.origin,
                created_at=s.created_at,
                last_activity_at=s.last_activity_at,
                expires_at=s.expires_at,
            )
            for s in self.store.list_account_sessions(account_id, self._clock())
        ]

    def find_refresh_token(self, refresh_token: str) -> Optional[RefreshTokenRecord]:
        return self.store.get_refresh_token(fingerprint(refresh_token))

    def revoke_refresh_token(self, refresh_token: str) -> bool:
        return self.store.revoke_refresh_token(fingerprint(refresh_token))

    def rotate_refresh_token(self, record: RefreshTokenRecord, new_refresh_token: str) -> bool:
        """Swap a refresh record for a new one; False if another caller rotated it first."""
        if not self.store.revoke_refresh_token(record.token_hash):
            return False
        self._save_refresh(
            record.account_id,
            new_refresh_token,
            record.session_id,
            record.device,
            record.origin,
            self._clock(),
        )
        return True

    def purge_expired(self) -> int:
        removed = self.store.purge_expired(self._clock())
        if removed:
            logger.info("expired_auth_records_purged", count=removed)
        return removed

    def _save_refresh(
        self,
        account_id: str,
        refresh_token: str,
        session_id: Optional[str],
        device: Optional[str],
        origin: Optional[str],
        now: datetime,
    ) -> None:
        self.store.save_refresh_token(
            RefreshTokenRecord(
                token_hash=fingerprint(refresh_token),
                account_id=account_id,
                session_id=session_id,
                device=device,
                origin=origin,
                created_at=now,
                expires_at=now + self.refresh_ttl,
            )
        )

    async def _cache_put(self, session: Session, now: datetime) -> None:
        if not self.cache:
            return
        try:
            await self.cache.put_session(session, now)
        except Exception as exc:
            logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))
