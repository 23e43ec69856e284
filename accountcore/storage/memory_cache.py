from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Set, Tuple, Union

from accountcore.storage.models import Session, utcnow


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Same async surface and TTL semantics, driven by an injectable clock so
    expiry can be exercised without sleeping. Used under TEST_MODE and as the
    fallback when Redis is unreachable and fallback is allowed.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[Session, datetime]] = {}
        self._index: Dict[str, Set[str]] = {}
        self._buckets: Dict[str, Tuple[int, datetime]] = {}

    def verify_connection(self) -> None:
        return None

    def ttl_seconds(self, session_id: str) -> Optional[int]:
        """Remaining TTL of a cached session, or None when absent."""
        with self._lock:
            entry = self._live(session_id)
            if not entry:
                return None
            return max(0, int((entry[1] - self._clock()).total_seconds()))

    def _live(self, session_id: str) -> Optional[Tuple[Session, datetime]]:
        entry = self._sessions.get(session_id)
        if entry and entry[1] <= self._clock():
            del self._sessions[session_id]
            return None
        return entry

    async def put_session(self, session: Session, now: Optional[datetime] = None) -> None:
        now = now or self._clock()
        ttl = max(1, int((session.expires_at - now).total_seconds()))
        with self._lock:
            self._sessions[session.id] = (Session.from_dict(session.to_dict()), now + timedelta(seconds=ttl))
            self._index.setdefault(session.account_id, set()).add(session.id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            entry = self._live(session_id)
            return Session.from_dict(entry[0].to_dict()) if entry else None

    async def touch_session(self, session_id: str, last_activity_at: datetime) -> bool:
        with self._lock:
            entry = self._live(session_id)
            if not entry:
                return False
            entry[0].last_activity_at = last_activity_at
            return True

    async def delete_session(self, session_id: str, account_id: Optional[str] = None) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            if account_id:
                self._index.get(account_id, set()).discard(session_id)

    async def account_session_ids(self, account_id: str) -> Set[str]:
        with self._lock:
            return set(self._index.get(account_id, set()))

    async def delete_account_sessions(
        self, account_id: str, extra_session_ids: Iterable[str] = ()
    ) -> int:
        with self._lock:
            session_ids = self._index.pop(account_id, set()) | set(extra_session_ids)
            for session_id in session_ids:
                self._sessions.pop(session_id, None)
            return len(session_ids)

    def _evict_expired_buckets(self, now: datetime) -> None:
        expired = [key for key, (_, window_end) in self._buckets.items() if window_end <= now]
        for key in expired:
            del self._buckets[key]

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Fixed-window counter; coarser than the Redis token bucket."""
        now = self._clock()
        with self._lock:
            self._evict_expired_buckets(now)
            count, window_end = self._buckets.get(key, (0, now))
            if window_end <= now:
                count, window_end = 0, now + timedelta(seconds=window_seconds)
            allowed = count + cost <= limit
            if allowed:
                count += cost
            self._buckets[key] = (count, window_end)
            remaining = max(0, limit - count)
            reset_after = 0 if allowed else max(1, int((window_end - now).total_seconds()))
        if return_remaining:
            return (allowed, remaining, reset_after)
        return allowed

    async def close(self) -> None:
        return None
