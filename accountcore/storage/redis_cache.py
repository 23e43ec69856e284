from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Iterable, Optional, Set, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from accountcore.storage.models import Session


class RedisCache:
    """Redis-backed session cache and rate limiter.

    Session records live under ``auth:session:{id}`` as JSON with a TTL equal
    to the session's remaining lifetime; ``auth:account_sessions:{account_id}``
    is a set of session ids used for bulk revocation.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def _index_key(account_id: str) -> str:
        return f"auth:account_sessions:{account_id}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Remaining lifetime in whole seconds, clamped to at least 1.

        Naive timestamps are treated as UTC.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - now).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put_session(self, session: Session, now: Optional[datetime] = None) -> None:
        ttl = self._ttl_seconds(session.expires_at, now)
        index_key = self._index_key(session.account_id)
        pipe = self.client.pipeline()
        pipe.set(self._session_key(session.id), json.dumps(session.to_dict()), ex=ttl)
        pipe.sadd(index_key, session.id)
        # the index lives as long as its longest-lived session; never shorten it
        pipe.expire(index_key, ttl, nx=True)
        pipe.expire(index_key, ttl, gt=True)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(self._session_key(session_id))
        if not raw:
            return None
        return Session.from_dict(json.loads(raw))

    async def touch_session(self, session_id: str, last_activity_at: datetime) -> bool:
        """Update last activity in place, keeping the entry's remaining TTL."""
        key = self._session_key(session_id)
        raw = await self.client.get(key)
        if not raw:
            return False
        data = json.loads(raw)
        data["last_activity_at"] = last_activity_at.isoformat()
        return bool(await self.client.set(key, json.dumps(data), xx=True, keepttl=True))

    async def delete_session(self, session_id: str, account_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(self._session_key(session_id))
        if account_id:
            pipe.srem(self._index_key(account_id), session_id)
        await pipe.execute()

    async def account_session_ids(self, account_id: str) -> Set[str]:
        return set(await self.client.smembers(self._index_key(account_id)))

    async def delete_account_sessions(
        self, account_id: str, extra_session_ids: Iterable[str] = ()
    ) -> int:
        """Drop every cached session for an account plus any ids the caller already knows."""
        index_key = self._index_key(account_id)
        session_ids = set(await self.client.smembers(index_key)) | set(extra_session_ids)
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(self._session_key(session_id))
        pipe.delete(index_key)
        await pipe.execute()
        return len(session_ids)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket refilled at ``limit / window_seconds`` per second."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        await self.client.aclose()
