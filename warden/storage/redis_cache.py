from __future__ import annotations

import hashlib
import uuid
from typing import List, Optional

from redis import Redis

from warden.storage.models import CounterAcquire, CounterWindow


class RedisCounterStore:
    """Sliding-log attempt counters shared through Redis sorted sets.

    Each limiter key is a sorted set of attempt ids scored by their epoch
    timestamp. The prune, count and append run inside one Lua script so
    concurrent processes never over-admit.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    _SLIDING_LOG_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')

if count >= limit then
  return {0, count, oldest[2] or ''}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, math.ceil(window * 1000))
if oldest[2] == nil then
  return {1, count + 1, ARGV[1]}
end
return {1, count + 1, oldest[2]}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        namespace: str = "warden:rl",
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_log = self.client.register_script(self._SLIDING_LOG_SCRIPT)

    @property
    def _index_key(self) -> str:
        return f"{self.namespace}:index"

    def _redis_key(self, key: str) -> str:
        # Hash the logical key so user-supplied emails cannot inject delimiters
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{self.namespace}:{digest}"

    @staticmethod
    def _parse_score(raw) -> Optional[float]:
        if raw in (None, ""):
            return None
        return float(raw)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared counters."""
        self.client.ping()

    def try_acquire(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> CounterAcquire:
        redis_key = self._redis_key(key)
        attempt_id = uuid.uuid4().hex
        allowed, count, oldest = self._sliding_log(
            keys=[redis_key], args=[repr(now), window_seconds, limit, attempt_id]
        )
        if int(allowed) == 1:
            self.client.hset(self._index_key, redis_key, key)
            return CounterAcquire(
                allowed=True,
                attempt_id=attempt_id,
                count=int(count),
                oldest=self._parse_score(oldest),
            )
        return CounterAcquire(
            allowed=False,
            attempt_id=None,
            count=int(count),
            oldest=self._parse_score(oldest),
        )

    def release(self, key: str, attempt_id: str) -> bool:
        return bool(self.client.zrem(self._redis_key(key), attempt_id))

    def snapshot(self, key: str, window_seconds: float, now: float) -> CounterWindow:
        redis_key = self._redis_key(key)
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        _, count, oldest = pipe.execute()
        if not count:
            return CounterWindow(count=0)
        return CounterWindow(count=int(count), oldest=float(oldest[0][1]))

    def reset(self, key: str) -> None:
        redis_key = self._redis_key(key)
        pipe = self.client.pipeline()
        pipe.delete(redis_key)
        pipe.hdel(self._index_key, redis_key)
        pipe.execute()

    def reset_all(self) -> None:
        redis_keys = list(self.client.hkeys(self._index_key))
        pipe = self.client.pipeline()
        for redis_key in redis_keys:
            pipe.delete(redis_key)
        pipe.delete(self._index_key)
        pipe.execute()

    def keys(self) -> List[str]:
        return list(self.client.hvals(self._index_key))

    def purge(self, window_seconds: float, now: float) -> int:
        removed = 0
        for redis_key in list(self.client.hkeys(self._index_key)):
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
            pipe.zcard(redis_key)
            _, count = pipe.execute()
            if not count:
                self.client.hdel(self._index_key, redis_key)
                self.client.delete(redis_key)
                removed += 1
        return removed
