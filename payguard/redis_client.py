"""
Redis-backed rate limit counters for multi-instance deployments
"""
import logging
from typing import Any, Dict

import redis

from .error_handling import ErrorCodes, ServiceError
from .rate_limiter import CounterStore

logger = logging.getLogger(__name__)

# KEYS[1] counter key; ARGV[1] limit; ARGV[2] ttl seconds.
# Read, saturating increment and expiry run as one atomic step on the server.
INCREMENT_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count <= tonumber(ARGV[1]) then
    count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('EXPIRE', KEYS[1], ARGV[2])
    end
end
return count
"""

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: str, timeout_seconds: float = 2.0, client=None):
        self.client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        self._increment = self.client.register_script(INCREMENT_SCRIPT)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def increment_window_counter(self, key: str, limit: int, ttl_seconds: int) -> int:
        return int(self._increment(keys=[key], args=[limit, ttl_seconds]))

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get Redis cache statistics"""
        try:
            info = self.client.info()
            return {
                "connected": True,
                "used_memory": info.get("used_memory_human", "0B"),
                "connected_clients": info.get("connected_clients", 0),
            }
        except redis.RedisError as e:
            logger.error(f"Failed to get cache stats: {e}")
            return {"connected": False, "error": str(e)}

class RedisCounterStore(CounterStore):
    def __init__(self, redis_client: RedisClient):
        self.redis = redis_client

    def increment(self, key, window_start, window_seconds, limit):
        try:
            return self.redis.increment_window_counter(f"{key}:{window_start}", limit, window_seconds)
        except redis.RedisError as e:
            raise ServiceError(ErrorCodes.SERVICE_UNAVAILABLE, "Rate limit store unavailable", e)

    def stats(self):
        # keys expire server-side, so sweep stays the base no-op
        stats = {"backend": "redis", "ok": self.redis.ping()}
        if stats["ok"]:
            stats.update(self.redis.get_cache_stats())
        return stats
