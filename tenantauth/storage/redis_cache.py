from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis


class RedisCache:
    """Shared cache for revocation entries, MFA sessions and one-time codes."""

    _COMPARE_AND_DELETE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return 1
end
return 0
"""

    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key`` so only one caller ever sees the value."""
        return await self.client.getdel(key)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        result = await self.client.eval(self._COMPARE_AND_DELETE_SCRIPT, 1, key, expected)
        return bool(result)

    async def record_mfa_failure(
        self, subject: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        """Atomically record a failed MFA attempt and trigger lockout at the limit.

        Returns:
            Tuple of (is_locked_out, current_attempts); attempts is -1 when the
            subject was already locked.
        """
        lockout_key = f"mfa:lockout:{subject}"
        attempts_key = f"mfa:attempts:{subject}"
        result = await self.client.eval(
            self._MFA_ATTEMPT_SCRIPT,
            2,
            lockout_key,
            attempts_key,
            max_attempts,
            lockout_seconds,
        )
        return (bool(result[0]), int(result[1]))

    async def is_mfa_locked(self, subject: str) -> bool:
        return bool(await self.client.exists(f"mfa:lockout:{subject}"))

    async def clear_mfa_failures(self, subject: str) -> None:
        await self.client.delete(f"mfa:attempts:{subject}")

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
