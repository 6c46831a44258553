"""
Redis-based distributed lock.

Used by the dispatch worker so only one process runs a reassignment sweep
at a time.  The claim path never takes this lock.

Acquire is SET NX PX; release and extend are Lua scripts that act only
while the caller still owns the token.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    pass


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: float = 30
    ):
        self.redis = client
        self.key = f"dispatch:lock:{key}"
        self.ttl_ms = int(ttl_seconds * 1000)
        self.token = uuid.uuid4().hex

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, px=self.ttl_ms)
        )

    async def extend(self) -> bool:
        """Push the expiry forward if we still own the lock."""
        return bool(
            await self.redis.eval(
                _EXTEND_SCRIPT, 1, self.key, self.token, self.ttl_ms
            )
        )

    async def release(self) -> None:
        await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token)

    async def __aenter__(self):
        if not await self.acquire():
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()
