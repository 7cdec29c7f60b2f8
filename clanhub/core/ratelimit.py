"""Per-actor cooldowns.

With Redis available a cooldown is a ``SET NX PX`` key, shared by every
server process. Without Redis the limiter keeps a process-local map that
resets on restart.
"""

import logging
import math
import time
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

from clanhub.utils.constants import CACHE_SETTINGS
from clanhub.utils.errors import RateLimited

logger = logging.getLogger('ClanHub')

class RateLimiter:
    def __init__(self, redis_client=None, clock: Callable[[], float] = time.monotonic):
        self.redis = redis_client
        self._clock = clock
        self._local: Dict[str, float] = {}

    @staticmethod
    def _key(scope: str, actor: str) -> str:
        return f"{CACHE_SETTINGS['KEY_PREFIX']}:cooldown:{scope}:{actor}"

    def _hit_local(self, key: str, cooldown: int) -> int:
        now = self._clock()
        for stale in [k for k, expires in self._local.items() if expires <= now]:
            del self._local[stale]

        expires = self._local.get(key)
        if expires is not None:
            return math.ceil(expires - now)
        self._local[key] = now + cooldown
        return 0

    async def hit(self, scope: str, actor: Optional[str], cooldown: int) -> int:
        """Start the cooldown if idle and return 0, else return the seconds left"""
        key = self._key(scope, actor or 'global')

        if self.redis is not None:
            try:
                if await self.redis.set(key, '1', nx=True, px=cooldown * 1000):
                    return 0
                remaining_ms = await self.redis.pttl(key)
                return max(1, math.ceil(remaining_ms / 1000)) if remaining_ms > 0 else 1
            except RedisError as e:
                logger.warning(f"Redis cooldown check failed, using local limiter: {e}")

        return self._hit_local(key, cooldown)

    async def enforce(self, scope: str, actor: Optional[str], cooldown: int) -> None:
        """Raise RateLimited while the cooldown is running"""
        wait = await self.hit(scope, actor, cooldown)
        if wait > 0:
            raise RateLimited(
                f"Please wait {wait}s before trying again",
                code='RATE_LIMITED',
                retry_after=wait,
            )
