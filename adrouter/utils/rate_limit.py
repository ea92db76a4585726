"""In-process sliding-window rate limiter for operator actions."""
import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateRule:
    limit: int
    window_seconds: int


# Buckets used by the HTTP layer.
RATE_RULES: Dict[str, RateRule] = {
    "create": RateRule(limit=20, window_seconds=60),
    "queue_action": RateRule(limit=50, window_seconds=60),
    "digest": RateRule(limit=10, window_seconds=60),
    "suggestion": RateRule(limit=5, window_seconds=3600),
}


class RateLimiter:
    """
    Per (actor, bucket) sliding window.

    State lives in memory, so limits apply per process.
    """

    def __init__(self, rules: Dict[str, RateRule] | None = None, *, enabled: bool = True):
        self.rules = dict(rules or RATE_RULES)
        self.enabled = enabled
        self._hits: Dict[Tuple[str, str], Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def hit(self, actor_id: str, bucket: str) -> Tuple[bool, int]:
        """
        Record one request.

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        rule = self.rules.get(bucket)
        if not self.enabled or rule is None:
            return True, 0

        now = time.monotonic()
        async with self._lock:
            hits = self._hits[(actor_id, bucket)]
            while hits and now - hits[0] >= rule.window_seconds:
                hits.popleft()
            if len(hits) >= rule.limit:
                retry_after = int(rule.window_seconds - (now - hits[0])) + 1
                logger.warning(f"Rate limit hit: actor={actor_id} bucket={bucket} limit={rule.limit}")
                return False, retry_after
            hits.append(now)
            return True, 0

    def reset(self) -> None:
        self._hits.clear()
