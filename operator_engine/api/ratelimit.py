"""
Sliding-window rate limiter for execution endpoints.

In-process only. Keys are ``<actor>:<bucket>`` so each actor gets an
independent allowance per endpoint family.
"""

import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from operator_engine.errors import RateLimitError
from operator_engine.logging import get_logger

logger = get_logger("operator_engine.ratelimit")


class SlidingWindowRateLimiter:
    """At most ``limit`` admissions per key in any ``window_seconds`` span."""

    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock or time.monotonic
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _make_key(self, actor_id: str, bucket: str) -> str:
        return f"{actor_id}:{bucket}"

    def check(self, actor_id: str, bucket: str = "execute") -> int:
        """
        Admit one request or raise RateLimitError. Returns the remaining
        allowance after this request.
        """
        key = self._make_key(actor_id, bucket)
        now = self.clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                retry_after = max(1, math.ceil(hits[0] + self.window_seconds - now))
                logger.warning(
                    "ratelimit.exceeded",
                    actor=actor_id,
                    bucket=bucket,
                    limit=self.limit,
                    retry_after=retry_after,
                )
                raise RateLimitError(retry_after, details={"limit": self.limit, "bucket": bucket})
            hits.append(now)
            return self.limit - len(hits)

    def reset(self, actor_id: str, bucket: str = "execute") -> None:
        with self._lock:
            self._hits.pop(self._make_key(actor_id, bucket), None)
