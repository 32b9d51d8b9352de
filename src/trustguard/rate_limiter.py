"""TrustRateLimiter — Fixed-window rate limiting keyed by trust band.

Each band carries (max_requests, window, penalty_multiplier). A user's
window restarts whenever their band changes. When the limit is hit, the
retry delay grows as trust weight falls:

    retry_after = ceil(window_s · (1 + (1 − trust_weight) · penalty_multiplier))

Usage:
    limiter = TrustRateLimiter(trust_manager)

    result = await limiter.check("alice")
    if not result.allowed:
        return 429, {"retry_after": result.retry_after}
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .errors import StoreError
from .models import RateLimitParams, TrustLevel
from .trust import TrustScoreManager

logger = logging.getLogger(__name__)


def penalty_retry_after(params: RateLimitParams, trust_weight: float) -> int:
    return math.ceil(params.window_seconds * (1 + (1 - trust_weight) * params.penalty_multiplier))


@dataclass
class RateCheckResult:
    """Result of a rate limit check."""
    allowed: bool
    level: TrustLevel
    limit: int
    remaining: int
    retry_after: int = 0
    reset_at: float = 0.0
    user_id: str = ""
    trust_weight: float = 0.0


@dataclass
class _UserWindow:
    level: TrustLevel
    started_at: float
    count: int = 0


class TrustRateLimiter:
    """Per-user fixed windows sized by the user's current trust band."""

    def __init__(self, trust: TrustScoreManager, clock: Callable[[], float] = time.time):
        self._trust = trust
        self._clock = clock
        self._windows: dict[str, _UserWindow] = {}
        self._lock = threading.Lock()

    def trust_weight(self, overall: float) -> float:
        return min(1.0, overall * self._trust.config.attack_resistance.trust_weight_multiplier)

    async def check(self, user_id: str, now: float | None = None) -> RateCheckResult:
        """Count one request for ``user_id`` and report whether it is allowed.

        The band comes from the stored score. With the store down and nothing
        cached, the lowest band and a zero trust weight apply.
        """
        if now is None:
            now = self._clock()

        try:
            score = await self._trust.get_trust_score(user_id)
        except StoreError:
            logger.warning("Trust data unavailable for %s, rate limiting at lowest band", user_id)
            score = None
        threshold = (self._trust.threshold_for_score(score.overall) if score is not None
                     else self._trust.lowest_threshold)
        level = threshold.level
        params = self._trust.config.rate_limits[level].to_params()
        weight = self.trust_weight(score.overall) if score is not None else 0.0

        with self._lock:
            window = self._windows.get(user_id)
            if window is None or window.level != level or now - window.started_at >= params.window_seconds:
                window = _UserWindow(level=level, started_at=now)
                self._windows[user_id] = window

            reset_at = window.started_at + params.window_seconds
            if window.count >= params.max_requests:
                return RateCheckResult(
                    allowed=False,
                    level=level,
                    limit=params.max_requests,
                    remaining=0,
                    retry_after=penalty_retry_after(params, weight),
                    reset_at=reset_at,
                    user_id=user_id,
                    trust_weight=weight,
                )
            window.count += 1
            return RateCheckResult(
                allowed=True,
                level=level,
                limit=params.max_requests,
                remaining=params.max_requests - window.count,
                reset_at=reset_at,
                user_id=user_id,
                trust_weight=weight,
            )

    def reset(self, user_id: str) -> None:
        with self._lock:
            self._windows.pop(user_id, None)

    def reset_all(self) -> None:
        with self._lock:
            self._windows.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "total_users": len(self._windows),
                "users": {
                    user_id: {"level": w.level.value, "count": w.count, "started_at": w.started_at}
                    for user_id, w in self._windows.items()
                },
            }
