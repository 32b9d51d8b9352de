"""
trustguard.trust — Trust Score Manager.

Owns every user's TrustScore. A scored action nudges one factor through a
fixed impact table, the overall score is recomputed as a weighted sum of
factors, then inactivity decay and a recency-decaying boost are applied:

    overall = clamp(Σ weight·factor)           (response_time inverted)
            − min(0.3, 0.001 · days beyond 30)  (never below the 0.1 floor)
            + 0.05 · e^(−0.01 · days)          (report / confirm / endorse)

Updates for one user are serialized with a per-user asyncio.Lock; different
users proceed in parallel. The cache is updated before the store, and a
failed save is surfaced without rolling the cache back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import statistics
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from .cache import KeyedCache
from .collaborators import AlertSink, MfaProvider, record_alert_safely
from .config import EngineConfig
from .errors import StoreError
from .models import (
    ACCURACY_FACTORS,
    BOUNDED_FACTORS,
    ActionKind,
    ActionPermission,
    RateLimitParams,
    RequestAction,
    Reputation,
    TrustCalculation,
    TrustFactors,
    TrustHistoryEntry,
    TrustScore,
    TrustThreshold,
)
from .records import Severity
from .store import DataStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
NEUTRAL_SCORE = 0.5

# action -> (factor, trust impact, reason)
IMPACT_TABLE: dict[ActionKind, tuple[str, float, str]] = {
    ActionKind.REPORT: ("reporting_accuracy", 0.02, "Emergency report submitted"),
    ActionKind.CONFIRM: ("confirmation_accuracy", 0.03, "Emergency event confirmed"),
    ActionKind.DISPUTE: ("dispute_accuracy", -0.02, "Emergency event disputed"),
    ActionKind.ENDORSE: ("community_endorsement", 0.01, "User endorsed"),
    ActionKind.MODERATE: ("community_endorsement", 0.01, "Content moderated"),
    ActionKind.PENALTY: ("penalty_score", -0.05, "Penalty applied"),
    ActionKind.BOOST: ("community_endorsement", 0.05, "Trust boost applied"),
}

CONTRIBUTING_ACTIONS = frozenset({ActionKind.REPORT, ActionKind.CONFIRM, ActionKind.DISPUTE})
BOOSTED_ACTIONS = frozenset({ActionKind.REPORT, ActionKind.CONFIRM, ActionKind.ENDORSE})

CONTRIBUTION_STEP = 0.01
CONSISTENCY_SMOOTHING = 0.1
EVIDENCE_SMOOTHING = 0.2
RESPONSE_TIME_CEILING_SECONDS = 1800.0
LOCATION_ERROR_CEILING_METERS = 1000.0

_CONFIDENCE_FACTORS = (
    "reporting_accuracy",
    "confirmation_accuracy",
    "dispute_accuracy",
    "response_time",
    "location_accuracy",
    "contribution_frequency",
    "community_endorsement",
)


def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def weighted_score(factors: TrustFactors, weights: dict[str, float]) -> float:
    """Clamped weighted sum of factors; a faster response (lower value) scores higher."""
    total = 0.0
    for name, weight in weights.items():
        value = factors.get(name)
        if name == "response_time":
            value = 1.0 - value
        total += value * weight
    return clamp(total)


def compute_confidence(factors: TrustFactors) -> float:
    observed = sum(1 for name in _CONFIDENCE_FACTORS if factors.get(name) > 0)
    return min(1.0, 0.5 + observed / len(_CONFIDENCE_FACTORS) * 0.4 + factors.consistency_score * 0.1)


def decay_owed(days_inactive: float, threshold_days: float, daily_rate: float, max_amount: float) -> float:
    return min(max_amount, max(0.0, days_inactive - threshold_days) * daily_rate)


def apply_decay(score: float, amount: float, floor: float) -> float:
    """Lower ``score`` by ``amount`` but never below ``floor``; scores already at or under it are kept."""
    if score <= floor:
        return score
    return max(floor, score - amount)


def rapid_score_change(history: list[TrustHistoryEntry], window: int,
                       average_limit: float, max_limit: float) -> bool:
    """True if the last ``window`` entries moved too fast on average or in one step."""
    if len(history) < window:
        return False
    recent = history[-window:]
    deltas = [0.0] + [abs(b.score - a.score) for a, b in zip(recent, recent[1:])]
    return sum(deltas) / len(deltas) > average_limit or max(deltas) > max_limit


class TrustScoreManager:
    """
    Scores user actions and answers band, permission and rate-limit queries.

    Usage:
        manager = TrustScoreManager(store, EngineConfig.create())
        result = await manager.calculate_trust_score("alice", "confirm", {"event_id": "e1"})
        (await manager.get_trust_threshold("alice")).level     # TrustLevel.MEDIUM
        await manager.can_perform_action("alice", "report")
    """

    def __init__(
        self,
        store: DataStore,
        config: EngineConfig,
        *,
        cache: Optional[KeyedCache[TrustScore]] = None,
        alert_sink: Optional[AlertSink] = None,
        mfa_provider: Optional[MfaProvider] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config
        self.cache: KeyedCache[TrustScore] = cache if cache is not None else KeyedCache(
            idle_ttl=config.trust_cache_idle_ttl_seconds, clock=clock,
        )
        self.alert_sink = alert_sink
        self.mfa_provider = mfa_provider
        self.clock = clock
        self._weights = config.factor_weights.as_dict()
        self._thresholds = [band.to_threshold() for band in config.bands]
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, user_id: str) -> AsyncIterator[None]:
        """Hold the user's lock; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]

    # ─── Loading ───────────────────────────────────────────────────

    async def get_trust_score(self, user_id: str) -> TrustScore:
        """Cached score, else the stored one, else a neutral default (cached, not saved)."""
        score = self.cache.get(user_id)
        if score is not None:
            return score
        score = await self.store.load_trust_score(user_id)
        if score is None:
            score = TrustScore.neutral(user_id, self.clock())
            logger.debug("No stored trust score for %s, using neutral default", user_id)
        self.cache.set(user_id, score)
        return score

    def peek_trust_score(self, user_id: str) -> Optional[TrustScore]:
        return self.cache.peek(user_id)

    async def lookup_trust(self, user_id: str) -> float:
        """Overall score for bulk scans. Reads through to the store without caching."""
        score = self.cache.peek(user_id)
        if score is None:
            score = await self.store.load_trust_score(user_id)
        return score.overall if score is not None else NEUTRAL_SCORE

    def evict_idle_scores(self) -> int:
        evicted = self.cache.cleanup_expired()
        if evicted:
            logger.info("Evicted %d idle trust scores", evicted)
        return evicted

    # ─── Scoring ───────────────────────────────────────────────────

    async def calculate_trust_score(self, user_id: str, action: ActionKind | str,
                                    context: Optional[dict[str, Any]] = None) -> TrustCalculation:
        action = ActionKind(action)
        context = context or {}

        async with self._serialized(user_id):
            current = await self.get_trust_score(user_id)
            now = self.clock()
            previous = current.overall
            factor, impact, reason = IMPACT_TABLE[action]

            factors = self._update_factors(current.factors, action, factor, impact, context)
            days_inactive = max(0.0, (now - current.last_activity) / SECONDS_PER_DAY)
            new_score = self._adjust_for_time(weighted_score(factors, self._weights), action, days_inactive)

            history = current.history + [TrustHistoryEntry(
                timestamp=now,
                score=new_score,
                action=action.value,
                context=json.dumps(context, sort_keys=True, default=str),
                reason=reason,
                impact=impact,
            )]
            updated = TrustScore(
                user_id=user_id,
                overall=new_score,
                factors=factors,
                history=history[-self.config.decay.history_limit:],
                reputation=self._update_reputation(current, action, now),
                confidence=compute_confidence(factors),
                last_updated=now,
                decay_applied=0.0,
            )

            self.cache.set(user_id, updated)
            await self.store.save_trust_score(updated)

        change = new_score - previous
        logger.debug("Trust score for %s: %.4f -> %.4f (%s)", user_id, previous, new_score, action.value)
        if abs(change) > self.config.decay.significant_change:
            await record_alert_safely(
                self.alert_sink, "trust_score_change", Severity.LOW,
                f"Trust score changed for user {user_id}",
                {"user_id": user_id, "previous_score": previous, "new_score": new_score,
                 "change": change, "action": action.value},
                "trust_system",
            )
        return TrustCalculation(new_score=new_score, previous_score=previous, change=change,
                                factors=factors.copy())

    def _update_factors(self, current: TrustFactors, action: ActionKind, factor: str,
                        impact: float, context: dict[str, Any]) -> TrustFactors:
        factors = current.copy()

        # Moving the penalty factor up lowers trust through its negative weight.
        delta = impact if self._weights[factor] >= 0 else -impact
        if factor == "penalty_score":
            factors.penalty_score = max(0.0, factors.penalty_score + delta)
        else:
            setattr(factors, factor, clamp(factors.get(factor) + delta))

        if action in CONTRIBUTING_ACTIONS:
            factors.contribution_frequency = clamp(factors.contribution_frequency + CONTRIBUTION_STEP)

        if "response_time_seconds" in context:
            observed = min(1.0, max(0.0, float(context["response_time_seconds"])) / RESPONSE_TIME_CEILING_SECONDS)
            factors.response_time = clamp(
                (1 - EVIDENCE_SMOOTHING) * factors.response_time + EVIDENCE_SMOOTHING * observed
            )
        if "location_error_meters" in context:
            error = max(0.0, float(context["location_error_meters"]))
            observed = 1.0 - min(1.0, error / LOCATION_ERROR_CEILING_METERS)
            factors.location_accuracy = clamp(
                (1 - EVIDENCE_SMOOTHING) * factors.location_accuracy + EVIDENCE_SMOOTHING * observed
            )
        for tag in context.get("expertise") or ():
            if tag not in factors.expertise_areas:
                factors.expertise_areas.append(str(tag))

        agreement = 1.0 - 2.0 * statistics.pstdev(factors.get(n) for n in ACCURACY_FACTORS)
        factors.consistency_score = clamp(
            (1 - CONSISTENCY_SMOOTHING) * factors.consistency_score + CONSISTENCY_SMOOTHING * clamp(agreement)
        )

        for name in BOUNDED_FACTORS:
            setattr(factors, name, clamp(factors.get(name)))
        return factors

    def _adjust_for_time(self, score: float, action: ActionKind, days_inactive: float) -> float:
        decay = self.config.decay
        owed = decay_owed(days_inactive, decay.inactivity_threshold_days,
                          decay.daily_decay_rate, decay.max_decay_amount)
        if owed > 0:
            score = apply_decay(score, owed, decay.decay_floor)
        if action in BOOSTED_ACTIONS:
            score += decay.boost_amount * math.exp(-days_inactive * decay.boost_decay_rate)
        return clamp(score)

    def _update_reputation(self, current: TrustScore, action: ActionKind, now: float) -> Reputation:
        rep = Reputation.from_dict(current.reputation.to_dict())
        if action is ActionKind.REPORT:
            rep.reports += 1
            rep.community_score = min(1.0, rep.community_score + 0.01)
        elif action is ActionKind.CONFIRM:
            rep.community_score = min(1.0, rep.community_score + 0.02)
        elif action is ActionKind.DISPUTE:
            rep.disputes += 1
            rep.community_score = max(0.1, rep.community_score - 0.01)
        elif action is ActionKind.ENDORSE:
            rep.endorsements += 1
            rep.community_score = min(1.0, rep.community_score + 0.03)

        rep.global_score = clamp(
            rep.community_score * 0.6
            + rep.domain_score * 0.3
            + min(rep.endorsements, 10) / 10 * 0.1
        )
        rep.last_activity = now
        return rep

    async def apply_inactivity_decay(self, user_id: str) -> Optional[TrustCalculation]:
        """Apply decay owed since the last activity. Idempotent; None if nothing changed."""
        async with self._serialized(user_id):
            current = self.cache.peek(user_id) or await self.store.load_trust_score(user_id)
            if current is None:
                return None
            now = self.clock()
            decay = self.config.decay
            days_inactive = max(0.0, (now - current.last_activity) / SECONDS_PER_DAY)
            owed = decay_owed(days_inactive, decay.inactivity_threshold_days,
                              decay.daily_decay_rate, decay.max_decay_amount)
            outstanding = owed - current.decay_applied
            if outstanding <= 1e-12:
                return None

            previous = current.overall
            new_score = apply_decay(previous, outstanding, decay.decay_floor)
            entry = TrustHistoryEntry(
                timestamp=now,
                score=new_score,
                action="decay",
                context=json.dumps({"days_inactive": round(days_inactive, 3)}),
                reason="Inactivity decay",
                impact=new_score - previous,
            )
            updated = TrustScore(
                user_id=user_id,
                overall=new_score,
                factors=current.factors.copy(),
                history=(current.history + [entry])[-decay.history_limit:],
                reputation=current.reputation,
                confidence=current.confidence,
                last_updated=now,
                decay_applied=owed,
            )
            self.cache.replace(user_id, updated)
            await self.store.save_trust_score(updated)

        logger.info("Applied inactivity decay to %s: %.4f -> %.4f (%.1f days inactive)",
                    user_id, previous, new_score, days_inactive)
        return TrustCalculation(new_score, previous, new_score - previous, updated.factors.copy())

    # ─── Queries ───────────────────────────────────────────────────

    def threshold_for_score(self, score: float) -> TrustThreshold:
        for threshold in self._thresholds:
            if threshold.min_score <= score < threshold.max_score:
                return threshold
        return self._thresholds[-1] if score >= 1.0 else self._thresholds[0]

    @property
    def lowest_threshold(self) -> TrustThreshold:
        return self._thresholds[0]

    async def get_trust_threshold(self, user_id: str) -> TrustThreshold:
        """Band of the stored score; users never scored fall in the neutral band.

        When the store is unreachable and nothing is cached, the lowest band applies.
        """
        try:
            score = await self.get_trust_score(user_id)
        except StoreError:
            logger.warning("Trust data unavailable for %s, applying lowest band", user_id)
            return self.lowest_threshold
        return self.threshold_for_score(score.overall)

    async def get_trust_based_rate_limit(self, user_id: str) -> RateLimitParams:
        level = (await self.get_trust_threshold(user_id)).level
        return self.config.rate_limits[level].to_params()

    async def can_perform_action(self, user_id: str, action: RequestAction | str,
                                 context: Optional[dict[str, Any]] = None) -> ActionPermission:
        action = RequestAction(action)
        try:
            score = await self.get_trust_score(user_id)
        except StoreError:
            if action.security_sensitive:
                logger.warning("Trust data unavailable for %s, denying %s", user_id, action.value)
                return ActionPermission(allowed=False, reason="trust_data_unavailable")
            logger.warning("Trust data unavailable for %s, allowing read", user_id)
            return ActionPermission(allowed=True)

        resistance = self.config.attack_resistance
        if resistance.emergency_mode and score.overall >= resistance.emergency_min_trust:
            return ActionPermission(allowed=True)

        threshold = self.threshold_for_score(score.overall)
        requirements = list(threshold.requirements)
        restrictions = list(threshold.restrictions)
        if not threshold.permits(action.permission):
            return ActionPermission(
                allowed=False,
                reason=f"Insufficient trust level for action: {action.value}",
                requirements=requirements,
                restrictions=restrictions,
            )

        unmet = await self._unmet_requirement(user_id, score, threshold)
        if unmet:
            return ActionPermission(allowed=False, reason=unmet,
                                    requirements=requirements, restrictions=restrictions)
        return ActionPermission(allowed=True, restrictions=restrictions)

    async def _unmet_requirement(self, user_id: str, score: TrustScore,
                                 threshold: TrustThreshold) -> Optional[str]:
        resistance = self.config.attack_resistance
        if "mfa_required" in threshold.requirements and not await self._mfa_enabled(user_id):
            return "MFA required but not enabled"
        if "manual_review" in threshold.requirements and score.overall < resistance.manual_review_below:
            return "Manual review required"
        if "trusted_user" in threshold.requirements and score.overall < resistance.trusted_user_min:
            return "Trusted user status required"
        return None

    async def _mfa_enabled(self, user_id: str) -> bool:
        if self.mfa_provider is None:
            return False
        try:
            return bool(await self.mfa_provider.is_mfa_enabled(user_id))
        except Exception:
            logger.warning("MFA provider failed for %s, treating MFA as disabled", user_id, exc_info=True)
            return False
