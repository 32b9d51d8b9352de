"""
trustguard.engine — TrustEngine facade.

Wires the Trust Score Manager, Sybil Detection Engine, Attack Resistance
Coordinator, rate limiter and background sweep around one DataStore, and
runs the per-action data flow in a single call:

    user action → trust score update → behaviour re-analysis (best effort) → verdict

Usage:
    engine = TrustEngine(MemoryDataStore(), alert_sink=AlertLog())
    outcome = await engine.process_action("alice", "confirm", {"event_id": "e1"})
    if not outcome.verdict.allowed:
        ...
    await engine.start()    # background sweep
    await engine.close()
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .collaborators import AlertSink, MfaProvider, SuspensionActuator, StoreSuspensionActuator, record_alert_safely
from .config import EngineConfig
from .errors import StoreError, UserNotFoundError
from .log import bind_user
from .models import (
    ActionKind,
    ActionPermission,
    AttackResistanceVerdict,
    RequestAction,
    TrustCalculation,
)
from .rate_limiter import RateCheckResult, TrustRateLimiter
from .records import RiskAssessment, Severity, UserBehaviorProfile
from .resistance import AttackResistanceCoordinator
from .scheduler import BackgroundSweep
from .store import DataStore
from .sybil import SybilDetectionEngine
from .trust import TrustScoreManager

logger = logging.getLogger(__name__)

# Scored actions that correspond to a user request; penalty and boost are administrative.
_REQUEST_FOR_ACTION = {
    ActionKind.REPORT: RequestAction.REPORT,
    ActionKind.CONFIRM: RequestAction.CONFIRM,
    ActionKind.DISPUTE: RequestAction.DISPUTE,
    ActionKind.ENDORSE: RequestAction.ENDORSE,
    ActionKind.MODERATE: RequestAction.MODERATE,
}


@dataclass
class ActionOutcome:
    calculation: TrustCalculation
    profile: Optional[UserBehaviorProfile]
    verdict: Optional[AttackResistanceVerdict]


class TrustEngine:
    def __init__(
        self,
        store: DataStore,
        config: Optional[EngineConfig] = None,
        *,
        alert_sink: Optional[AlertSink] = None,
        mfa_provider: Optional[MfaProvider] = None,
        suspension: Optional[SuspensionActuator] = None,
        apply_decay_in_sweep: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or EngineConfig.create()
        self.alert_sink = alert_sink
        self.clock = clock
        self.trust = TrustScoreManager(
            store, self.config, alert_sink=alert_sink, mfa_provider=mfa_provider, clock=clock,
        )
        self.sybil = SybilDetectionEngine(
            store, self.config, self.trust,
            alert_sink=alert_sink,
            suspension=suspension if suspension is not None else StoreSuspensionActuator(store, clock),
            clock=clock,
        )
        self.resistance = AttackResistanceCoordinator(self.trust, self.sybil, self.config)
        self.rate_limiter = TrustRateLimiter(self.trust, clock=clock)
        self.sweep = BackgroundSweep(self.sybil, self.trust, apply_decay=apply_decay_in_sweep)

    async def process_action(self, user_id: str, action: ActionKind | str,
                             context: Optional[dict[str, Any]] = None) -> ActionOutcome:
        """Score the action, refresh the user's profile, and decide on it."""
        action = ActionKind(action)
        with bind_user(user_id):
            calculation = await self.trust.calculate_trust_score(user_id, action, context)

            profile = None
            try:
                profile = await self.sybil.analyze_user_behavior(user_id)
            except UserNotFoundError:
                logger.debug("No user record for %s, skipping behaviour analysis", user_id)
            except StoreError as exc:
                logger.warning("Behaviour analysis for %s failed: %s", user_id, exc)

            verdict = None
            request = _REQUEST_FOR_ACTION.get(action)
            if request is not None:
                verdict = await self.resistance.apply_attack_resistance(user_id, request, context)
            return ActionOutcome(calculation=calculation, profile=profile, verdict=verdict)

    async def can_perform_action(self, user_id: str, action: RequestAction | str,
                                 context: Optional[dict[str, Any]] = None) -> ActionPermission:
        with bind_user(user_id):
            return await self.trust.can_perform_action(user_id, action, context)

    async def apply_attack_resistance(self, user_id: str, action: RequestAction | str,
                                      data: Optional[dict[str, Any]] = None) -> AttackResistanceVerdict:
        with bind_user(user_id):
            return await self.resistance.apply_attack_resistance(user_id, action, data)

    def get_user_risk_assessment(self, user_id: str) -> RiskAssessment:
        return self.sybil.get_user_risk_assessment(user_id)

    async def check_rate_limit(self, user_id: str) -> RateCheckResult:
        result = await self.rate_limiter.check(user_id)
        if not result.allowed:
            await record_alert_safely(
                self.alert_sink, "trust_rate_limit_exceeded", Severity.LOW,
                f"Trust-based rate limit exceeded for user {user_id}",
                {"user_id": user_id, "trust_weight": result.trust_weight,
                 "max_requests": result.limit, "retry_after": result.retry_after},
                "trust_system",
            )
        return result

    async def start(self) -> None:
        await self.sweep.start()

    async def stop(self) -> None:
        await self.sweep.stop()

    async def close(self) -> None:
        await self.stop()
        await self.store.close()
