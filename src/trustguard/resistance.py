"""
trustguard.resistance — Attack Resistance Coordinator.

Turns a user's trust score, behaviour flags and the last coordinated-attack
finding into an allow / limit / block verdict for one action request. Three
checks are combined worst-case:

    sybil safety        blocks when estimated Sybil risk >= 0.5
    consensus           limits votes while overall < 0.6
    reputation          limits while reputation.global_score < 0.4

Sybil risk = 0.3 (low trust) + 0.2 (rapid score change)
           + 0.3 (suspicious behaviour) + 0.2 (network anomaly), capped at 1.

The coordinator reads both trust scores and profiles but stores nothing.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import EngineConfig
from .errors import StoreError
from .models import AttackResistanceVerdict, RequestAction, Resistance, TrustScore
from .records import SybilFlagType
from .sybil import SybilDetectionEngine
from .trust import TrustScoreManager, rapid_score_change

logger = logging.getLogger(__name__)

SUSPICIOUS_PATTERN_FLAGS = (SybilFlagType.AUTOMATED_BEHAVIOR, SybilFlagType.COORDINATED_VOTING)


class AttackResistanceCoordinator:
    def __init__(self, trust: TrustScoreManager, sybil: SybilDetectionEngine, config: EngineConfig):
        self.trust = trust
        self.sybil = sybil
        self.config = config
        self.settings = config.attack_resistance

    def trust_weight(self, score: TrustScore) -> float:
        return min(1.0, score.overall * self.settings.trust_weight_multiplier)

    def has_rapid_score_change(self, score: TrustScore) -> bool:
        s = self.settings
        return rapid_score_change(score.history, s.rapid_change_window,
                                  s.rapid_change_average, s.rapid_change_max)

    def estimate_sybil_risk(self, user_id: str, score: TrustScore) -> tuple[float, list[str]]:
        risk = 0.0
        reasons = []
        if score.overall < self.settings.sybil_threshold:
            risk += 0.3
            reasons.append("low_trust_score")
        if self.has_rapid_score_change(score):
            risk += 0.2
            reasons.append("rapid_score_changes")
        profile = self.sybil.profiles.peek(user_id)
        if profile is not None and (
            profile.has_flag(*SUSPICIOUS_PATTERN_FLAGS)
            or profile.risk_score > self.config.detection.risk_high
        ):
            risk += 0.3
            reasons.append("suspicious_patterns")
        if self.sybil.has_network_anomaly(user_id):
            risk += 0.2
            reasons.append("network_anomalies")
        return min(1.0, risk), reasons

    async def apply_attack_resistance(self, user_id: str, action: RequestAction | str,
                                      data: Optional[dict[str, Any]] = None) -> AttackResistanceVerdict:
        action = RequestAction(action)
        adjusted = dict(data or {})

        try:
            score = await self.trust.get_trust_score(user_id)
        except StoreError:
            if action.security_sensitive:
                logger.warning("Trust data unavailable for %s, blocking %s", user_id, action.value)
                return AttackResistanceVerdict(
                    allowed=False, trust_weight=0.0, resistance=Resistance.BLOCKED,
                    adjusted_data=adjusted, reasons=["trust_data_unavailable"],
                )
            return AttackResistanceVerdict(
                allowed=True, trust_weight=0.0, resistance=Resistance.LIMITED,
                adjusted_data=adjusted, reasons=["trust_data_unavailable"],
            )

        weight = self.trust_weight(score)
        adjusted["trust_weight"] = weight

        if self.sybil.is_suspended(user_id):
            logger.warning("Blocked %s for suspended user %s", action.value, user_id)
            return AttackResistanceVerdict(
                allowed=False, trust_weight=weight, resistance=Resistance.BLOCKED,
                adjusted_data=adjusted, sybil_risk=1.0, reasons=["user_suspended"],
            )

        sybil_risk, reasons = self.estimate_sybil_risk(user_id, score)
        sybil_safe = sybil_risk < self.settings.sybil_block_risk
        consensus_limited = action.is_vote and score.overall < self.settings.consensus_threshold
        reputation_limited = score.reputation.global_score < self.settings.reputation_threshold

        if consensus_limited:
            reasons.append("below_consensus_threshold")
        if reputation_limited:
            reasons.append("below_reputation_threshold")

        if not sybil_safe:
            resistance = Resistance.BLOCKED
        elif consensus_limited or reputation_limited:
            resistance = Resistance.LIMITED
        else:
            resistance = Resistance.ALLOWED

        if score.overall < self.settings.sybil_threshold:
            adjusted["trust_limited"] = True
            adjusted["max_impact"] = score.overall * self.settings.max_impact_factor
            adjusted["requires_verification"] = True

        if resistance is Resistance.BLOCKED:
            logger.warning("Blocked %s for %s: sybil risk %.2f (%s)",
                           action.value, user_id, sybil_risk, ", ".join(reasons))
        else:
            logger.debug("Attack resistance for %s/%s: %s", user_id, action.value, resistance.value)

        return AttackResistanceVerdict(
            allowed=resistance is not Resistance.BLOCKED,
            trust_weight=weight,
            resistance=resistance,
            adjusted_data=adjusted,
            sybil_risk=sybil_risk,
            reasons=reasons,
        )
