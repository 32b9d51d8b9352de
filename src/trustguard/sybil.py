"""
trustguard.sybil — Sybil Detection Engine.

Builds a UserBehaviorProfile per user from the Behavior Aggregator's
summaries plus the user's current trust score, scores it, flags it and moves
the user through the risk state machine:

    NORMAL ──risk>0.6──▶ ELEVATED ──risk>0.7──▶ HIGH_RISK ──risk>0.8──▶ SUSPENDED

Escalation is immediate. Demotion needs ``demotion_passes`` consecutive
analyses below the current state. SUSPENDED only ends with reinstate_user().

Also runs the coordinated-attack detectors across users and acts on their
best finding.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .aggregator import BehaviorAggregator
from .cache import KeyedCache
from .collaborators import AlertSink, SuspensionActuator, record_alert_safely
from .config import DetectionConfig, EngineConfig
from .detectors import (
    AccountCreationBurstDetector,
    AttackDetector,
    CircularEndorsementDetector,
    ClusteredReportingDetector,
    CoordinatedVotingDetector,
    DetectorResult,
    best_finding,
    run_detectors,
)
from .errors import UserNotFoundError
from .records import (
    CoordinatedAttackFinding,
    RiskAssessment,
    RiskState,
    Severity,
    SybilFlag,
    SybilFlagType,
    UserBehaviorProfile,
)
from .store import DataStore
from .trust import TrustScoreManager, rapid_score_change

logger = logging.getLogger(__name__)

ATTACK_FLAG_TYPES = frozenset({
    SybilFlagType.ACCOUNT_CREATION_BURST,
    SybilFlagType.COORDINATED_VOTING,
    SybilFlagType.CLUSTERED_REPORTING,
    SybilFlagType.CIRCULAR_ENDORSEMENT,
})

NETWORK_ANOMALY_FLAGS = (SybilFlagType.CIRCULAR_ENDORSEMENT, SybilFlagType.ACCOUNT_CREATION_BURST)

_RECOMMENDATIONS = {
    SybilFlagType.AUTOMATED_BEHAVIOR: "Review for automated behavior patterns",
    SybilFlagType.NETWORK_ISOLATION: "Limited network connections - requires verification",
    SybilFlagType.COORDINATED_VOTING: "Voting patterns deviate from consensus",
    SybilFlagType.IMPOSSIBLE_MOVEMENT: "Location history contains impossible movement - verify device",
    SybilFlagType.CLUSTERED_REPORTING: "Reports form a tight space-time cluster - verify independently",
    SybilFlagType.TRUST_SCORE_MANIPULATION: "Trust score changed rapidly - review recent actions",
    SybilFlagType.ACCOUNT_CREATION_BURST: "Account created in a suspicious sign-up burst",
    SybilFlagType.CIRCULAR_ENDORSEMENT: "Part of a circular endorsement ring - discount endorsements",
}
LOW_TRUST_RECOMMENDATION = "Low trust score - additional verification needed"


# ─── Pure scoring ──────────────────────────────────────────────────

def compute_risk_score(profile: UserBehaviorProfile, config: DetectionConfig) -> float:
    """Base 0.5 plus fixed contributions, clamped to [0, 1]. Flags never enter."""
    pattern = profile.activity_pattern
    risk = 0.5
    if pattern.automated_behavior:
        risk += 0.2
    if pattern.burst_activity_count > config.burst_activity_threshold:
        risk += 0.15
    if pattern.consistent_timing:
        risk += 0.1
    if len(profile.network_connections) < config.isolation_min_connections:
        risk += 0.1
    if profile.voting_history.consensus_alignment < config.consensus_alignment_threshold:
        risk += 0.15
    if profile.reporting_history.total_reports > config.max_reports_in_window:
        risk += 0.1
    if profile.trust_score < config.suspicious_trust_threshold:
        risk += 0.2
    return max(0.0, min(1.0, risk))


def risk_level(risk_score: float) -> str:
    if risk_score < 0.3:
        return "low"
    if risk_score < 0.6:
        return "medium"
    if risk_score < 0.8:
        return "high"
    return "critical"


def recommendations_for(profile: UserBehaviorProfile, config: DetectionConfig) -> list[str]:
    recs: list[str] = []
    for flag in profile.flags:
        text = _RECOMMENDATIONS.get(flag.type)
        if text and text not in recs:
            recs.append(text)
    if profile.trust_score < config.suspicious_trust_threshold:
        recs.append(LOW_TRUST_RECOMMENDATION)
    return recs


def state_for_risk(risk_score: float, config: DetectionConfig) -> RiskState:
    if risk_score > config.risk_suspend:
        return RiskState.SUSPENDED
    if risk_score > config.risk_high:
        return RiskState.HIGH_RISK
    if risk_score > config.risk_elevated:
        return RiskState.ELEVATED
    return RiskState.NORMAL


@dataclass
class RiskTracker:
    state: RiskState = RiskState.NORMAL
    improved_passes: int = 0


# ─── Engine ────────────────────────────────────────────────────────

class SybilDetectionEngine:
    """
    Behaviour profiling, risk handling and coordinated-attack scanning.

    Usage:
        sybil = SybilDetectionEngine(store, config, trust_manager,
                                     alert_sink=AlertLog(), suspension=StoreSuspensionActuator(store))
        profile = await sybil.analyze_user_behavior("alice")
        sybil.get_user_risk_assessment("alice").risk_level
        finding = await sybil.detect_coordinated_attacks()
    """

    def __init__(
        self,
        store: DataStore,
        config: EngineConfig,
        trust: TrustScoreManager,
        *,
        profiles: Optional[KeyedCache[UserBehaviorProfile]] = None,
        alert_sink: Optional[AlertSink] = None,
        suspension: Optional[SuspensionActuator] = None,
        detectors: Optional[list[AttackDetector]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config
        self.detection = config.detection
        self.trust = trust
        self.profiles: KeyedCache[UserBehaviorProfile] = profiles if profiles is not None else KeyedCache(
            idle_ttl=self.detection.profile_idle_ttl_seconds, clock=clock,
        )
        self.alert_sink = alert_sink
        self.suspension = suspension
        self.clock = clock
        self.aggregator = BehaviorAggregator(store, self.detection)
        self.detectors = detectors if detectors is not None else self._default_detectors()
        self.monitored: set[str] = set()
        self.last_finding = CoordinatedAttackFinding.none()
        self.last_results: list[DetectorResult] = []
        self._risk: dict[str, RiskTracker] = {}
        self._attack_flags: dict[str, list[SybilFlag]] = {}

    def _default_detectors(self) -> list[AttackDetector]:
        return [
            AccountCreationBurstDetector(self.store, self.detection, self.trust.lookup_trust),
            CoordinatedVotingDetector(self.store, self.detection),
            ClusteredReportingDetector(self.store, self.detection, self.trust.lookup_trust),
            CircularEndorsementDetector(self.store, self.detection),
        ]

    # ─── Profiling ─────────────────────────────────────────────────

    async def analyze_user_behavior(self, user_id: str) -> UserBehaviorProfile:
        """Rebuild and cache the profile, then apply risk handling. Store errors propagate."""
        user = await self.store.load_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        now = self.clock()
        snapshot = await self.aggregator.collect(user, now)
        score = await self.trust.get_trust_score(user_id)

        profile = UserBehaviorProfile(
            user_id=user_id,
            created_at=user.created_at,
            last_activity=max(user.last_activity, score.last_activity),
            trust_score=score.overall,
            activity_pattern=snapshot.activity_pattern,
            network_connections=snapshot.network_connections,
            voting_history=snapshot.voting_history,
            reporting_history=snapshot.reporting_history,
            location_history=snapshot.location_history,
            device_fingerprint=snapshot.device_fingerprint,
            analyzed_at=now,
        )
        profile.risk_score = compute_risk_score(profile, self.detection)
        profile.flags = self._behaviour_flags(profile, score.history, now)
        profile.flags.extend(self._attack_flags.get(user_id, []))

        self.profiles.set(user_id, profile)
        if profile.flags:
            logger.warning("User %s flagged: %s (risk %.2f)", user_id,
                           ", ".join(f.type.value for f in profile.flags), profile.risk_score)
        await self.update_risk_state(profile)
        return profile

    def _behaviour_flags(self, profile: UserBehaviorProfile, history, now: float) -> list[SybilFlag]:
        cfg = self.detection
        pattern = profile.activity_pattern
        flags = []
        if pattern.automated_behavior:
            flags.append(SybilFlag(
                type=SybilFlagType.AUTOMATED_BEHAVIOR,
                severity=Severity.HIGH,
                description="Automated behavior detected",
                evidence={
                    "burst_activity_count": pattern.burst_activity_count,
                    "consistent_timing": pattern.consistent_timing,
                    "regular_intervals": pattern.regular_intervals,
                },
                detected_at=now,
                confidence=0.8,
            ))
        if len(profile.network_connections) < cfg.isolation_min_connections:
            flags.append(SybilFlag(
                type=SybilFlagType.NETWORK_ISOLATION,
                severity=Severity.MEDIUM,
                description="User has limited network connections",
                evidence={"connection_count": len(profile.network_connections)},
                detected_at=now,
                confidence=0.6,
            ))
        if profile.voting_history.consensus_alignment < cfg.consensus_alignment_threshold:
            flags.append(SybilFlag(
                type=SybilFlagType.COORDINATED_VOTING,
                severity=Severity.HIGH,
                description="Voting pattern deviates from community consensus",
                evidence={
                    "consensus_alignment": profile.voting_history.consensus_alignment,
                    "total_votes": profile.voting_history.total_votes,
                },
                detected_at=now,
                confidence=0.7,
            ))
        impossible = [p for p in profile.location_history if not p.feasible]
        if impossible:
            fastest = max(p.speed_kmh for p in impossible)
            flags.append(SybilFlag(
                type=SybilFlagType.IMPOSSIBLE_MOVEMENT,
                severity=Severity.HIGH,
                description="Location history requires impossible travel speed",
                evidence={"points": len(impossible),
                          "max_speed_kmh": fastest if fastest != float("inf") else "inf"},
                detected_at=now,
                confidence=0.9,
            ))
        if profile.reporting_history.report_clusters:
            flags.append(SybilFlag(
                type=SybilFlagType.CLUSTERED_REPORTING,
                severity=Severity.MEDIUM,
                description="User's reports form tight space-time clusters",
                evidence={"clusters": [c.report_ids for c in profile.reporting_history.report_clusters]},
                detected_at=now,
                confidence=0.6,
            ))
        resistance = self.config.attack_resistance
        if rapid_score_change(history, resistance.rapid_change_window,
                              resistance.rapid_change_average, resistance.rapid_change_max):
            flags.append(SybilFlag(
                type=SybilFlagType.TRUST_SCORE_MANIPULATION,
                severity=Severity.MEDIUM,
                description="Trust score changed unusually fast",
                evidence={"recent_scores": [h.score for h in history[-resistance.rapid_change_window:]]},
                detected_at=now,
                confidence=0.7,
            ))
        return flags

    # ─── Risk state machine ────────────────────────────────────────

    def risk_state(self, user_id: str) -> RiskState:
        tracker = self._risk.get(user_id)
        return tracker.state if tracker else RiskState.NORMAL

    def is_suspended(self, user_id: str) -> bool:
        return self.risk_state(user_id) is RiskState.SUSPENDED

    def reinstate_user(self, user_id: str) -> bool:
        """Manually lift a suspension. Returns False if the user was not suspended."""
        tracker = self._risk.get(user_id)
        if not tracker or tracker.state is not RiskState.SUSPENDED:
            return False
        self._risk[user_id] = RiskTracker()
        self.monitored.discard(user_id)
        logger.info("User %s reinstated", user_id)
        return True

    async def update_risk_state(self, profile: UserBehaviorProfile) -> None:
        tracker = self._risk.setdefault(profile.user_id, RiskTracker())
        if tracker.state is RiskState.SUSPENDED:
            return

        target = state_for_risk(profile.risk_score, self.detection)
        if target.rank > tracker.state.rank:
            tracker.state = target
            tracker.improved_passes = 0
            await self._escalate(profile, target)
        elif target.rank < tracker.state.rank:
            tracker.improved_passes += 1
            if tracker.improved_passes >= self.detection.demotion_passes:
                logger.info("User %s demoted from %s to %s after %d improved passes",
                            profile.user_id, tracker.state.value, target.value, tracker.improved_passes)
                tracker.state = target
                tracker.improved_passes = 0
                if target is RiskState.NORMAL:
                    self.monitored.discard(profile.user_id)
        else:
            tracker.improved_passes = 0

    async def _escalate(self, profile: UserBehaviorProfile, state: RiskState) -> None:
        user_id = profile.user_id
        if state is RiskState.SUSPENDED:
            self.monitored.discard(user_id)
        else:
            self.monitored.add(user_id)
            logger.warning("Increased monitoring for user %s (%s, risk %.2f)",
                           user_id, state.value, profile.risk_score)
        if state.rank < RiskState.HIGH_RISK.rank:
            return

        await record_alert_safely(
            self.alert_sink, "malicious_activity", Severity.HIGH,
            f"High-risk user detected: {user_id}",
            {"user_id": user_id, "risk_score": profile.risk_score, "state": state.value,
             "flags": [f.type.value for f in profile.flags]},
            "sybil_prevention",
        )
        if state is RiskState.SUSPENDED:
            await self._suspend(user_id, "High Sybil risk detected")

    async def _suspend(self, user_id: str, reason: str) -> bool:
        if self.suspension is None:
            logger.warning("No suspension actuator configured; cannot suspend %s (%s)", user_id, reason)
            return False
        try:
            ok = await self.suspension.suspend_user(user_id, reason)
        except Exception:
            logger.warning("Failed to suspend user %s (%s)", user_id, reason, exc_info=True)
            return False
        if ok:
            logger.info("User %s suspended: %s", user_id, reason)
        else:
            logger.warning("Suspension of %s reported no matching user", user_id)
        return ok

    # ─── Assessments ───────────────────────────────────────────────

    def get_user_risk_assessment(self, user_id: str) -> RiskAssessment:
        """Served from the profile cache; never touches the store."""
        profile = self.profiles.get(user_id)
        if profile is None:
            return RiskAssessment(
                risk_score=0.5,
                risk_level="medium",
                flags=[],
                recommendations=["User profile not available for analysis"],
            )
        return RiskAssessment(
            risk_score=profile.risk_score,
            risk_level=risk_level(profile.risk_score),
            flags=list(profile.flags),
            recommendations=recommendations_for(profile, self.detection),
        )

    def has_network_anomaly(self, user_id: str) -> bool:
        if self.last_finding.attack_detected and user_id in self.last_finding.involved_users:
            return True
        profile = self.profiles.peek(user_id)
        if profile is not None and profile.has_flag(*NETWORK_ANOMALY_FLAGS):
            return True
        return any(f.type in NETWORK_ANOMALY_FLAGS for f in self._attack_flags.get(user_id, []))

    # ─── Coordinated attacks ───────────────────────────────────────

    async def detect_coordinated_attacks(self) -> CoordinatedAttackFinding:
        """Run every detector; return the highest-confidence positive finding."""
        self.last_results = await run_detectors(self.detectors, self.clock())
        finding = best_finding(self.last_results)
        self.last_finding = finding
        if finding.attack_detected:
            logger.warning("Coordinated attack detected: %s (%d users, confidence %.2f)",
                           finding.attack_type, len(finding.involved_users), finding.confidence)
        return finding

    async def handle_coordinated_attack(self, finding: CoordinatedAttackFinding) -> None:
        if not finding.attack_detected:
            return
        now = self.clock()
        await record_alert_safely(
            self.alert_sink, "coordinated_attack", Severity.HIGH,
            f"Coordinated attack detected: {finding.attack_type}",
            {"attack_type": finding.attack_type, "involved_users": list(finding.involved_users),
             "confidence": finding.confidence, "evidence": finding.evidence},
            "sybil_prevention",
        )

        if finding.flag_type is not None:
            for user_id in finding.involved_users:
                flag = SybilFlag(
                    type=finding.flag_type,
                    severity=Severity.HIGH,
                    description=f"Involved in coordinated attack: {finding.attack_type}",
                    evidence={"attack_type": finding.attack_type,
                              "involved_users": len(finding.involved_users)},
                    detected_at=now,
                    confidence=finding.confidence,
                )
                previous = self._attack_flags.get(user_id, [])
                self._attack_flags[user_id] = [f for f in previous if f.type != flag.type] + [flag]
                profile = self.profiles.peek(user_id)
                if profile is not None and not any(
                    f.type == flag.type and f.description == flag.description for f in profile.flags
                ):
                    profile.add_flag(flag)

        cfg = self.detection
        if cfg.suspend_on_coordinated_attack and finding.confidence >= cfg.coordinated_suspension_confidence:
            for user_id in finding.involved_users:
                self._risk[user_id] = RiskTracker(state=RiskState.SUSPENDED)
                self.monitored.discard(user_id)
                await self._suspend(user_id, f"Coordinated attack: {finding.attack_type}")

    # ─── Sweep support ─────────────────────────────────────────────

    def users_needing_reanalysis(self) -> list[str]:
        """Monitored users plus cached profiles above the elevated threshold."""
        users = set(self.monitored)
        for user_id, profile in self.profiles.items():
            if profile.risk_score > self.detection.risk_elevated and not self.is_suspended(user_id):
                users.add(user_id)
        return sorted(users)

    def evict_idle_profiles(self) -> int:
        evicted = self.profiles.cleanup_expired()
        cutoff = self.clock() - self.detection.profile_idle_ttl_seconds
        for user_id in list(self._attack_flags):
            kept = [f for f in self._attack_flags[user_id] if f.detected_at >= cutoff]
            if kept:
                self._attack_flags[user_id] = kept
            else:
                del self._attack_flags[user_id]
        if evicted:
            logger.info("Evicted %d idle behaviour profiles", evicted)
        return evicted
