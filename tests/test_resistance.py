"""Tests for AttackResistanceCoordinator verdicts."""

import pytest

from trustguard.models import Reputation, Resistance, TrustHistoryEntry
from trustguard.records import (
    ActivityPattern,
    CoordinatedAttackFinding,
    ReportingHistory,
    Severity,
    SybilFlag,
    SybilFlagType,
    UserBehaviorProfile,
    VotingHistory,
)
from trustguard.resistance import AttackResistanceCoordinator

from conftest import NOW


@pytest.fixture
def coordinator(manager, sybil, config):
    return AttackResistanceCoordinator(manager, sybil, config)


def automated_flag():
    return SybilFlag(SybilFlagType.AUTOMATED_BEHAVIOR, Severity.HIGH, "Automated behavior detected",
                     {}, NOW, 0.8)


class TestVerdicts:
    @pytest.mark.asyncio
    async def test_neutral_user_report_allowed(self, coordinator):
        verdict = await coordinator.apply_attack_resistance("alice", "report", {"event_id": "e1"})
        assert verdict.allowed
        assert verdict.resistance is Resistance.ALLOWED
        assert verdict.trust_weight == 1.0
        assert verdict.sybil_risk == 0.0
        assert verdict.adjusted_data == {"event_id": "e1", "trust_weight": 1.0}

    @pytest.mark.asyncio
    async def test_vote_below_consensus_threshold_is_limited(self, coordinator):
        verdict = await coordinator.apply_attack_resistance("alice", "confirm")
        assert verdict.allowed
        assert verdict.resistance is Resistance.LIMITED
        assert "below_consensus_threshold" in verdict.reasons

    @pytest.mark.asyncio
    async def test_trusted_vote_allowed(self, coordinator, seed_score):
        await seed_score("vet", overall=0.7)
        verdict = await coordinator.apply_attack_resistance("vet", "confirm")
        assert verdict.resistance is Resistance.ALLOWED

    @pytest.mark.asyncio
    async def test_low_trust_alone_is_limited_not_blocked(self, coordinator, seed_score):
        await seed_score("newbie", overall=0.2)
        verdict = await coordinator.apply_attack_resistance("newbie", "report")
        assert verdict.allowed
        assert verdict.sybil_risk == pytest.approx(0.3)
        assert verdict.reasons == ["low_trust_score"]
        assert verdict.trust_weight == pytest.approx(0.4)
        assert verdict.adjusted_data["trust_limited"] is True
        assert verdict.adjusted_data["max_impact"] == pytest.approx(0.1)
        assert verdict.adjusted_data["requires_verification"] is True

    @pytest.mark.asyncio
    async def test_low_trust_and_automation_blocked(self, coordinator, sybil, seed_score):
        await seed_score("bot", overall=0.2)
        await coordinator.trust.get_trust_score("bot")
        profile = _profile("bot")
        profile.add_flag(automated_flag())
        sybil.profiles.set("bot", profile)

        verdict = await coordinator.apply_attack_resistance("bot", "report")
        assert not verdict.allowed
        assert verdict.resistance is Resistance.BLOCKED
        assert verdict.sybil_risk == pytest.approx(0.6)
        assert verdict.reasons[:2] == ["low_trust_score", "suspicious_patterns"]

    @pytest.mark.asyncio
    async def test_rapid_score_changes(self, coordinator, seed_score):
        history = [TrustHistoryEntry(NOW - 100 + i, s, "report", "{}", "", 0.0)
                   for i, s in enumerate([0.2, 0.5, 0.2, 0.5, 0.2])]
        await seed_score("flip", overall=0.2, history=history)
        verdict = await coordinator.apply_attack_resistance("flip", "report")
        assert verdict.sybil_risk == pytest.approx(0.5)
        assert "rapid_score_changes" in verdict.reasons
        assert verdict.resistance is Resistance.BLOCKED

    @pytest.mark.asyncio
    async def test_low_reputation_limited(self, coordinator, seed_score):
        await seed_score("quiet", overall=0.7, reputation=Reputation(global_score=0.3, last_activity=NOW))
        verdict = await coordinator.apply_attack_resistance("quiet", "report")
        assert verdict.resistance is Resistance.LIMITED
        assert verdict.reasons == ["below_reputation_threshold"]

    @pytest.mark.asyncio
    async def test_network_anomaly_from_last_finding(self, coordinator, sybil, seed_score):
        await seed_score("ring1", overall=0.25)
        sybil.last_finding = CoordinatedAttackFinding(True, "Circular Endorsement", ["ring1"], 0.85)
        verdict = await coordinator.apply_attack_resistance("ring1", "endorse")
        assert verdict.sybil_risk == pytest.approx(0.5)
        assert "network_anomalies" in verdict.reasons
        assert not verdict.allowed

    @pytest.mark.asyncio
    async def test_block_outranks_limit(self, coordinator, sybil, seed_score):
        await seed_score("bot", overall=0.1)
        profile = _profile("bot")
        profile.add_flag(automated_flag())
        sybil.profiles.set("bot", profile)
        verdict = await coordinator.apply_attack_resistance("bot", "confirm")
        assert verdict.resistance is Resistance.BLOCKED
        assert "below_consensus_threshold" in verdict.reasons

    @pytest.mark.asyncio
    async def test_suspended_user_blocked(self, coordinator, sybil):
        await sybil.update_risk_state(_profile("gone", risk=0.95))
        verdict = await coordinator.apply_attack_resistance("gone", "read")
        assert not verdict.allowed
        assert verdict.sybil_risk == 1.0
        assert verdict.reasons == ["user_suspended"]


class TestStoreOutage:
    @pytest.mark.asyncio
    async def test_sensitive_action_blocked(self, coordinator, store):
        store.fail_reads = True
        verdict = await coordinator.apply_attack_resistance("alice", "vote")
        assert not verdict.allowed
        assert verdict.resistance is Resistance.BLOCKED
        assert verdict.reasons == ["trust_data_unavailable"]

    @pytest.mark.asyncio
    async def test_read_allowed(self, coordinator, store):
        store.fail_reads = True
        verdict = await coordinator.apply_attack_resistance("alice", "read")
        assert verdict.allowed
        assert verdict.resistance is Resistance.LIMITED

    @pytest.mark.asyncio
    async def test_cached_score_survives_outage(self, coordinator, store, seed_score):
        await seed_score("vet", overall=0.7)
        await coordinator.trust.get_trust_score("vet")
        store.fail_reads = True
        verdict = await coordinator.apply_attack_resistance("vet", "report")
        assert verdict.resistance is Resistance.ALLOWED


def _profile(user_id, risk=0.5):
    return UserBehaviorProfile(
        user_id=user_id, created_at=NOW, last_activity=NOW, trust_score=0.2,
        activity_pattern=ActivityPattern(), network_connections=[],
        voting_history=VotingHistory(), reporting_history=ReportingHistory(),
        location_history=[], device_fingerprint="", risk_score=risk,
    )
