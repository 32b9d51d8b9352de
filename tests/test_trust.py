"""Tests for TrustScoreManager scoring, decay, bands and permissions."""

import asyncio

import pytest

from trustguard.collaborators import MfaProvider
from trustguard.config import EngineConfig
from trustguard.errors import StoreError
from trustguard.models import ActionKind, TrustFactors, TrustHistoryEntry, TrustLevel
from trustguard.store import MemoryDataStore
from trustguard.trust import (
    TrustScoreManager,
    apply_decay,
    compute_confidence,
    decay_owed,
    rapid_score_change,
    weighted_score,
)

from conftest import DAY, NOW, FakeClock

WEIGHTS = EngineConfig.create().factor_weights.as_dict()


class YieldingStore(MemoryDataStore):
    """Gives other tasks a chance to run on every store call."""

    async def load_trust_score(self, user_id):
        await asyncio.sleep(0)
        return await super().load_trust_score(user_id)

    async def save_trust_score(self, score):
        await asyncio.sleep(0)
        await super().save_trust_score(score)


class RaisingMfa(MfaProvider):
    async def is_mfa_enabled(self, user_id):
        raise TimeoutError("mfa service timeout")


class TestPureFunctions:
    def test_neutral_factors_weighted_sum(self):
        assert weighted_score(TrustFactors(), WEIGHTS) == pytest.approx(0.475)

    def test_weighted_score_clamped(self):
        assert weighted_score(TrustFactors(penalty_score=10.0), WEIGHTS) == 0.0

    def test_response_time_is_inverted(self):
        fast = weighted_score(TrustFactors(response_time=0.0), WEIGHTS)
        slow = weighted_score(TrustFactors(response_time=1.0), WEIGHTS)
        assert fast - slow == pytest.approx(0.10)

    def test_confidence(self):
        assert compute_confidence(TrustFactors()) == pytest.approx(0.5 + 5 / 7 * 0.4 + 0.05)

    def test_decay_owed(self):
        assert decay_owed(45, 30, 0.001, 0.3) == pytest.approx(0.015)
        assert decay_owed(10, 30, 0.001, 0.3) == 0.0
        assert decay_owed(1000, 30, 0.001, 0.3) == 0.3

    def test_apply_decay_floor(self):
        assert apply_decay(0.5, 0.015, 0.1) == pytest.approx(0.485)
        assert apply_decay(0.12, 0.07, 0.1) == 0.1
        assert apply_decay(0.05, 0.07, 0.1) == 0.05

    def test_rapid_score_change(self):
        def history(scores):
            return [TrustHistoryEntry(float(i), s, "report", "{}", "", 0.0) for i, s in enumerate(scores)]

        assert not rapid_score_change(history([0.5, 0.8]), 5, 0.1, 0.2)
        assert not rapid_score_change(history([0.5, 0.52, 0.54, 0.56, 0.58]), 5, 0.1, 0.2)
        assert rapid_score_change(history([0.5, 0.5, 0.5, 0.5, 0.75]), 5, 0.1, 0.2)
        assert rapid_score_change(history([0.1, 0.25, 0.4, 0.55, 0.7]), 5, 0.1, 0.2)


class TestLoading:
    @pytest.mark.asyncio
    async def test_unknown_user_is_neutral_and_not_persisted(self, manager, store):
        score = await manager.get_trust_score("ghost")
        assert score.overall == 0.5
        assert score.history == []
        assert await store.load_trust_score("ghost") is None
        assert manager.peek_trust_score("ghost") is score

    @pytest.mark.asyncio
    async def test_loads_stored_score(self, manager, seed_score):
        await seed_score("alice", overall=0.72)
        assert (await manager.get_trust_score("alice")).overall == 0.72

    @pytest.mark.asyncio
    async def test_store_read_failure_propagates(self, manager, store):
        store.fail_reads = True
        with pytest.raises(StoreError):
            await manager.get_trust_score("alice")


class TestCalculateTrustScore:
    @pytest.mark.asyncio
    async def test_first_confirm(self, manager, store):
        result = await manager.calculate_trust_score("alice", "confirm", {"event_id": "e1"})
        assert result.previous_score == 0.5
        assert result.factors.confirmation_accuracy == pytest.approx(0.53)
        assert result.factors.contribution_frequency == pytest.approx(0.01)
        assert result.new_score == pytest.approx(weighted_score(result.factors, WEIGHTS) + 0.05)
        assert result.change == pytest.approx(result.new_score - 0.5)

        stored = await store.load_trust_score("alice")
        assert stored.overall == result.new_score
        assert len(stored.history) == 1
        assert stored.history[0].action == "confirm"
        assert stored.history[0].impact == 0.03
        assert stored.history[0].context == '{"event_id": "e1"}'

    @pytest.mark.asyncio
    async def test_dispute_lowers_dispute_accuracy_without_boost(self, manager):
        result = await manager.calculate_trust_score("bob", ActionKind.DISPUTE)
        assert result.factors.dispute_accuracy == pytest.approx(0.48)
        assert result.new_score == pytest.approx(weighted_score(result.factors, WEIGHTS))

    @pytest.mark.asyncio
    async def test_penalty_raises_penalty_factor_and_lowers_score(self, manager):
        result = await manager.calculate_trust_score("carol", "penalty")
        assert result.factors.penalty_score == pytest.approx(0.05)
        assert result.new_score < result.previous_score
        score = await manager.get_trust_score("carol")
        assert score.history[-1].impact == -0.05

    @pytest.mark.asyncio
    async def test_context_evidence(self, manager):
        result = await manager.calculate_trust_score("dave", "report", {
            "response_time_seconds": 0,
            "location_error_meters": 0,
            "expertise": ["medical"],
        })
        assert result.factors.response_time == pytest.approx(0.4)
        assert result.factors.location_accuracy == pytest.approx(0.6)
        assert result.factors.expertise_areas == ["medical"]

    @pytest.mark.asyncio
    async def test_reputation_counters(self, manager):
        await manager.calculate_trust_score("erin", "report")
        rep = (await manager.get_trust_score("erin")).reputation
        assert rep.reports == 1
        assert rep.community_score == pytest.approx(0.51)
        assert rep.global_score == pytest.approx(0.51 * 0.6 + 0.5 * 0.3)

        await manager.calculate_trust_score("erin", "endorse")
        rep = (await manager.get_trust_score("erin")).reputation
        assert rep.endorsements == 1
        assert rep.community_score == pytest.approx(0.54)
        assert rep.global_score == pytest.approx(0.54 * 0.6 + 0.15 + 0.01)

    @pytest.mark.asyncio
    async def test_unknown_action(self, manager):
        with pytest.raises(ValueError):
            await manager.calculate_trust_score("alice", "teleport")

    @pytest.mark.asyncio
    async def test_scores_stay_in_bounds(self, manager, clock):
        for _ in range(60):
            for action in ActionKind:
                clock.advance(30)
                result = await manager.calculate_trust_score("frank", action, {
                    "response_time_seconds": 5000, "location_error_meters": 5000,
                })
                assert 0.0 <= result.new_score <= 1.0
                factors = result.factors
                for name in ("reporting_accuracy", "confirmation_accuracy", "dispute_accuracy",
                             "response_time", "location_accuracy", "contribution_frequency",
                             "community_endorsement", "consistency_score"):
                    assert 0.0 <= factors.get(name) <= 1.0
                assert factors.penalty_score >= 0.0

    @pytest.mark.asyncio
    async def test_repeated_penalties_floor_at_zero(self, manager):
        for _ in range(40):
            result = await manager.calculate_trust_score("gina", "penalty")
        assert result.new_score == 0.0
        assert result.factors.penalty_score == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_history_keeps_latest_hundred(self, manager, clock):
        stamps = []
        for _ in range(105):
            stamps.append(clock.advance(1))
            await manager.calculate_trust_score("hank", "report")
        score = await manager.get_trust_score("hank")
        assert len(score.history) == 100
        assert score.history[0].timestamp == stamps[5]
        assert score.history[-1].timestamp == stamps[-1]

    @pytest.mark.asyncio
    async def test_significant_change_alerts(self, manager, seed_score, alerts):
        await seed_score("ivy", overall=0.9)
        result = await manager.calculate_trust_score("ivy", "dispute")
        assert result.change < -0.1
        [alert] = alerts.query(kind="trust_score_change")
        assert alert.severity == "low"
        assert alert.source == "trust_system"
        assert alert.detail["user_id"] == "ivy"

    @pytest.mark.asyncio
    async def test_small_change_does_not_alert(self, manager, alerts):
        await manager.calculate_trust_score("jack", "confirm")
        assert alerts.query(kind="trust_score_change") == []

    @pytest.mark.asyncio
    async def test_write_failure_surfaces_and_keeps_cache(self, manager, store):
        store.fail_writes = True
        with pytest.raises(StoreError):
            await manager.calculate_trust_score("kim", "report")
        assert len(manager.peek_trust_score("kim").history) == 1

    @pytest.mark.asyncio
    async def test_concurrent_updates_match_sequential(self, config):
        clock = FakeClock()
        concurrent = TrustScoreManager(YieldingStore(), config, clock=clock)
        sequential = TrustScoreManager(YieldingStore(), config, clock=clock)

        await asyncio.gather(*(
            [concurrent.calculate_trust_score("u1", "confirm") for _ in range(20)]
            + [concurrent.calculate_trust_score("u2", "report") for _ in range(20)]
        ))
        for _ in range(20):
            await sequential.calculate_trust_score("u1", "confirm")
            await sequential.calculate_trust_score("u2", "report")

        for user_id in ("u1", "u2"):
            a = await concurrent.get_trust_score(user_id)
            b = await sequential.get_trust_score(user_id)
            assert len(a.history) == 20
            assert a.overall == pytest.approx(b.overall)
            assert a.factors == b.factors


class TestInactivityDecay:
    @pytest.mark.asyncio
    async def test_forty_five_days(self, manager, seed_score):
        await seed_score("old", overall=0.5, days_inactive=45)
        result = await manager.apply_inactivity_decay("old")
        assert result.new_score == pytest.approx(0.485)
        score = await manager.get_trust_score("old")
        assert score.history[-1].action == "decay"
        assert score.decay_applied == pytest.approx(0.015)

    @pytest.mark.asyncio
    async def test_idempotent_then_incremental(self, manager, seed_score, clock):
        await seed_score("old", overall=0.5, days_inactive=45)
        await manager.apply_inactivity_decay("old")
        assert await manager.apply_inactivity_decay("old") is None

        clock.advance(10 * DAY)
        result = await manager.apply_inactivity_decay("old")
        assert result.new_score == pytest.approx(0.475)

    @pytest.mark.asyncio
    async def test_floor(self, manager, seed_score):
        await seed_score("low", overall=0.12, days_inactive=100)
        result = await manager.apply_inactivity_decay("low")
        assert result.new_score == 0.1

    @pytest.mark.asyncio
    async def test_scores_below_floor_kept(self, manager, seed_score):
        await seed_score("lower", overall=0.05, days_inactive=100)
        result = await manager.apply_inactivity_decay("lower")
        assert result.new_score == 0.05

    @pytest.mark.asyncio
    async def test_recent_activity_owes_nothing(self, manager, seed_score):
        await seed_score("fresh", overall=0.5, days_inactive=10)
        assert await manager.apply_inactivity_decay("fresh") is None

    @pytest.mark.asyncio
    async def test_unknown_user(self, manager):
        assert await manager.apply_inactivity_decay("ghost") is None

    @pytest.mark.asyncio
    async def test_decay_applied_during_scoring(self, manager, seed_score):
        await seed_score("back", overall=0.5, days_inactive=45)
        result = await manager.calculate_trust_score("back", "dispute")
        assert result.new_score == pytest.approx(weighted_score(result.factors, WEIGHTS) - 0.015)
        assert (await manager.get_trust_score("back")).decay_applied == 0.0

    @pytest.mark.asyncio
    async def test_boost_fades_with_inactivity(self, manager, seed_score):
        await seed_score("returning", overall=0.5, days_inactive=20)
        result = await manager.calculate_trust_score("returning", "endorse")
        boost = result.new_score - weighted_score(result.factors, WEIGHTS)
        assert boost == pytest.approx(0.05 * 0.8187, rel=1e-3)


class TestThresholds:
    def test_band_boundaries(self, manager):
        assert manager.threshold_for_score(0.0).level == TrustLevel.VERY_LOW
        assert manager.threshold_for_score(0.2).level == TrustLevel.LOW
        assert manager.threshold_for_score(0.5999).level == TrustLevel.MEDIUM
        assert manager.threshold_for_score(0.6).level == TrustLevel.HIGH
        assert manager.threshold_for_score(1.0).level == TrustLevel.VERY_HIGH

    @pytest.mark.asyncio
    async def test_unseen_user_is_medium(self, manager):
        assert (await manager.get_trust_threshold("nobody")).level == TrustLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_threshold_is_stable_without_updates(self, manager, seed_score):
        await seed_score("alice", overall=0.85)
        first = await manager.get_trust_threshold("alice")
        assert await manager.get_trust_threshold("alice") == first
        assert first.level == TrustLevel.VERY_HIGH

    @pytest.mark.asyncio
    async def test_threshold_loads_stored_score_on_cold_cache(self, store, config, seed_score):
        await seed_score("mallory", overall=0.1)
        fresh = TrustScoreManager(store, config, clock=FakeClock())
        assert fresh.peek_trust_score("mallory") is None
        assert (await fresh.get_trust_threshold("mallory")).level == TrustLevel.VERY_LOW

    @pytest.mark.asyncio
    async def test_threshold_during_outage(self, manager, store, seed_score):
        await seed_score("vet", overall=0.85)
        await manager.get_trust_score("vet")
        store.fail_reads = True
        assert (await manager.get_trust_threshold("vet")).level == TrustLevel.VERY_HIGH
        assert (await manager.get_trust_threshold("nobody")).level == TrustLevel.VERY_LOW

    @pytest.mark.asyncio
    async def test_rate_limit_follows_band(self, manager, seed_score):
        assert (await manager.get_trust_based_rate_limit("nobody")).max_requests == 50
        await seed_score("spammer", overall=0.1)
        params = await manager.get_trust_based_rate_limit("spammer")
        assert params.max_requests == 10
        assert params.penalty_multiplier == 2.0


class TestCacheLifecycle:
    @pytest.mark.asyncio
    async def test_lookup_trust_does_not_cache(self, manager, seed_score):
        await seed_score("quiet", overall=0.3)
        assert await manager.lookup_trust("quiet") == pytest.approx(0.3)
        assert await manager.lookup_trust("stranger") == 0.5
        assert manager.cache.size == 0

    @pytest.mark.asyncio
    async def test_lookup_trust_prefers_cached_score(self, manager, store):
        await manager.calculate_trust_score("alice", "confirm")
        store.fail_reads = True
        assert await manager.lookup_trust("alice") == manager.peek_trust_score("alice").overall

    @pytest.mark.asyncio
    async def test_idle_scores_evicted(self, manager, clock):
        await manager.get_trust_score("visitor")
        await manager.calculate_trust_score("alice", "report")
        clock.advance(DAY + 1)
        await manager.get_trust_score("alice")
        assert manager.evict_idle_scores() == 1
        assert manager.cache.keys() == ["alice"]

    @pytest.mark.asyncio
    async def test_evicted_score_reloads_from_store(self, manager, clock):
        await manager.calculate_trust_score("alice", "confirm")
        saved = manager.peek_trust_score("alice")
        clock.advance(DAY + 1)
        manager.evict_idle_scores()
        assert await manager.get_trust_score("alice") == saved

    @pytest.mark.asyncio
    async def test_decay_does_not_keep_entries_alive(self, manager, seed_score, clock):
        await seed_score("old", overall=0.5, days_inactive=45)
        await manager.get_trust_score("old")
        clock.advance(DAY / 2)
        assert await manager.apply_inactivity_decay("old") is not None
        clock.advance(DAY / 2 + 1)
        assert manager.evict_idle_scores() == 1

    @pytest.mark.asyncio
    async def test_user_locks_released(self, manager):
        await asyncio.gather(*(manager.calculate_trust_score("u1", "confirm") for _ in range(5)))
        await manager.apply_inactivity_decay("u1")
        assert manager._locks == {}


class TestCanPerformAction:
    @pytest.mark.asyncio
    async def test_very_low_user_cannot_report(self, manager, seed_score):
        await seed_score("newbie", overall=0.15)
        result = await manager.can_perform_action("newbie", "report")
        assert not result.allowed
        assert result.reason == "Insufficient trust level for action: report"
        assert result.restrictions == ["no_reporting", "no_voting", "no_confirmation", "rate_limit_strict"]
        assert result.requirements == ["mfa_required", "manual_review"]

    @pytest.mark.asyncio
    async def test_medium_user_can_report(self, manager):
        result = await manager.can_perform_action("alice", "report")
        assert result.allowed
        assert result.reason is None
        assert "content_filtering" in result.restrictions

    @pytest.mark.asyncio
    async def test_medium_user_cannot_moderate(self, manager):
        result = await manager.can_perform_action("alice", "moderate")
        assert not result.allowed

    @pytest.mark.asyncio
    async def test_low_user_comment_needs_mfa(self, manager, seed_score, mfa):
        await seed_score("lowry", overall=0.3)
        result = await manager.can_perform_action("lowry", "comment")
        assert not result.allowed
        assert result.reason == "MFA required but not enabled"
        mfa.enable("lowry")
        assert (await manager.can_perform_action("lowry", "comment")).allowed

    @pytest.mark.asyncio
    async def test_very_low_read_needs_review(self, manager, seed_score, mfa):
        await seed_score("newbie", overall=0.15)
        mfa.enable("newbie")
        result = await manager.can_perform_action("newbie", "read")
        assert not result.allowed
        assert result.reason == "Manual review required"

    @pytest.mark.asyncio
    async def test_mfa_provider_failure_treated_as_disabled(self, store, config, seed_score):
        manager = TrustScoreManager(store, config, mfa_provider=RaisingMfa(), clock=FakeClock())
        await seed_score("lowry", overall=0.3)
        result = await manager.can_perform_action("lowry", "comment")
        assert result.reason == "MFA required but not enabled"

    @pytest.mark.asyncio
    async def test_very_high_user_can_admin(self, manager, seed_score):
        await seed_score("root", overall=0.9)
        assert (await manager.can_perform_action("root", "admin")).allowed

    @pytest.mark.asyncio
    async def test_emergency_mode_opens_everything_above_minimum(self, store, seed_score):
        config = EngineConfig.create(attack_resistance={"emergency_mode": True})
        manager = TrustScoreManager(store, config, clock=FakeClock())
        await seed_score("helper", overall=0.45)
        await seed_score("stranger", overall=0.3)
        assert (await manager.can_perform_action("helper", "moderate")).allowed
        assert not (await manager.can_perform_action("stranger", "report")).allowed

    @pytest.mark.asyncio
    async def test_store_outage_fails_closed_except_read(self, manager, store):
        store.fail_reads = True
        denied = await manager.can_perform_action("alice", "report")
        assert not denied.allowed
        assert denied.reason == "trust_data_unavailable"
        assert (await manager.can_perform_action("alice", "read")).allowed

    @pytest.mark.asyncio
    async def test_unknown_action(self, manager):
        with pytest.raises(ValueError):
            await manager.can_perform_action("alice", "fly")
