"""Shared fixtures: a controllable clock, an in-memory store and wired components."""

import pytest

from trustguard.collaborators import AlertLog, RecordingSuspensionActuator, StaticMfaProvider
from trustguard.config import EngineConfig
from trustguard.models import Reputation, TrustScore
from trustguard.records import UserRecord
from trustguard.store import MemoryDataStore
from trustguard.sybil import SybilDetectionEngine
from trustguard.trust import TrustScoreManager

NOW = 1_700_000_000.0  # 2023-11-14T22:13:20Z
DAY = 86400.0


class FakeClock:
    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryDataStore()


@pytest.fixture
def config():
    return EngineConfig.create()


@pytest.fixture
def alerts(clock):
    return AlertLog(clock=clock)


@pytest.fixture
def mfa():
    return StaticMfaProvider()


@pytest.fixture
def suspension():
    return RecordingSuspensionActuator()


@pytest.fixture
def manager(store, config, alerts, mfa, clock):
    return TrustScoreManager(store, config, alert_sink=alerts, mfa_provider=mfa, clock=clock)


@pytest.fixture
def sybil(store, config, manager, alerts, suspension, clock):
    return SybilDetectionEngine(store, config, manager, alert_sink=alerts,
                                suspension=suspension, clock=clock)


@pytest.fixture
def seed_score(store):
    """Save a stored trust score with the given overall and days of inactivity."""
    async def _seed(user_id, overall=0.5, days_inactive=0.0, **fields):
        at = NOW - days_inactive * DAY
        score = TrustScore(
            user_id=user_id,
            overall=overall,
            reputation=fields.pop("reputation", None) or Reputation(last_activity=at),
            last_updated=at,
            **fields,
        )
        await store.save_trust_score(score)
        return score
    return _seed


@pytest.fixture
def seed_user(store):
    def _seed(user_id, age_seconds=30 * DAY, origin="", **fields):
        user = UserRecord(user_id=user_id, created_at=NOW - age_seconds,
                          network_origin=origin, **fields)
        store.add_user(user)
        return user
    return _seed
