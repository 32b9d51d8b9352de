"""Tests for the PostgreSQL DataStore. Skipped unless TRUSTGUARD_DATABASE_URL is set."""

import os

import pytest
import pytest_asyncio

from trustguard.database import PostgresDataStore
from trustguard.errors import StoreError
from trustguard.models import Reputation, TrustFactors, TrustHistoryEntry, TrustScore
from trustguard.records import (
    ActivityRecord,
    InteractionRecord,
    LocationRecord,
    ReportRecord,
    UserRecord,
    VoteRecord,
)

DATABASE_URL = os.environ.get("TRUSTGUARD_DATABASE_URL", "")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="TRUSTGUARD_DATABASE_URL not set")


@pytest_asyncio.fixture
async def db():
    """Fresh database for each test — truncates all tables."""
    d = PostgresDataStore(DATABASE_URL)
    await d.connect()
    async with d._pool.acquire() as conn:
        await conn.execute(
            "TRUNCATE trust_scores, users, activity_log, votes, reports, locations, interactions"
        )
    yield d
    await d.close()


@pytest.mark.asyncio
async def test_trust_score_round_trip(db):
    score = TrustScore(
        user_id="alice",
        overall=0.61,
        factors=TrustFactors(reporting_accuracy=0.7, expertise_areas=["medical"]),
        history=[TrustHistoryEntry(100.0, 0.61, "report", "{}", "Emergency report submitted", 0.02)],
        reputation=Reputation(reports=1, last_activity=100.0),
        confidence=0.8,
        last_updated=100.0,
        decay_applied=0.002,
    )
    await db.save_trust_score(score)
    assert await db.load_trust_score("alice") == score


@pytest.mark.asyncio
async def test_save_trust_score_upserts(db):
    await db.save_trust_score(TrustScore(user_id="a", overall=0.4))
    await db.save_trust_score(TrustScore(user_id="a", overall=0.6))
    assert (await db.load_trust_score("a")).overall == 0.6


@pytest.mark.asyncio
async def test_missing_trust_score(db):
    assert await db.load_trust_score("nobody") is None


@pytest.mark.asyncio
async def test_users_and_suspension(db):
    await db.save_user(UserRecord("u1", 1000.0, network_origin="10.0.0.1"))
    await db.save_user(UserRecord("u2", 2000.0))
    assert await db.mark_suspended("u1", "High Sybil risk detected", 3000.0)
    assert not await db.mark_suspended("ghost", "x", 3000.0)

    user = await db.load_user("u1")
    assert user.status == "suspended"
    assert user.network_origin == "10.0.0.1"
    recent = await db.load_recent_account_creations(since=1500.0)
    assert [u.user_id for u in recent] == ["u2"]


@pytest.mark.asyncio
async def test_history_windows(db):
    await db.record_activity(ActivityRecord("u", "report", 50.0))
    await db.record_activity(ActivityRecord("u", "confirm", 150.0))
    await db.record_vote(VoteRecord("u", "e1", "confirm", 150.0, 0.8))
    await db.record_vote(VoteRecord("v", "e1", "dispute", 160.0))
    await db.record_report(ReportRecord("r1", "u", 40.7, -74.0, 150.0))
    await db.record_location(LocationRecord("u", 40.7, -74.0, 150.0))

    assert [a.action for a in await db.load_recent_activity("u", since=100.0)] == ["confirm"]
    assert [v.trust_weight for v in await db.load_voting_history("u", since=100.0)] == [0.8]
    assert {v.user_id for v in await db.load_event_votes(["e1"], since=0.0)} == {"u", "v"}
    assert [r.report_id for r in await db.load_reporting_history("u", since=0.0)] == ["r1"]
    assert len(await db.load_location_history("u", since=0.0)) == 1


@pytest.mark.asyncio
async def test_recent_windows_keep_latest(db):
    for i in range(5):
        await db.record_vote(VoteRecord(f"u{i}", "e1", "confirm", float(i)))
    votes = await db.load_recent_votes(since=0.0, limit=2)
    assert [v.user_id for v in votes] == ["u3", "u4"]


@pytest.mark.asyncio
async def test_account_creations_keep_latest(db):
    for i in range(5):
        await db.save_user(UserRecord(f"u{i}", float(i)))
    users = await db.load_recent_account_creations(since=0.0, limit=2)
    assert [u.user_id for u in users] == ["u3", "u4"]

@pytest.mark.asyncio
async def test_endorsements_filtered(db):
    await db.record_interaction(InteractionRecord("a", "b", "endorsement", 10.0))
    await db.record_interaction(InteractionRecord("b", "a", "confirmation", 11.0))
    assert len(await db.load_interactions("a", since=0.0)) == 2
    endorsements = await db.load_recent_endorsements(since=0.0)
    assert [(e.source_user_id, e.target_user_id) for e in endorsements] == [("a", "b")]


@pytest.mark.asyncio
async def test_not_connected():
    store = PostgresDataStore(DATABASE_URL)
    with pytest.raises(StoreError):
        await store.load_user("u")
