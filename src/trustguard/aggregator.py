"""
trustguard.aggregator — Behavior Aggregator.

Reduces a user's raw store records to summary statistics. The reducers are
plain synchronous functions over lists of records; ``BehaviorAggregator``
only does the (windowed, read-only) loading and hands the records to them.

    summarize_activity      → ActivityPattern
    summarize_votes         → VotingHistory (consensus alignment, clusters)
    summarize_reports       → ReportingHistory (space-time clusters)
    trace_locations         → list[LocationPoint] (speed feasibility)
    summarize_connections   → list[NetworkConnection]
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import statistics
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import DetectionConfig
from .records import (
    ActivityPattern,
    ActivityRecord,
    InteractionRecord,
    LocationPoint,
    LocationRecord,
    NetworkConnection,
    ReportCluster,
    ReportingHistory,
    ReportRecord,
    UserRecord,
    VoteRecord,
    VotingCluster,
    VotingHistory,
)
from .store import DataStore

EARTH_RADIUS_M = 6_371_000.0

_SEVERITY_VALUES = {"low": 1, "medium": 2, "high": 3, "critical": 4}
_CONFIRMED_STATUSES = ("confirmed", "resolved")


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def device_fingerprint(user: UserRecord) -> str:
    raw = f"{user.user_agent}|{user.platform}|{user.network_origin}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def max_in_window(timestamps: list[float], window: float) -> int:
    """Largest number of timestamps falling in any window of ``window`` seconds."""
    ts = sorted(timestamps)
    best = 0
    start = 0
    for end, t in enumerate(ts):
        while t - ts[start] >= window:
            start += 1
        best = max(best, end - start + 1)
    return best


# ─── Activity ──────────────────────────────────────────────────────

def _consistent_timing(intervals: list[float], config: DetectionConfig) -> bool:
    if len(intervals) < config.min_intervals_for_timing:
        return False
    mean = statistics.fmean(intervals)
    if mean == 0:
        return True
    return statistics.pstdev(intervals) / mean < config.consistent_timing_cv


def _regular_intervals(intervals: list[float], config: DetectionConfig) -> bool:
    sample = intervals[:config.regular_interval_sample]
    if len(sample) < config.regular_interval_min_samples:
        return False
    dominant, _ = Counter(round(i) for i in sample).most_common(1)[0]
    tolerance = dominant * config.regular_interval_tolerance
    matching = sum(1 for i in sample if abs(i - dominant) <= tolerance)
    return matching / len(sample) >= config.regular_interval_share


def summarize_activity(records: list[ActivityRecord], config: DetectionConfig) -> ActivityPattern:
    if not records:
        return ActivityPattern()

    records = sorted(records, key=lambda r: r.timestamp)
    timestamps = [r.timestamp for r in records]
    intervals = [b - a for a, b in zip(timestamps, timestamps[1:])]

    per_hour: Counter[int] = Counter(
        datetime.fromtimestamp(t, tz=timezone.utc).hour for t in timestamps
    )
    peak = [hour for hour, _ in sorted(per_hour.items(), key=lambda kv: (-kv[1], kv[0]))[:3]]

    burst = max_in_window(timestamps, config.burst_window_seconds)
    consistent = _consistent_timing(intervals, config)
    regular = _regular_intervals(intervals, config)

    return ActivityPattern(
        average_actions_per_hour=len(records) / config.activity_window_hours,
        actions_per_hour=dict(per_hour),
        peak_activity_hours=peak,
        action_distribution=dict(Counter(r.action for r in records)),
        time_between_actions=intervals,
        burst_activity_count=burst,
        consistent_timing=consistent,
        regular_intervals=regular,
        automated_behavior=consistent or burst > config.burst_activity_threshold or regular,
    )


# ─── Voting ────────────────────────────────────────────────────────

def majority_vote(votes: list[VoteRecord]) -> str | None:
    """Most common vote type, or None on a tie."""
    counts = Counter(v.vote_type for v in votes).most_common()
    if not counts or (len(counts) > 1 and counts[0][1] == counts[1][1]):
        return None
    return counts[0][0]


def find_vote_groups(votes: list[VoteRecord], window: float, min_size: int) -> list[list[VoteRecord]]:
    """Maximal runs of same-event, same-type votes by distinct users within ``window`` seconds."""
    by_key: dict[tuple[str, str], list[VoteRecord]] = defaultdict(list)
    for v in votes:
        by_key[(v.event_id, v.vote_type)].append(v)

    groups = []
    for key in sorted(by_key):
        ordered = sorted(by_key[key], key=lambda v: v.timestamp)
        start = 0
        best: list[VoteRecord] = []
        for end in range(len(ordered)):
            while ordered[end].timestamp - ordered[start].timestamp > window:
                start += 1
            run = ordered[start:end + 1]
            if len({v.user_id for v in run}) > len({v.user_id for v in best}):
                best = run
        if len({v.user_id for v in best}) >= min_size:
            groups.append(best)
    return groups


def summarize_votes(user_id: str, votes: list[VoteRecord], event_votes: list[VoteRecord],
                    config: DetectionConfig) -> VotingHistory:
    """``votes`` are the user's own; ``event_votes`` every vote on those events."""
    history = VotingHistory(
        total_votes=len(votes),
        confirm_votes=sum(1 for v in votes if v.vote_type == "confirm"),
        dispute_votes=sum(1 for v in votes if v.vote_type == "dispute"),
        target_voting=dict(Counter(v.event_id for v in votes)),
    )
    if not votes:
        return history

    peers_by_event: dict[str, list[VoteRecord]] = defaultdict(list)
    for v in event_votes:
        if v.user_id != user_id:
            peers_by_event[v.event_id].append(v)

    own_latest: dict[str, VoteRecord] = {}
    for v in sorted(votes, key=lambda v: v.timestamp):
        own_latest[v.event_id] = v

    eligible = aligned = 0
    for event_id, own in own_latest.items():
        peers = peers_by_event.get(event_id, [])
        if len(peers) < config.min_peer_votes_for_consensus:
            continue
        majority = majority_vote(peers)
        if majority is None:
            continue
        eligible += 1
        aligned += own.vote_type == majority
    if eligible:
        history.consensus_alignment = aligned / eligible

    window = config.vote_cluster_window_seconds
    for own in own_latest.values():
        nearby = [
            p for p in peers_by_event.get(own.event_id, [])
            if p.vote_type == own.vote_type and abs(p.timestamp - own.timestamp) <= window
        ]
        users = sorted({user_id} | {p.user_id for p in nearby})
        if len(users) < config.vote_cluster_min_size:
            continue
        timing = sorted([own.timestamp] + [p.timestamp for p in nearby])
        history.voting_clusters.append(VotingCluster(
            cluster_id=f"{own.event_id}:{own.vote_type}",
            event_id=own.event_id,
            users=users,
            vote_type=own.vote_type,
            timing=timing,
            similarity=max(0.0, 1.0 - (timing[-1] - timing[0]) / (2 * window)),
        ))
    return history


# ─── Reporting ─────────────────────────────────────────────────────

def cluster_reports(reports: list[ReportRecord], radius_m: float, window_s: float,
                    min_reports: int) -> list[list[ReportRecord]]:
    """Greedy space-time clustering seeded by the earliest unassigned report."""
    ordered = sorted(reports, key=lambda r: r.timestamp)
    assigned: set[int] = set()
    clusters = []
    for i, seed in enumerate(ordered):
        if i in assigned:
            continue
        members = [i]
        for j in range(i + 1, len(ordered)):
            other = ordered[j]
            if other.timestamp - seed.timestamp > window_s:
                break
            if j not in assigned and haversine_m(
                seed.latitude, seed.longitude, other.latitude, other.longitude
            ) <= radius_m:
                members.append(j)
        if len(members) >= min_reports:
            assigned.update(members)
            clusters.append([ordered[m] for m in members])
    return clusters


def summarize_reports(reports: list[ReportRecord], config: DetectionConfig) -> ReportingHistory:
    history = ReportingHistory(
        total_reports=len(reports),
        confirmed_reports=sum(1 for r in reports if r.status in _CONFIRMED_STATUSES),
        disputed_reports=sum(1 for r in reports if r.status == "disputed"),
    )
    if not reports:
        return history
    history.average_severity = statistics.fmean(_SEVERITY_VALUES.get(r.severity, 2) for r in reports)

    for members in cluster_reports(
        reports, config.report_cluster_radius_m,
        config.report_cluster_window_seconds, config.report_cluster_min_reports,
    ):
        lat = statistics.fmean(r.latitude for r in members)
        lon = statistics.fmean(r.longitude for r in members)
        history.report_clusters.append(ReportCluster(
            cluster_id=members[0].report_id,
            report_ids=[r.report_id for r in members],
            center=(lat, lon),
            radius_m=max(haversine_m(lat, lon, r.latitude, r.longitude) for r in members),
            time_window_s=members[-1].timestamp - members[0].timestamp,
        ))
    return history


# ─── Locations and connections ─────────────────────────────────────

def trace_locations(records: list[LocationRecord], config: DetectionConfig) -> list[LocationPoint]:
    """Chronological points, each marked with the speed needed to reach it."""
    points = []
    prev = None
    for r in sorted(records, key=lambda r: r.timestamp):
        point = LocationPoint(r.latitude, r.longitude, r.timestamp, r.accuracy, r.source)
        if prev is not None:
            distance_km = haversine_m(prev.latitude, prev.longitude, r.latitude, r.longitude) / 1000.0
            hours = (r.timestamp - prev.timestamp) / 3600.0
            if hours > 0:
                point.speed_kmh = distance_km / hours
            elif distance_km > 0:
                point.speed_kmh = math.inf
            point.feasible = point.speed_kmh <= config.max_speed_kmh
        points.append(point)
        prev = r
    return points


def summarize_connections(user_id: str, interactions: list[InteractionRecord]) -> list[NetworkConnection]:
    outgoing: set[str] = set()
    incoming: set[str] = set()
    latest: dict[str, InteractionRecord] = {}
    for i in sorted(interactions, key=lambda i: i.timestamp):
        if i.source_user_id == user_id and i.target_user_id != user_id:
            other = i.target_user_id
            outgoing.add(other)
        elif i.target_user_id == user_id and i.source_user_id != user_id:
            other = i.source_user_id
            incoming.add(other)
        else:
            continue
        latest[other] = i

    return [
        NetworkConnection(
            connected_user_id=other,
            connection_type=rec.kind,
            timestamp=rec.timestamp,
            trust_weight=rec.trust_weight,
            reciprocity=other in outgoing and other in incoming,
        )
        for other, rec in sorted(latest.items())
    ]


# ─── Loader ────────────────────────────────────────────────────────

@dataclass
class BehaviorSnapshot:
    user: UserRecord
    activity_pattern: ActivityPattern
    voting_history: VotingHistory
    reporting_history: ReportingHistory
    location_history: list[LocationPoint]
    network_connections: list[NetworkConnection]
    device_fingerprint: str


class BehaviorAggregator:
    """Loads a user's windowed records and reduces them to a BehaviorSnapshot."""

    def __init__(self, store: DataStore, config: DetectionConfig):
        self.store = store
        self.config = config

    async def collect(self, user: UserRecord, now: float) -> BehaviorSnapshot:
        cfg = self.config
        history_since = now - cfg.history_window_days * 86400
        activity, votes, reports, locations, interactions = await asyncio.gather(
            self.store.load_recent_activity(user.user_id, now - cfg.activity_window_hours * 3600),
            self.store.load_voting_history(user.user_id, history_since),
            self.store.load_reporting_history(user.user_id, history_since),
            self.store.load_location_history(user.user_id, now - cfg.location_window_days * 86400),
            self.store.load_interactions(user.user_id, history_since),
        )
        event_votes = await self.store.load_event_votes(
            sorted({v.event_id for v in votes}), history_since,
        )
        return BehaviorSnapshot(
            user=user,
            activity_pattern=summarize_activity(activity, cfg),
            voting_history=summarize_votes(user.user_id, votes, event_votes, cfg),
            reporting_history=summarize_reports(reports, cfg),
            location_history=trace_locations(locations, cfg),
            network_connections=summarize_connections(user.user_id, interactions),
            device_fingerprint=device_fingerprint(user),
        )
