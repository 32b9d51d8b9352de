"""
trustguard.records — Data-store records and behaviour-analysis types.

The raw records (users, activity, votes, reports, locations, interactions)
are what a DataStore returns. The derived types (activity pattern, voting
and reporting history, flags, profiles, findings) are rebuilt by the
Behavior Aggregator and Sybil Detection Engine on every analysis pass.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SybilFlagType(str, Enum):
    ACCOUNT_CREATION_BURST = "account_creation_burst"
    SIMILAR_BEHAVIOR = "similar_behavior"
    COORDINATED_VOTING = "coordinated_voting"
    CIRCULAR_ENDORSEMENT = "circular_endorsement"
    IMPOSSIBLE_MOVEMENT = "impossible_movement"
    CLUSTERED_REPORTING = "clustered_reporting"
    TRUST_SCORE_MANIPULATION = "trust_score_manipulation"
    AUTOMATED_BEHAVIOR = "automated_behavior"
    NETWORK_ISOLATION = "network_isolation"
    TEMPORAL_CORRELATION = "temporal_correlation"


class RiskState(str, Enum):
    """Risk-handling state of a profile. Ordered by ``rank``."""
    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH_RISK = "high_risk"
    SUSPENDED = "suspended"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskState.NORMAL: 0,
    RiskState.ELEVATED: 1,
    RiskState.HIGH_RISK: 2,
    RiskState.SUSPENDED: 3,
}


# ─── Raw store records ─────────────────────────────────────────────

@dataclass
class UserRecord:
    user_id: str
    created_at: float
    last_activity: float = 0.0
    network_origin: str = ""  # client IP or origin tag
    user_agent: str = ""
    platform: str = ""
    status: str = "active"
    suspension_reason: str = ""


@dataclass
class ActivityRecord:
    user_id: str
    action: str
    timestamp: float


@dataclass
class VoteRecord:
    user_id: str
    event_id: str
    vote_type: str  # "confirm" | "dispute"
    timestamp: float
    trust_weight: float = 0.0


@dataclass
class ReportRecord:
    report_id: str
    user_id: str
    latitude: float
    longitude: float
    timestamp: float
    severity: str = "medium"
    status: str = "pending"  # pending | confirmed | resolved | disputed


@dataclass
class LocationRecord:
    user_id: str
    latitude: float
    longitude: float
    timestamp: float
    accuracy: float = 10.0
    source: str = "gps"


@dataclass
class InteractionRecord:
    """A directed user-to-user interaction (endorsement, confirmation, ...)."""
    source_user_id: str
    target_user_id: str
    kind: str  # "endorsement" | "confirmation" | "dispute" | "report"
    timestamp: float
    trust_weight: float = 0.0


# ─── Behaviour aggregates ──────────────────────────────────────────

@dataclass
class ActivityPattern:
    average_actions_per_hour: float = 0.0
    actions_per_hour: dict[int, int] = field(default_factory=dict)
    peak_activity_hours: list[int] = field(default_factory=list)
    action_distribution: dict[str, int] = field(default_factory=dict)
    time_between_actions: list[float] = field(default_factory=list)
    burst_activity_count: int = 0
    consistent_timing: bool = False
    regular_intervals: bool = False
    automated_behavior: bool = False


@dataclass
class NetworkConnection:
    connected_user_id: str
    connection_type: str
    timestamp: float
    trust_weight: float = 0.0
    reciprocity: bool = False


@dataclass
class VotingCluster:
    cluster_id: str
    event_id: str
    users: list[str]
    vote_type: str
    timing: list[float]
    similarity: float


@dataclass
class VotingHistory:
    total_votes: int = 0
    confirm_votes: int = 0
    dispute_votes: int = 0
    consensus_alignment: float = 0.5
    voting_clusters: list[VotingCluster] = field(default_factory=list)
    target_voting: dict[str, int] = field(default_factory=dict)


@dataclass
class ReportCluster:
    cluster_id: str
    report_ids: list[str]
    center: tuple[float, float]
    radius_m: float
    time_window_s: float


@dataclass
class ReportingHistory:
    total_reports: int = 0
    confirmed_reports: int = 0
    disputed_reports: int = 0
    average_severity: float = 0.0
    report_clusters: list[ReportCluster] = field(default_factory=list)


@dataclass
class LocationPoint:
    latitude: float
    longitude: float
    timestamp: float
    accuracy: float
    source: str
    feasible: bool = True
    speed_kmh: float = 0.0


# ─── Flags, profiles, findings ─────────────────────────────────────

@dataclass(frozen=True)
class SybilFlag:
    """Evidenced indicator of one suspicious pattern. Immutable once created."""
    type: SybilFlagType
    severity: Severity
    description: str
    evidence: dict[str, Any]
    detected_at: float
    confidence: float

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "evidence": dict(self.evidence),
            "detected_at": self.detected_at,
            "confidence": self.confidence,
        }


@dataclass
class UserBehaviorProfile:
    """Derived per-user view; a cache, never the source of truth."""
    user_id: str
    created_at: float
    last_activity: float
    trust_score: float
    activity_pattern: ActivityPattern
    network_connections: list[NetworkConnection]
    voting_history: VotingHistory
    reporting_history: ReportingHistory
    location_history: list[LocationPoint]
    device_fingerprint: str
    risk_score: float = 0.5
    flags: list[SybilFlag] = field(default_factory=list)
    analyzed_at: float = 0.0

    def has_flag(self, *types: SybilFlagType) -> bool:
        return any(f.type in types for f in self.flags)

    def add_flag(self, flag: SybilFlag) -> None:
        self.flags.append(flag)


@dataclass
class RiskAssessment:
    risk_score: float
    risk_level: str
    flags: list[SybilFlag]
    recommendations: list[str]

    def to_dict(self) -> dict:
        return {
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "flags": [f.to_dict() for f in self.flags],
            "recommendations": list(self.recommendations),
        }


@dataclass
class CoordinatedAttackFinding:
    attack_detected: bool
    attack_type: str = ""
    involved_users: list[str] = field(default_factory=list)
    confidence: float = 0.0
    evidence: list[dict[str, Any]] = field(default_factory=list)
    flag_type: Optional[SybilFlagType] = None

    @classmethod
    def none(cls) -> "CoordinatedAttackFinding":
        return cls(attack_detected=False)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["flag_type"] = self.flag_type.value if self.flag_type else None
        return data
