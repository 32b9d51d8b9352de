"""
trustguard.models — Trust score records, action kinds and decision types.

All timestamps are POSIX seconds (floats). Records round-trip through
``to_dict``/``from_dict`` without field loss so that any DataStore can
persist them as plain JSON.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class ActionKind(str, Enum):
    """Scored actions that move a user's trust factors."""
    REPORT = "report"
    CONFIRM = "confirm"
    DISPUTE = "dispute"
    ENDORSE = "endorse"
    MODERATE = "moderate"
    PENALTY = "penalty"
    BOOST = "boost"


class RequestAction(str, Enum):
    """Actions a user asks to perform, checked against the trust bands."""
    READ = "read"
    COMMENT = "comment"
    REPORT = "report"
    CONFIRM = "confirm"
    DISPUTE = "dispute"
    VOTE = "vote"
    ENDORSE = "endorse"
    MODERATE = "moderate"
    ADMIN = "admin"

    @property
    def permission(self) -> str:
        return _REQUEST_PERMISSIONS[self]

    @property
    def is_vote(self) -> bool:
        return self in (RequestAction.CONFIRM, RequestAction.DISPUTE, RequestAction.VOTE)

    @property
    def security_sensitive(self) -> bool:
        """Everything except plain reads fails closed when trust data is unavailable."""
        return self is not RequestAction.READ


_REQUEST_PERMISSIONS = {
    RequestAction.READ: "read_public",
    RequestAction.COMMENT: "comment",
    RequestAction.REPORT: "report",
    RequestAction.CONFIRM: "vote",
    RequestAction.DISPUTE: "vote",
    RequestAction.VOTE: "vote",
    RequestAction.ENDORSE: "vote",
    RequestAction.MODERATE: "moderate",
    RequestAction.ADMIN: "admin",
}


class TrustLevel(str, Enum):
    """The five ordered trust bands, lowest first."""
    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class Resistance(str, Enum):
    BLOCKED = "blocked"
    LIMITED = "limited"
    ALLOWED = "allowed"


# ─── Trust factors ─────────────────────────────────────────────────

BOUNDED_FACTORS = (
    "reporting_accuracy",
    "confirmation_accuracy",
    "dispute_accuracy",
    "response_time",
    "location_accuracy",
    "contribution_frequency",
    "community_endorsement",
    "consistency_score",
)

ACCURACY_FACTORS = (
    "reporting_accuracy",
    "confirmation_accuracy",
    "dispute_accuracy",
    "location_accuracy",
)


@dataclass
class TrustFactors:
    """Named sub-scores. All bounded to [0, 1] except ``penalty_score``,
    which only has a lower bound of 0 and lowers the overall score through
    its negative weight."""
    reporting_accuracy: float = 0.5
    confirmation_accuracy: float = 0.5
    dispute_accuracy: float = 0.5
    response_time: float = 0.5
    location_accuracy: float = 0.5
    contribution_frequency: float = 0.0
    community_endorsement: float = 0.0
    penalty_score: float = 0.0
    consistency_score: float = 0.5
    expertise_areas: list[str] = field(default_factory=list)

    def get(self, name: str) -> float:
        return getattr(self, name)

    def copy(self) -> "TrustFactors":
        return TrustFactors.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TrustFactors":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["expertise_areas"] = list(known.get("expertise_areas") or [])
        return cls(**known)


@dataclass
class TrustHistoryEntry:
    """One append-only entry in a user's bounded score history."""
    timestamp: float
    score: float
    action: str
    context: str
    reason: str
    impact: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TrustHistoryEntry":
        return cls(**data)


@dataclass
class Reputation:
    """Secondary aggregate published alongside the trust score."""
    global_score: float = 0.5
    community_score: float = 0.5
    domain_score: float = 0.5
    endorsements: int = 0
    reports: int = 0
    disputes: int = 0
    last_activity: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Reputation":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class TrustScore:
    """Per-user trust record, owned and mutated only by TrustScoreManager."""
    user_id: str
    overall: float = 0.5
    factors: TrustFactors = field(default_factory=TrustFactors)
    history: list[TrustHistoryEntry] = field(default_factory=list)
    reputation: Reputation = field(default_factory=Reputation)
    confidence: float = 0.5
    last_updated: float = 0.0
    decay_applied: float = 0.0  # inactivity decay already taken since last activity

    @classmethod
    def neutral(cls, user_id: str, now: float) -> "TrustScore":
        """Default-neutral score for a user with no stored record."""
        return cls(
            user_id=user_id,
            reputation=Reputation(last_activity=now),
            last_updated=now,
        )

    @property
    def last_activity(self) -> float:
        return self.reputation.last_activity or self.last_updated

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "overall": self.overall,
            "factors": self.factors.to_dict(),
            "history": [h.to_dict() for h in self.history],
            "reputation": self.reputation.to_dict(),
            "confidence": self.confidence,
            "last_updated": self.last_updated,
            "decay_applied": self.decay_applied,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrustScore":
        return cls(
            user_id=data["user_id"],
            overall=data.get("overall", 0.5),
            factors=TrustFactors.from_dict(data.get("factors") or {}),
            history=[TrustHistoryEntry.from_dict(h) for h in data.get("history") or []],
            reputation=Reputation.from_dict(data.get("reputation") or {}),
            confidence=data.get("confidence", 0.5),
            last_updated=data.get("last_updated", 0.0),
            decay_applied=data.get("decay_applied", 0.0),
        )


# ─── Decision types ────────────────────────────────────────────────

@dataclass(frozen=True)
class TrustThreshold:
    """A trust band with its fixed permission, restriction and requirement sets."""
    level: TrustLevel
    min_score: float
    max_score: float
    permissions: tuple[str, ...]
    restrictions: tuple[str, ...]
    requirements: tuple[str, ...]

    def permits(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass
class TrustCalculation:
    """Result of ``TrustScoreManager.calculate_trust_score``."""
    new_score: float
    previous_score: float
    change: float
    factors: TrustFactors


@dataclass
class ActionPermission:
    """Result of ``TrustScoreManager.can_perform_action``."""
    allowed: bool
    reason: Optional[str] = None
    requirements: list[str] = field(default_factory=list)
    restrictions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RateLimitParams:
    max_requests: int
    window_ms: int
    penalty_multiplier: float

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000.0


@dataclass
class AttackResistanceVerdict:
    """Allow/limit/block decision for one action request. Never stored."""
    allowed: bool
    trust_weight: float
    resistance: Resistance
    adjusted_data: dict[str, Any] = field(default_factory=dict)
    sybil_risk: float = 0.0
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "trust_weight": round(self.trust_weight, 4),
            "resistance": self.resistance.value,
            "adjusted_data": dict(self.adjusted_data),
            "sybil_risk": round(self.sybil_risk, 4),
            "reasons": list(self.reasons),
        }
