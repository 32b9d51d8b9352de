"""
trustguard.config — Engine configuration with fixed defaults.

Every table and constant the engine uses lives here so deployments can
override them. Invalid configurations (unordered bands, missing rate-limit
rows, negative rates) fail at construction time with ConfigurationError.

Usage:
    config = EngineConfig.create()                      # all defaults
    config = EngineConfig.create(sweep_interval_seconds=60)
    config = EngineConfig.from_env()                    # TRUSTGUARD_* overrides
"""

from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .models import RateLimitParams, TrustLevel, TrustThreshold

_FROZEN = ConfigDict(frozen=True, extra="forbid")


class FactorWeights(BaseModel):
    """Weights of the overall weighted sum. ``response_time`` is inverted."""
    model_config = _FROZEN

    reporting_accuracy: float = 0.25
    confirmation_accuracy: float = 0.20
    dispute_accuracy: float = 0.15
    response_time: float = 0.10
    location_accuracy: float = 0.10
    contribution_frequency: float = 0.10
    community_endorsement: float = 0.05
    penalty_score: float = -0.30
    consistency_score: float = 0.15

    @field_validator("penalty_score")
    @classmethod
    def _penalty_lowers_trust(cls, v: float) -> float:
        if v > 0:
            raise ValueError("penalty_score weight must be <= 0")
        return v

    def as_dict(self) -> dict[str, float]:
        return self.model_dump()


class ThresholdBand(BaseModel):
    model_config = _FROZEN

    level: TrustLevel
    min_score: float = Field(ge=0.0, le=1.0)
    max_score: float = Field(ge=0.0, le=1.0)
    permissions: tuple[str, ...] = ()
    restrictions: tuple[str, ...] = ()
    requirements: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _ordered(self) -> "ThresholdBand":
        if self.min_score >= self.max_score:
            raise ValueError(f"band {self.level.value}: min_score must be < max_score")
        return self

    def to_threshold(self) -> TrustThreshold:
        return TrustThreshold(
            level=self.level,
            min_score=self.min_score,
            max_score=self.max_score,
            permissions=self.permissions,
            restrictions=self.restrictions,
            requirements=self.requirements,
        )


DEFAULT_BANDS = (
    ThresholdBand(
        level=TrustLevel.VERY_LOW, min_score=0.0, max_score=0.2,
        permissions=("read_public",),
        restrictions=("no_reporting", "no_voting", "no_confirmation", "rate_limit_strict"),
        requirements=("mfa_required", "manual_review"),
    ),
    ThresholdBand(
        level=TrustLevel.LOW, min_score=0.2, max_score=0.4,
        permissions=("read_public", "comment"),
        restrictions=("limited_reporting", "no_voting", "rate_limit_moderate"),
        requirements=("mfa_required",),
    ),
    ThresholdBand(
        level=TrustLevel.MEDIUM, min_score=0.4, max_score=0.6,
        permissions=("read_public", "comment", "report", "vote"),
        restrictions=("standard_rate_limit", "content_filtering"),
        requirements=("mfa_optional",),
    ),
    ThresholdBand(
        level=TrustLevel.HIGH, min_score=0.6, max_score=0.8,
        permissions=("read_public", "comment", "report", "vote", "moderate"),
        restrictions=("enhanced_rate_limit", "priority_access"),
        requirements=("mfa_optional",),
    ),
    ThresholdBand(
        level=TrustLevel.VERY_HIGH, min_score=0.8, max_score=1.0,
        permissions=("read_public", "comment", "report", "vote", "moderate", "admin"),
        restrictions=("full_access",),
        requirements=("trusted_user",),
    ),
)


class RateLimitBand(BaseModel):
    model_config = _FROZEN

    max_requests: int = Field(gt=0)
    window_ms: int = Field(gt=0)
    penalty_multiplier: float = Field(gt=0.0)

    def to_params(self) -> RateLimitParams:
        return RateLimitParams(self.max_requests, self.window_ms, self.penalty_multiplier)


_FIFTEEN_MINUTES_MS = 15 * 60 * 1000

DEFAULT_RATE_LIMITS = {
    TrustLevel.VERY_LOW: RateLimitBand(max_requests=10, window_ms=_FIFTEEN_MINUTES_MS, penalty_multiplier=2.0),
    TrustLevel.LOW: RateLimitBand(max_requests=25, window_ms=_FIFTEEN_MINUTES_MS, penalty_multiplier=1.5),
    TrustLevel.MEDIUM: RateLimitBand(max_requests=50, window_ms=_FIFTEEN_MINUTES_MS, penalty_multiplier=1.2),
    TrustLevel.HIGH: RateLimitBand(max_requests=100, window_ms=_FIFTEEN_MINUTES_MS, penalty_multiplier=1.0),
    TrustLevel.VERY_HIGH: RateLimitBand(max_requests=200, window_ms=_FIFTEEN_MINUTES_MS, penalty_multiplier=0.8),
}


class DecayConfig(BaseModel):
    model_config = _FROZEN

    daily_decay_rate: float = Field(default=0.001, ge=0.0)
    inactivity_threshold_days: float = Field(default=30.0, ge=0.0)
    max_decay_amount: float = Field(default=0.3, ge=0.0, le=1.0)
    decay_floor: float = Field(default=0.1, ge=0.0, le=1.0)
    boost_amount: float = Field(default=0.05, ge=0.0, le=1.0)
    boost_decay_rate: float = Field(default=0.01, ge=0.0)
    history_limit: int = Field(default=100, gt=0)
    significant_change: float = Field(default=0.1, ge=0.0)


class AttackResistanceConfig(BaseModel):
    model_config = _FROZEN

    trust_weight_multiplier: float = Field(default=2.0, gt=0.0)
    consensus_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    sybil_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    reputation_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    sybil_block_risk: float = Field(default=0.5, gt=0.0, le=1.0)
    emergency_mode: bool = False
    emergency_min_trust: float = Field(default=0.4, ge=0.0, le=1.0)
    manual_review_below: float = Field(default=0.3, ge=0.0, le=1.0)
    trusted_user_min: float = Field(default=0.8, ge=0.0, le=1.0)
    max_impact_factor: float = Field(default=0.5, ge=0.0, le=1.0)
    rapid_change_window: int = Field(default=5, ge=2)
    rapid_change_average: float = Field(default=0.1, ge=0.0)
    rapid_change_max: float = Field(default=0.2, ge=0.0)


class DetectionConfig(BaseModel):
    """Thresholds for behaviour profiling and coordinated-attack scans."""
    model_config = _FROZEN

    # windows
    activity_window_hours: float = Field(default=24.0, gt=0.0)
    history_window_days: float = Field(default=7.0, gt=0.0)
    location_window_days: float = Field(default=7.0, gt=0.0)

    # activity pattern
    burst_window_seconds: float = Field(default=300.0, gt=0.0)
    burst_activity_threshold: int = Field(default=20, gt=0)
    consistent_timing_cv: float = Field(default=0.1, ge=0.0)
    min_intervals_for_timing: int = Field(default=10, ge=2)
    regular_interval_min_samples: int = Field(default=5, ge=2)
    regular_interval_sample: int = Field(default=20, ge=2)
    regular_interval_tolerance: float = Field(default=0.1, gt=0.0)
    regular_interval_share: float = Field(default=0.7, gt=0.0, le=1.0)

    # network / voting / reporting
    isolation_min_connections: int = Field(default=3, ge=0)
    consensus_alignment_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    min_peer_votes_for_consensus: int = Field(default=2, ge=1)
    max_reports_in_window: int = Field(default=50, ge=0)
    suspicious_trust_threshold: float = Field(default=0.2, ge=0.0, le=1.0)
    vote_cluster_window_seconds: float = Field(default=120.0, gt=0.0)
    vote_cluster_min_size: int = Field(default=5, ge=2)
    vote_cluster_overlap: float = Field(default=0.8, gt=0.0, le=1.0)
    report_cluster_radius_m: float = Field(default=500.0, gt=0.0)
    report_cluster_window_seconds: float = Field(default=3600.0, gt=0.0)
    report_cluster_min_reports: int = Field(default=3, ge=2)
    report_cluster_min_reporters: int = Field(default=5, ge=2)
    report_cluster_suspicious_share: float = Field(default=0.6, gt=0.0, le=1.0)
    report_cluster_low_trust: float = Field(default=0.3, ge=0.0, le=1.0)
    vote_scan_window_hours: float = Field(default=24.0, gt=0.0)
    max_speed_kmh: float = Field(default=1000.0, gt=0.0)

    # account creation burst
    account_burst_window_seconds: float = Field(default=3600.0, gt=0.0)
    account_burst_max_suspicious: int = Field(default=4, ge=0)
    origin_concentration_ratio: float = Field(default=0.5, gt=0.0, le=1.0)
    account_burst_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    new_account_age_seconds: float = Field(default=86400.0, gt=0.0)

    # endorsement rings
    endorsement_window_days: float = Field(default=7.0, gt=0.0)
    min_ring_size: int = Field(default=3, ge=2)
    ring_density_threshold: float = Field(default=0.5, gt=0.0, le=1.0)

    # scan bounds, cache, state machine
    scan_record_limit: int = Field(default=5000, gt=0)
    profile_idle_ttl_seconds: float = Field(default=86400.0, gt=0.0)
    risk_elevated: float = Field(default=0.6, ge=0.0, le=1.0)
    risk_high: float = Field(default=0.7, ge=0.0, le=1.0)
    risk_suspend: float = Field(default=0.8, ge=0.0, le=1.0)
    demotion_passes: int = Field(default=3, ge=1)
    suspend_on_coordinated_attack: bool = True
    coordinated_suspension_confidence: float = Field(default=0.8, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _risk_bands_ordered(self) -> "DetectionConfig":
        if not self.risk_elevated < self.risk_high < self.risk_suspend:
            raise ValueError("risk thresholds must satisfy elevated < high < suspend")
        return self


class EngineConfig(BaseModel):
    model_config = _FROZEN

    factor_weights: FactorWeights = Field(default_factory=FactorWeights)
    bands: tuple[ThresholdBand, ...] = DEFAULT_BANDS
    rate_limits: dict[TrustLevel, RateLimitBand] = Field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    decay: DecayConfig = Field(default_factory=DecayConfig)
    attack_resistance: AttackResistanceConfig = Field(default_factory=AttackResistanceConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    sweep_interval_seconds: float = Field(default=300.0, gt=0.0)
    trust_cache_idle_ttl_seconds: float = Field(default=86400.0, gt=0.0)

    @model_validator(mode="after")
    def _bands_contiguous(self) -> "EngineConfig":
        levels = [b.level for b in self.bands]
        if levels != list(TrustLevel):
            raise ValueError("bands must list every trust level once, lowest first")
        if self.bands[0].min_score != 0.0 or self.bands[-1].max_score != 1.0:
            raise ValueError("bands must cover [0, 1]")
        for prev, band in zip(self.bands, self.bands[1:]):
            if band.min_score != prev.max_score:
                raise ValueError(
                    f"band {band.level.value} must start where {prev.level.value} ends"
                )
        missing = [lvl.value for lvl in TrustLevel if lvl not in self.rate_limits]
        if missing:
            raise ValueError(f"rate_limits missing bands: {', '.join(missing)}")
        return self

    @classmethod
    def create(cls, **data: Any) -> "EngineConfig":
        """Build a config, converting validation errors to ConfigurationError."""
        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    @classmethod
    def from_env(cls, prefix: str = "TRUSTGUARD_", environ: Optional[dict] = None) -> "EngineConfig":
        """Defaults overridden by the commonly tuned ``TRUSTGUARD_*`` variables."""
        env = os.environ if environ is None else environ
        resistance: dict[str, Any] = {}
        mapping = {
            "TRUST_WEIGHT_MULTIPLIER": "trust_weight_multiplier",
            "CONSENSUS_THRESHOLD": "consensus_threshold",
            "SYBIL_THRESHOLD": "sybil_threshold",
            "REPUTATION_THRESHOLD": "reputation_threshold",
        }
        try:
            for var, name in mapping.items():
                if prefix + var in env:
                    resistance[name] = float(env[prefix + var])
            if prefix + "EMERGENCY_MODE" in env:
                resistance["emergency_mode"] = env[prefix + "EMERGENCY_MODE"].lower() in ("1", "true", "yes", "on")
            data: dict[str, Any] = {"attack_resistance": AttackResistanceConfig(**resistance)}
            if prefix + "SWEEP_INTERVAL" in env:
                data["sweep_interval_seconds"] = float(env[prefix + "SWEEP_INTERVAL"])
        except (ValueError, ValidationError) as exc:
            raise ConfigurationError(f"Invalid {prefix}* environment override: {exc}") from exc
        return cls.create(**data)

    def band_for(self, level: TrustLevel) -> ThresholdBand:
        for band in self.bands:
            if band.level == level:
                return band
        raise ConfigurationError(f"No band configured for {level.value}")
