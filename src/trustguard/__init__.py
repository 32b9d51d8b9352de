"""trustguard — Trust scoring and Sybil resistance for crowd-sourced emergency reporting."""

from trustguard.errors import TrustGuardError, StoreError, UserNotFoundError, ConfigurationError
from trustguard.config import (
    EngineConfig, FactorWeights, ThresholdBand, RateLimitBand,
    DecayConfig, AttackResistanceConfig, DetectionConfig,
)
from trustguard.models import (
    ActionKind, RequestAction, TrustLevel, Resistance,
    TrustFactors, TrustHistoryEntry, Reputation, TrustScore,
    TrustThreshold, TrustCalculation, ActionPermission, RateLimitParams,
    AttackResistanceVerdict,
)
from trustguard.records import (
    Severity, SybilFlagType, RiskState,
    UserRecord, ActivityRecord, VoteRecord, ReportRecord, LocationRecord, InteractionRecord,
    SybilFlag, UserBehaviorProfile, RiskAssessment, CoordinatedAttackFinding,
)
from trustguard.store import DataStore, MemoryDataStore
from trustguard.cache import KeyedCache
from trustguard.collaborators import (
    AlertSink, MfaProvider, SuspensionActuator,
    AlertLog, LoggingAlertSink, StaticMfaProvider,
    StoreSuspensionActuator, RecordingSuspensionActuator,
)
from trustguard.trust import TrustScoreManager
from trustguard.sybil import SybilDetectionEngine
from trustguard.resistance import AttackResistanceCoordinator
from trustguard.rate_limiter import TrustRateLimiter, RateCheckResult
from trustguard.scheduler import BackgroundSweep, SweepReport
from trustguard.engine import TrustEngine, ActionOutcome
from trustguard.log import setup_structured_logging, bind_user

__all__ = [
    "TrustGuardError",
    "StoreError",
    "UserNotFoundError",
    "ConfigurationError",
    "EngineConfig",
    "FactorWeights",
    "ThresholdBand",
    "RateLimitBand",
    "DecayConfig",
    "AttackResistanceConfig",
    "DetectionConfig",
    "ActionKind",
    "RequestAction",
    "TrustLevel",
    "Resistance",
    "TrustFactors",
    "TrustHistoryEntry",
    "Reputation",
    "TrustScore",
    "TrustThreshold",
    "TrustCalculation",
    "ActionPermission",
    "RateLimitParams",
    "AttackResistanceVerdict",
    "Severity",
    "SybilFlagType",
    "RiskState",
    "UserRecord",
    "ActivityRecord",
    "VoteRecord",
    "ReportRecord",
    "LocationRecord",
    "InteractionRecord",
    "SybilFlag",
    "UserBehaviorProfile",
    "RiskAssessment",
    "CoordinatedAttackFinding",
    "DataStore",
    "MemoryDataStore",
    "KeyedCache",
    "AlertSink",
    "MfaProvider",
    "SuspensionActuator",
    "AlertLog",
    "LoggingAlertSink",
    "StaticMfaProvider",
    "StoreSuspensionActuator",
    "RecordingSuspensionActuator",
    "TrustScoreManager",
    "SybilDetectionEngine",
    "AttackResistanceCoordinator",
    "TrustRateLimiter",
    "RateCheckResult",
    "BackgroundSweep",
    "SweepReport",
    "TrustEngine",
    "ActionOutcome",
    "setup_structured_logging",
    "bind_user",
]
