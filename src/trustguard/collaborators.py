"""
trustguard.collaborators — Narrow contracts for the engine's external collaborators.

The engine never talks to an alerting system, an MFA service or an account
service directly. It calls the three interfaces below, and ships simple
in-process implementations for tests and single-node deployments:

    AlertLog            hash-chained, queryable alert trail
    LoggingAlertSink    forwards alerts to the ``trustguard.alerts`` logger
    StaticMfaProvider   fixed set of MFA-enabled users
    StoreSuspensionActuator  marks the user suspended in the DataStore
    RecordingSuspensionActuator  remembers calls (tests, dry runs)

Alert delivery is fire-and-forget: ``record_alert_safely`` logs and swallows
any sink failure so that scoring and analysis never fail because of it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterable, Optional

from .records import Severity
from .store import DataStore

logger = logging.getLogger(__name__)


# ─── Contracts ─────────────────────────────────────────────────────

class AlertSink(ABC):
    @abstractmethod
    async def record_alert(self, kind: str, severity: Severity, message: str,
                           detail: dict, source: str) -> None: ...


class MfaProvider(ABC):
    @abstractmethod
    async def is_mfa_enabled(self, user_id: str) -> bool: ...


class SuspensionActuator(ABC):
    @abstractmethod
    async def suspend_user(self, user_id: str, reason: str) -> bool:
        """Suspend ``user_id``. Returns False if the user could not be found."""


# ─── Alert trail ───────────────────────────────────────────────────

@dataclass
class Alert:
    """One alert with hash-chain integrity."""
    kind: str
    severity: str
    message: str
    detail: dict
    source: str
    timestamp: float
    entry_hash: str = ""
    prev_hash: str = ""
    sequence: int = 0

    def compute_hash(self) -> str:
        content = json.dumps({
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "detail": self.detail,
            "source": self.source,
            "timestamp": self.timestamp,
            "prev_hash": self.prev_hash,
            "sequence": self.sequence,
        }, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


class AlertLog(AlertSink):
    """
    In-memory, tamper-evident alert trail.

    Each alert carries the hash of the previous one; ``verify_integrity``
    walks the chain and reports the first broken link.

    Usage:
        alerts = AlertLog()
        engine = TrustEngine(store, alert_sink=alerts)
        ...
        alerts.query(kind="coordinated_attack", severity=Severity.HIGH)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._alerts: list[Alert] = []

    async def record_alert(self, kind: str, severity: Severity, message: str,
                           detail: dict, source: str) -> None:
        self.append(kind, severity, message, detail, source)

    def append(self, kind: str, severity: Severity, message: str,
               detail: Optional[dict] = None, source: str = "") -> Alert:
        prev_hash = self._alerts[-1].entry_hash if self._alerts else "genesis"
        alert = Alert(
            kind=kind,
            severity=Severity(severity).value,
            message=message,
            detail=dict(detail or {}),
            source=source,
            timestamp=self._clock(),
            prev_hash=prev_hash,
            sequence=len(self._alerts),
        )
        alert.entry_hash = alert.compute_hash()
        self._alerts.append(alert)
        return alert

    def verify_integrity(self) -> tuple[bool, Optional[int]]:
        """(True, None) if intact, else (False, index of first bad alert)."""
        for i, alert in enumerate(self._alerts):
            if alert.entry_hash != alert.compute_hash():
                return False, i
            expected_prev = "genesis" if i == 0 else self._alerts[i - 1].entry_hash
            if alert.prev_hash != expected_prev:
                return False, i
        return True, None

    def query(self, kind: Optional[str] = None,
              severity: Optional[Severity] = None,
              since: Optional[float] = None,
              limit: int = 100) -> list[Alert]:
        results = []
        sev = Severity(severity).value if severity else None
        for alert in reversed(self._alerts):
            if kind and alert.kind != kind:
                continue
            if sev and alert.severity != sev:
                continue
            if since and alert.timestamp < since:
                continue
            results.append(alert)
            if len(results) >= limit:
                break
        return list(reversed(results))

    @property
    def size(self) -> int:
        return len(self._alerts)


class LoggingAlertSink(AlertSink):
    """Emits alerts as log records; severity maps onto the log level."""

    _LEVELS = {
        Severity.LOW: logging.INFO,
        Severity.MEDIUM: logging.WARNING,
        Severity.HIGH: logging.WARNING,
        Severity.CRITICAL: logging.ERROR,
    }

    def __init__(self, logger_name: str = "trustguard.alerts"):
        self._logger = logging.getLogger(logger_name)

    async def record_alert(self, kind: str, severity: Severity, message: str,
                           detail: dict, source: str) -> None:
        self._logger.log(
            self._LEVELS[Severity(severity)],
            "%s [%s] %s",
            kind, source, message,
            extra={"alert_kind": kind, "alert_detail": detail},
        )


async def record_alert_safely(sink: Optional[AlertSink], kind: str, severity: Severity,
                              message: str, detail: dict, source: str) -> None:
    """Deliver an alert without ever failing the caller."""
    if sink is None:
        return
    try:
        await sink.record_alert(kind, severity, message, detail, source)
    except Exception:
        logger.warning("Alert sink failed for %s alert: %s", kind, message, exc_info=True)


# ─── MFA ───────────────────────────────────────────────────────────

class StaticMfaProvider(MfaProvider):
    def __init__(self, enabled_users: Iterable[str] = ()):
        self._enabled = set(enabled_users)

    def enable(self, user_id: str) -> None:
        self._enabled.add(user_id)

    async def is_mfa_enabled(self, user_id: str) -> bool:
        return user_id in self._enabled


# ─── Suspension ────────────────────────────────────────────────────

class StoreSuspensionActuator(SuspensionActuator):
    """Marks the user record as suspended in the DataStore."""

    def __init__(self, store: DataStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    async def suspend_user(self, user_id: str, reason: str) -> bool:
        return await self._store.mark_suspended(user_id, reason, self._clock())


@dataclass
class RecordingSuspensionActuator(SuspensionActuator):
    calls: list[tuple[str, str]] = field(default_factory=list)
    fail: bool = False

    async def suspend_user(self, user_id: str, reason: str) -> bool:
        if self.fail:
            raise RuntimeError("suspension service unavailable")
        self.calls.append((user_id, reason))
        return True

    @property
    def suspended(self) -> set[str]:
        return {user_id for user_id, _ in self.calls}
