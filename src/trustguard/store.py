"""
trustguard.store — Data-store contract and in-memory backend.

The DataStore is the durable source of truth; the engine's caches are
rebuilt from it after a restart. All reads are time-windowed (``since`` is a
POSIX timestamp), recent-window scans are bounded by ``limit``, and all
writes are idempotent upserts keyed by user id.

Backends: MemoryDataStore (here), PostgresDataStore (trustguard.database).
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Iterable, Optional

from .errors import StoreError
from .models import TrustScore
from .records import (
    ActivityRecord,
    InteractionRecord,
    LocationRecord,
    ReportRecord,
    UserRecord,
    VoteRecord,
)


# ─── Abstract Backend ──────────────────────────────────────────────

class DataStore(ABC):
    """Async persistence interface consumed by the trust engine."""

    # trust scores
    @abstractmethod
    async def load_trust_score(self, user_id: str) -> Optional[TrustScore]: ...

    @abstractmethod
    async def save_trust_score(self, score: TrustScore) -> None: ...

    # users
    @abstractmethod
    async def load_user(self, user_id: str) -> Optional[UserRecord]: ...

    @abstractmethod
    async def save_user(self, user: UserRecord) -> None: ...

    @abstractmethod
    async def mark_suspended(self, user_id: str, reason: str, at: float) -> bool: ...

    @abstractmethod
    async def load_recent_account_creations(self, since: float, limit: int = 5000) -> list[UserRecord]: ...

    # per-user history
    @abstractmethod
    async def load_recent_activity(self, user_id: str, since: float) -> list[ActivityRecord]: ...

    @abstractmethod
    async def load_voting_history(self, user_id: str, since: float) -> list[VoteRecord]: ...

    @abstractmethod
    async def load_event_votes(self, event_ids: list[str], since: float) -> list[VoteRecord]: ...

    @abstractmethod
    async def load_reporting_history(self, user_id: str, since: float) -> list[ReportRecord]: ...

    @abstractmethod
    async def load_location_history(self, user_id: str, since: float) -> list[LocationRecord]: ...

    @abstractmethod
    async def load_interactions(self, user_id: str, since: float) -> list[InteractionRecord]: ...

    # cross-user recent windows
    @abstractmethod
    async def load_recent_votes(self, since: float, limit: int = 5000) -> list[VoteRecord]: ...

    @abstractmethod
    async def load_recent_reports(self, since: float, limit: int = 5000) -> list[ReportRecord]: ...

    @abstractmethod
    async def load_recent_endorsements(self, since: float, limit: int = 5000) -> list[InteractionRecord]: ...

    async def close(self) -> None:
        """Release backend resources. No-op by default."""


# ─── Memory Backend ────────────────────────────────────────────────

class MemoryDataStore(DataStore):
    """Dict-backed store for tests and single-process deployments.

    Trust scores are kept as ``to_dict()`` snapshots so a reload always
    returns a fresh, equal object. ``fail_reads`` / ``fail_writes`` simulate
    an outage by raising StoreError.
    """

    def __init__(self):
        self._scores: dict[str, dict] = {}
        self._users: dict[str, UserRecord] = {}
        self._activity: dict[str, list[ActivityRecord]] = defaultdict(list)
        self._votes: list[VoteRecord] = []
        self._reports: list[ReportRecord] = []
        self._locations: dict[str, list[LocationRecord]] = defaultdict(list)
        self._interactions: list[InteractionRecord] = []
        self.fail_reads = False
        self.fail_writes = False
        self.save_count = 0

    def _check_read(self, operation: str) -> None:
        if self.fail_reads:
            raise StoreError(operation, f"simulated read failure: {operation}")

    def _check_write(self, operation: str) -> None:
        if self.fail_writes:
            raise StoreError(operation, f"simulated write failure: {operation}")

    # seeding helpers

    def add_user(self, user: UserRecord) -> None:
        self._users[user.user_id] = user

    def add_activity(self, records: Iterable[ActivityRecord]) -> None:
        for r in records:
            self._activity[r.user_id].append(r)

    def add_votes(self, records: Iterable[VoteRecord]) -> None:
        self._votes.extend(records)

    def add_reports(self, records: Iterable[ReportRecord]) -> None:
        self._reports.extend(records)

    def add_locations(self, records: Iterable[LocationRecord]) -> None:
        for r in records:
            self._locations[r.user_id].append(r)

    def add_interactions(self, records: Iterable[InteractionRecord]) -> None:
        self._interactions.extend(records)

    # trust scores

    async def load_trust_score(self, user_id: str) -> Optional[TrustScore]:
        self._check_read("load_trust_score")
        data = self._scores.get(user_id)
        return TrustScore.from_dict(copy.deepcopy(data)) if data else None

    async def save_trust_score(self, score: TrustScore) -> None:
        self._check_write("save_trust_score")
        self._scores[score.user_id] = copy.deepcopy(score.to_dict())
        self.save_count += 1

    # users

    async def load_user(self, user_id: str) -> Optional[UserRecord]:
        self._check_read("load_user")
        user = self._users.get(user_id)
        return copy.copy(user) if user else None

    async def save_user(self, user: UserRecord) -> None:
        self._check_write("save_user")
        self._users[user.user_id] = copy.copy(user)

    async def mark_suspended(self, user_id: str, reason: str, at: float) -> bool:
        self._check_write("mark_suspended")
        user = self._users.get(user_id)
        if not user:
            return False
        user.status = "suspended"
        user.suspension_reason = reason
        return True

    async def load_recent_account_creations(self, since: float, limit: int = 5000) -> list[UserRecord]:
        self._check_read("load_recent_account_creations")
        users = sorted(
            (u for u in self._users.values() if u.created_at >= since),
            key=lambda u: u.created_at,
        )
        return [copy.copy(u) for u in users[-limit:]]

    # per-user history

    async def load_recent_activity(self, user_id: str, since: float) -> list[ActivityRecord]:
        self._check_read("load_recent_activity")
        return sorted(
            (r for r in self._activity.get(user_id, []) if r.timestamp >= since),
            key=lambda r: r.timestamp,
        )

    async def load_voting_history(self, user_id: str, since: float) -> list[VoteRecord]:
        self._check_read("load_voting_history")
        return sorted(
            (v for v in self._votes if v.user_id == user_id and v.timestamp >= since),
            key=lambda v: v.timestamp,
        )

    async def load_event_votes(self, event_ids: list[str], since: float) -> list[VoteRecord]:
        self._check_read("load_event_votes")
        wanted = set(event_ids)
        return [v for v in self._votes if v.event_id in wanted and v.timestamp >= since]

    async def load_reporting_history(self, user_id: str, since: float) -> list[ReportRecord]:
        self._check_read("load_reporting_history")
        return sorted(
            (r for r in self._reports if r.user_id == user_id and r.timestamp >= since),
            key=lambda r: r.timestamp,
        )

    async def load_location_history(self, user_id: str, since: float) -> list[LocationRecord]:
        self._check_read("load_location_history")
        return sorted(
            (r for r in self._locations.get(user_id, []) if r.timestamp >= since),
            key=lambda r: r.timestamp,
        )

    async def load_interactions(self, user_id: str, since: float) -> list[InteractionRecord]:
        self._check_read("load_interactions")
        return [
            i for i in self._interactions
            if i.timestamp >= since and user_id in (i.source_user_id, i.target_user_id)
        ]

    # cross-user recent windows

    async def load_recent_votes(self, since: float, limit: int = 5000) -> list[VoteRecord]:
        self._check_read("load_recent_votes")
        votes = sorted((v for v in self._votes if v.timestamp >= since), key=lambda v: v.timestamp)
        return votes[-limit:]

    async def load_recent_reports(self, since: float, limit: int = 5000) -> list[ReportRecord]:
        self._check_read("load_recent_reports")
        reports = sorted((r for r in self._reports if r.timestamp >= since), key=lambda r: r.timestamp)
        return reports[-limit:]

    async def load_recent_endorsements(self, since: float, limit: int = 5000) -> list[InteractionRecord]:
        self._check_read("load_recent_endorsements")
        endorsements = sorted(
            (i for i in self._interactions if i.kind == "endorsement" and i.timestamp >= since),
            key=lambda i: i.timestamp,
        )
        return endorsements[-limit:]
