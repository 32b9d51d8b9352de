"""
trustguard.detectors — Cross-user coordinated-attack detectors.

Each detector scans one bounded "recent window" of store records and
returns a DetectorResult holding either a finding or the error it hit.
``run_detectors`` runs them all; one detector failing never stops the rest.

    AccountCreationBurstDetector   low-trust sign-ups concentrated on few /24s
    CoordinatedVotingDetector      same-event same-type vote groups, recurring crews
    ClusteredReportingDetector     space-time report clusters from suspicious reporters
    CircularEndorsementDetector    strongly connected endorsement rings
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .aggregator import cluster_reports, find_vote_groups
from .config import DetectionConfig
from .records import CoordinatedAttackFinding, SybilFlagType
from .store import DataStore

logger = logging.getLogger(__name__)

TrustLookup = Callable[[str], Awaitable[float]]


@dataclass
class DetectorResult:
    detector: str
    finding: Optional[CoordinatedAttackFinding] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def positive(self) -> bool:
        return self.finding is not None and self.finding.attack_detected


class AttackDetector(ABC):
    name = "detector"

    def __init__(self, store: DataStore, config: DetectionConfig):
        self.store = store
        self.config = config

    @abstractmethod
    async def detect(self, now: float) -> CoordinatedAttackFinding: ...

    async def run(self, now: float) -> DetectorResult:
        try:
            return DetectorResult(self.name, finding=await self.detect(now))
        except Exception as exc:
            logger.exception("Coordinated-attack detector %s failed", self.name)
            return DetectorResult(self.name, error=exc)


async def run_detectors(detectors: list[AttackDetector], now: float) -> list[DetectorResult]:
    return list(await asyncio.gather(*(d.run(now) for d in detectors)))


def best_finding(results: list[DetectorResult]) -> CoordinatedAttackFinding:
    """Highest-confidence positive finding, or a negative finding."""
    positives = [r.finding for r in results if r.positive]
    if not positives:
        return CoordinatedAttackFinding.none()
    return max(positives, key=lambda f: f.confidence)


def network_prefix(origin: str) -> str:
    """/24 for IPv4, /64 for IPv6, the raw tag for anything else."""
    host = origin.strip()
    if host.count(":") == 1:
        host = host.split(":")[0]  # "ip:port"
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return host
    prefix = 24 if addr.version == 4 else 64
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


# ─── Account creation burst ────────────────────────────────────────

class AccountCreationBurstDetector(AttackDetector):
    name = "account_creation_burst"

    def __init__(self, store: DataStore, config: DetectionConfig, trust_lookup: TrustLookup):
        super().__init__(store, config)
        self.trust_lookup = trust_lookup

    async def detect(self, now: float) -> CoordinatedAttackFinding:
        cfg = self.config
        users = await self.store.load_recent_account_creations(
            now - cfg.account_burst_window_seconds, cfg.scan_record_limit,
        )
        suspicious = []
        for user in users:
            if await self.trust_lookup(user.user_id) < cfg.suspicious_trust_threshold:
                suspicious.append(user)
        if len(suspicious) <= cfg.account_burst_max_suspicious:
            return CoordinatedAttackFinding.none()

        by_prefix: dict[str, list[str]] = defaultdict(list)
        for user in suspicious:
            by_prefix[network_prefix(user.network_origin)].append(user.user_id)
        ratio = len(by_prefix) / len(suspicious)
        if ratio > cfg.origin_concentration_ratio:
            return CoordinatedAttackFinding.none()

        return CoordinatedAttackFinding(
            attack_detected=True,
            attack_type="Account Creation Burst",
            involved_users=[u.user_id for u in suspicious],
            confidence=cfg.account_burst_confidence,
            evidence=[
                {"network_prefix": prefix, "accounts": ids}
                for prefix, ids in sorted(by_prefix.items())
            ] + [{"suspicious_accounts": len(suspicious), "origin_ratio": round(ratio, 4)}],
            flag_type=SybilFlagType.ACCOUNT_CREATION_BURST,
        )


# ─── Coordinated voting ────────────────────────────────────────────

def _overlap(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


class CoordinatedVotingDetector(AttackDetector):
    name = "coordinated_voting"

    SINGLE_GROUP_CONFIDENCE = 0.6
    RECURRING_GROUP_CONFIDENCE = 0.85

    async def detect(self, now: float) -> CoordinatedAttackFinding:
        cfg = self.config
        votes = await self.store.load_recent_votes(
            now - cfg.vote_scan_window_hours * 3600, cfg.scan_record_limit,
        )
        groups = find_vote_groups(votes, cfg.vote_cluster_window_seconds, cfg.vote_cluster_min_size)
        if not groups:
            return CoordinatedAttackFinding.none()

        crews = [{v.user_id for v in g} for g in groups]
        evidence = [
            {"event_id": g[0].event_id, "vote_type": g[0].vote_type,
             "users": sorted(crew), "span_seconds": g[-1].timestamp - g[0].timestamp}
            for g, crew in zip(groups, crews)
        ]

        recurring: set[str] = set()
        for i, crew in enumerate(crews):
            for j in range(i + 1, len(crews)):
                if groups[i][0].event_id != groups[j][0].event_id and \
                        _overlap(crew, crews[j]) >= cfg.vote_cluster_overlap:
                    recurring |= crew & crews[j]
        if recurring:
            return CoordinatedAttackFinding(
                attack_detected=True,
                attack_type="Coordinated Voting",
                involved_users=sorted(recurring),
                confidence=self.RECURRING_GROUP_CONFIDENCE,
                evidence=evidence,
                flag_type=SybilFlagType.COORDINATED_VOTING,
            )

        largest = max(range(len(groups)), key=lambda i: len(crews[i]))
        return CoordinatedAttackFinding(
            attack_detected=True,
            attack_type="Coordinated Voting",
            involved_users=sorted(crews[largest]),
            confidence=self.SINGLE_GROUP_CONFIDENCE,
            evidence=[evidence[largest]],
            flag_type=SybilFlagType.COORDINATED_VOTING,
        )


# ─── Clustered reporting ───────────────────────────────────────────

class ClusteredReportingDetector(AttackDetector):
    name = "clustered_reporting"

    def __init__(self, store: DataStore, config: DetectionConfig, trust_lookup: TrustLookup):
        super().__init__(store, config)
        self.trust_lookup = trust_lookup

    async def _is_suspicious(self, user_id: str, now: float) -> bool:
        if await self.trust_lookup(user_id) < self.config.report_cluster_low_trust:
            return True
        user = await self.store.load_user(user_id)
        return user is None or now - user.created_at < self.config.new_account_age_seconds

    async def detect(self, now: float) -> CoordinatedAttackFinding:
        cfg = self.config
        reports = await self.store.load_recent_reports(
            now - cfg.report_cluster_window_seconds, cfg.scan_record_limit,
        )
        best: Optional[CoordinatedAttackFinding] = None
        for members in cluster_reports(reports, cfg.report_cluster_radius_m,
                                       cfg.report_cluster_window_seconds,
                                       cfg.report_cluster_min_reporters):
            reporters = sorted({r.user_id for r in members})
            if len(reporters) < cfg.report_cluster_min_reporters:
                continue
            flagged = [u for u in reporters if await self._is_suspicious(u, now)]
            share = len(flagged) / len(reporters)
            if share < cfg.report_cluster_suspicious_share:
                continue
            finding = CoordinatedAttackFinding(
                attack_detected=True,
                attack_type="Clustered Reporting",
                involved_users=reporters,
                confidence=min(0.9, 0.5 + 0.4 * share),
                evidence=[{
                    "report_ids": [r.report_id for r in members],
                    "reporters": reporters,
                    "suspicious_reporters": flagged,
                    "suspicious_share": round(share, 4),
                }],
                flag_type=SybilFlagType.CLUSTERED_REPORTING,
            )
            if best is None or finding.confidence > best.confidence:
                best = finding
        return best or CoordinatedAttackFinding.none()


# ─── Circular endorsement ──────────────────────────────────────────

def strongly_connected_components(graph: dict[str, set[str]]) -> list[set[str]]:
    """Tarjan's algorithm (iterative)."""
    index: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    sccs: list[set[str]] = []
    counter = 0

    for root in sorted(graph):
        if root in index:
            continue
        work = [(root, iter(sorted(graph.get(root, ()))))]
        index[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, neighbors = work[-1]
            advanced = False
            for nxt in neighbors:
                if nxt not in index:
                    index[nxt] = lowlink[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, iter(sorted(graph.get(nxt, ())))))
                    advanced = True
                    break
                if nxt in on_stack:
                    lowlink[node] = min(lowlink[node], index[nxt])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index[node]:
                component = set()
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    component.add(w)
                    if w == node:
                        break
                sccs.append(component)
    return sccs


def edge_density(graph: dict[str, set[str]], nodes: set[str]) -> float:
    if len(nodes) < 2:
        return 0.0
    edges = sum(1 for n in nodes for m in graph.get(n, ()) if m in nodes)
    return edges / (len(nodes) * (len(nodes) - 1))


class CircularEndorsementDetector(AttackDetector):
    name = "circular_endorsement"

    DENSE_RING_CONFIDENCE = 0.85
    SPARSE_RING_CONFIDENCE = 0.65

    async def detect(self, now: float) -> CoordinatedAttackFinding:
        cfg = self.config
        endorsements = await self.store.load_recent_endorsements(
            now - cfg.endorsement_window_days * 86400, cfg.scan_record_limit,
        )
        graph: dict[str, set[str]] = defaultdict(set)
        for e in endorsements:
            if e.source_user_id != e.target_user_id:
                graph[e.source_user_id].add(e.target_user_id)

        rings = [c for c in strongly_connected_components(graph) if len(c) >= cfg.min_ring_size]
        if not rings:
            return CoordinatedAttackFinding.none()

        scored = [(edge_density(graph, ring), ring) for ring in rings]
        density, ring = max(scored, key=lambda dr: (dr[0] >= cfg.ring_density_threshold, len(dr[1]), dr[0]))
        dense = density >= cfg.ring_density_threshold
        return CoordinatedAttackFinding(
            attack_detected=True,
            attack_type="Circular Endorsement",
            involved_users=sorted(ring),
            confidence=self.DENSE_RING_CONFIDENCE if dense else self.SPARSE_RING_CONFIDENCE,
            evidence=[
                {"members": sorted(r), "density": round(d, 4), "size": len(r)}
                for d, r in scored
            ],
            flag_type=SybilFlagType.CIRCULAR_ENDORSEMENT,
        )
