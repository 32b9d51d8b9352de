"""Background sweep that periodically re-analyzes risky users and scans for attacks.

Configuration via EngineConfig.sweep_interval_seconds (env TRUSTGUARD_SWEEP_INTERVAL,
default 300 = 5 min).

Tests drive ``tick()`` directly; ``start()``/``stop()`` only wrap it in a loop.
Stopping sets a token that ``tick()`` checks between units of work, so a stop
never leaves a scored update or a suspension half-applied.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .errors import StoreError, UserNotFoundError
from .records import CoordinatedAttackFinding
from .sybil import SybilDetectionEngine
from .trust import TrustScoreManager

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    finding: CoordinatedAttackFinding = field(default_factory=CoordinatedAttackFinding.none)
    reanalyzed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    evicted: int = 0
    evicted_scores: int = 0
    decayed: list[str] = field(default_factory=list)
    stopped_early: bool = False


class BackgroundSweep:
    """Real-time analysis tick: attack scan, high-risk re-analysis, cache cleanup, decay."""

    def __init__(self, sybil: SybilDetectionEngine, trust: TrustScoreManager, *,
                 interval: Optional[float] = None, apply_decay: bool = True):
        self.sybil = sybil
        self.trust = trust
        self.interval = interval or trust.config.sweep_interval_seconds
        self.apply_decay = apply_decay
        self._stop = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("BackgroundSweep started (interval=%ss)", self.interval)

    def request_stop(self) -> None:
        """Ask a running tick to return at its next checkpoint."""
        self._stop.set()

    async def stop(self) -> None:
        """Signal the loop and wait for the current tick to finish."""
        self.request_stop()
        if self._task:
            await self._task
            self._task = None
        logger.info("BackgroundSweep stopped")

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Sweep cycle failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> SweepReport:
        async with self._tick_lock:
            report = SweepReport()
            self.ticks += 1

            report.finding = await self.sybil.detect_coordinated_attacks()
            if self.stopping:
                report.stopped_early = True
                return report
            await self.sybil.handle_coordinated_attack(report.finding)

            for user_id in self.sybil.users_needing_reanalysis():
                if self.stopping:
                    report.stopped_early = True
                    return report
                try:
                    await self.sybil.analyze_user_behavior(user_id)
                    report.reanalyzed.append(user_id)
                except UserNotFoundError:
                    self.sybil.monitored.discard(user_id)
                    self.sybil.profiles.delete(user_id)
                    report.failed.append(user_id)
                except StoreError as exc:
                    logger.warning("Re-analysis of %s skipped: %s", user_id, exc)
                    report.failed.append(user_id)

            report.evicted = self.sybil.evict_idle_profiles()
            report.evicted_scores = self.trust.evict_idle_scores()

            if self.apply_decay:
                for user_id in self.trust.cache.keys():
                    if self.stopping:
                        report.stopped_early = True
                        return report
                    try:
                        if await self.trust.apply_inactivity_decay(user_id) is not None:
                            report.decayed.append(user_id)
                    except StoreError as exc:
                        logger.warning("Inactivity decay for %s skipped: %s", user_id, exc)

            logger.info("Sweep tick %d complete: %d re-analyzed, %d evicted, %d decayed",
                        self.ticks, len(report.reanalyzed), report.evicted, len(report.decayed))
            return report
