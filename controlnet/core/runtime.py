"""Cadence-driven scheduler loop for a control network."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from controlnet.core.events import Clock
from controlnet.core.network import ControlNetwork

logger = logging.getLogger(__name__)

Job = Callable[[float], Any]

_FAILURE_ALERT_THRESHOLD = 3
_MAX_SLEEP_S = 1.0


@dataclass(slots=True)
class Cadence:
    """One periodic job and when it is next due."""

    name: str
    interval_s: float
    job: Job
    skip_in_emergency: bool = False
    next_due: float | None = None
    runs: int = 0
    failures: int = 0
    consecutive_failures: int = 0

    def is_due(self, now: float) -> bool:
        return self.next_due is None or now >= self.next_due


class ControlRuntime:
    """Drive every periodic job of a :class:`ControlNetwork` from one clock.

    ``run_due`` does all of the work and never sleeps, so tests advance a
    manual clock and call it directly. ``run`` wraps it in an asyncio loop.
    """

    def __init__(self, network: ControlNetwork, *, clock: Clock | None = None) -> None:
        self.network = network
        self._clock = clock or network.clock
        self._task: asyncio.Task[None] | None = None
        self._running = False
        s = network.settings
        self.cadences: dict[str, Cadence] = {}
        self.add_cadence("loop_tick", s.loop_tick_interval_s, self._loop_tick)
        self.add_cadence(
            "rule_tick", s.rule_tick_interval_s, self._rule_tick, skip_in_emergency=True
        )
        self.add_cadence("health_check", s.health_check_interval_s, self._health_check)
        self.add_cadence("stale_sweep", s.stale_sweep_interval_s, self._stale_sweep)
        self.add_cadence("safety_monitor", s.safety_monitor_interval_s, self._safety_monitor)
        self.add_cadence("permit_check", s.permit_check_interval_s, self._permit_check)
        self.add_cadence("site_health", s.site_health_interval_s, self._site_health)

    def add_cadence(
        self, name: str, interval_s: float, job: Job, *, skip_in_emergency: bool = False
    ) -> Cadence:
        cadence = Cadence(
            name=name, interval_s=interval_s, job=job, skip_in_emergency=skip_in_emergency
        )
        self.cadences[name] = cadence
        return cadence

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def _loop_tick(self, now: float) -> None:
        self.network.loops.tick(now=now)

    def _rule_tick(self, now: float) -> None:
        self.network.rules.tick(now=now)

    def _health_check(self, now: float) -> None:
        self.network.run_health_check(now=now)

    def _stale_sweep(self, now: float) -> None:
        self.network.cleanup_stale_nodes(now=now)

    def _safety_monitor(self, now: float) -> None:
        self.network.safety.check_safety_loops(now=now)

    def _permit_check(self, now: float) -> None:
        # Permits are wall-clock records.
        self.network.safety.check_work_permits()

    def _site_health(self, now: float) -> None:
        self.network.sites.check_site_health(now=now)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def run_due(self, now: float | None = None) -> list[str]:
        """Run every cadence that is due at ``now``; return the names that ran."""

        current = self._clock() if now is None else now
        ran: list[str] = []
        for cadence in self.cadences.values():
            if not cadence.is_due(current):
                continue
            # A late cadence runs once and re-anchors; missed periods are not replayed.
            cadence.next_due = current + cadence.interval_s
            if cadence.skip_in_emergency and self.network.safety.emergency_mode:
                continue
            cadence.runs += 1
            try:
                cadence.job(current)
            except Exception:
                cadence.failures += 1
                cadence.consecutive_failures += 1
                self.network.metrics.errors_encountered += 1
                if cadence.consecutive_failures >= _FAILURE_ALERT_THRESHOLD:
                    logger.critical(
                        "Cadence %s has failed %d consecutive times",
                        cadence.name,
                        cadence.consecutive_failures,
                    )
                else:
                    logger.exception("Cadence job failed", extra={"cadence": cadence.name})
                continue
            cadence.consecutive_failures = 0
            ran.append(cadence.name)
        return ran

    def seconds_until_next(self, now: float | None = None) -> float:
        current = self._clock() if now is None else now
        pending = [
            0.0 if c.next_due is None else c.next_due - current for c in self.cadences.values()
        ]
        if not pending:
            return _MAX_SLEEP_S
        return max(0.0, min(min(pending), _MAX_SLEEP_S))

    # ------------------------------------------------------------------
    # Background task
    # ------------------------------------------------------------------
    async def run(self) -> None:
        self._running = True
        logger.info("Control runtime started", extra={"cadences": list(self.cadences)})
        while self._running:
            self.run_due()
            await asyncio.sleep(self.seconds_until_next())

    def start(self) -> asyncio.Task[None]:
        if self._task and not self._task.done():
            return self._task
        self._task = asyncio.create_task(self.run(), name="controlnet-runtime")
        return self._task

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Control runtime stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


__all__ = ["Cadence", "ControlRuntime"]
