"""Fixed-interval watch loop.

Cycles run strictly one after another. The interval is measured from the start
of one cycle to the start of the next; a cycle that overruns the interval is
followed immediately by the next one, and the schedule is re-anchored on that
late start instead of trying to catch up.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from .reconcile import CycleReport

DEFAULT_WATCH_INTERVAL_MS = 30000

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SLEEPING = "sleeping"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"


class WatchScheduler:
    def __init__(
        self,
        cycle: Callable[[], CycleReport],
        interval_ms: int = DEFAULT_WATCH_INTERVAL_MS,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_ms <= 0:
            raise ValueError(f"Watch interval must be a positive number of milliseconds, got {interval_ms}")
        self._cycle = cycle
        self.interval = interval_ms / 1000.0
        self.cancel = cancel or threading.Event()
        self._clock = clock
        self.state = SchedulerState.IDLE
        self.cycles = 0
        self.failed_cycles = 0
        self.last_report: Optional[CycleReport] = None

    def stop(self) -> None:
        self.cancel.set()

    def delay_after(self, cycle_started: float) -> float:
        """Seconds to sleep so the next cycle starts one interval after this one."""
        elapsed = self._clock() - cycle_started
        return max(0.0, self.interval - elapsed)

    def run_once(self) -> Optional[CycleReport]:
        """Run a single cycle, containing any failure it raises."""
        self.state = SchedulerState.RUNNING
        self.cycles += 1
        logger.debug(f"Cycle {self.cycles} starting")
        try:
            report = self._cycle()
        except Exception as e:
            self.failed_cycles += 1
            logger.error(f"Cycle {self.cycles} failed: {e}", exc_info=True)
            return None

        self.last_report = report
        if report.failed_cycle:
            self.failed_cycles += 1
            logger.error(f"Cycle {self.cycles} failed, retrying on next tick")
        return report

    def run(self) -> None:
        logger.info(f"Watching inventory every {self.interval * 1000:.0f}ms")
        try:
            while not self.cancel.is_set():
                started = self._clock()
                self.run_once()

                if self.cancel.is_set():
                    break
                delay = self.delay_after(started)
                if delay == 0.0:
                    logger.warning(
                        f"Cycle took longer than the {self.interval * 1000:.0f}ms interval, starting next cycle now"
                    )
                    continue
                self.state = SchedulerState.SLEEPING
                logger.debug(f"Sleeping {delay:.3f}s")
                if self.cancel.wait(delay):
                    break
            self.state = SchedulerState.CANCELLED
            logger.info("Shutting down gracefully...")
        finally:
            self.state = SchedulerState.TERMINATED
