"""Race clock and the periodic tick loop.

The clock is the single authoritative source of race-elapsed milliseconds.
The ticker owns one background thread per race that re-runs the start-group
projection and the alert dispatcher on a fixed cadence; readers take the
latest snapshot under a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from .alerts import AlertDispatcher
from .race import checked_in_runners
from .scheduler import project_cohorts

logger = logging.getLogger(__name__)

TICK_SECONDS = 0.1
TESTING_TICK_SECONDS = 0.01
TESTING_SPEEDUP = 10


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class RaceClock:
    """Elapsed time since ``start_time``, with pause/resume.

    In testing mode the race runs ``TESTING_SPEEDUP`` times faster than real
    time. Pausing freezes the elapsed value; resuming continues from it.
    """

    def __init__(self, start_time_ms: int, testing_mode: bool = False, now: Callable[[], int] = wall_clock_ms):
        self.start_time_ms = int(start_time_ms)
        self.testing_mode = testing_mode
        self._now = now
        self._paused_at: Optional[int] = None
        self._paused_total = 0

    @property
    def paused(self) -> bool:
        return self._paused_at is not None

    def elapsed_ms(self) -> int:
        now = self._paused_at if self._paused_at is not None else self._now()
        real = max(0, now - self.start_time_ms - self._paused_total)
        return real * TESTING_SPEEDUP if self.testing_mode else real

    def pause(self) -> None:
        if self._paused_at is None:
            self._paused_at = self._now()

    def resume(self) -> None:
        if self._paused_at is not None:
            self._paused_total += self._now() - self._paused_at
            self._paused_at = None


class RaceTicker:
    """Drive the projection and alert evaluation for one race."""

    def __init__(self, race: Dict, clock: RaceClock, dispatcher: AlertDispatcher, interval: Optional[float] = None):
        self.race = race
        self.clock = clock
        self.dispatcher = dispatcher
        if interval is None:
            interval = TESTING_TICK_SECONDS if clock.testing_mode else TICK_SECONDS
        self.interval = interval
        self._snapshot: List[Dict] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> List[Dict]:
        """Run one evaluation pass and return the fresh cohort list."""
        elapsed = self.clock.elapsed_ms()
        runners = checked_in_runners(self.race)
        cohorts = project_cohorts(runners, elapsed)
        self.dispatcher.tick(cohorts, elapsed)
        with self._lock:
            self._snapshot = cohorts
        return cohorts

    def snapshot(self) -> List[Dict]:
        with self._lock:
            return list(self._snapshot)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self.clock.paused:
                continue
            try:
                self.tick()
            except Exception:
                logger.exception("tick failed for race %s", self.race.get("id"))

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"raceday-ticker-{self.race.get('id')}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None


__all__ = [
    "RaceClock",
    "RaceTicker",
    "TESTING_SPEEDUP",
    "TESTING_TICK_SECONDS",
    "TICK_SECONDS",
    "wall_clock_ms",
]
