"""One-shot "go" alerts ahead of each start group.

The dispatcher is evaluated once per tick against a fresh cohort projection.
Playback runs on an executor so a slow or failing audio device never holds up
the tick loop; when playback fails a visual alert (and a vibration pulse where
supported) is raised instead. Failed attempts are not retried.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

ALERT_LEAD_MS = 4000
ALERT_WINDOW_MS = 500
VISUAL_ALERT_SECONDS = 4.0
EVICT_AFTER_START_MS = 10000
VIBRATION_PATTERN = (200, 100, 200, 100, 400)


class AlertCapability:
    """Audible start cue.

    The base implementation has no audio device: every attempt fails, so the
    dispatcher always falls back to visual alerts.
    """

    def is_ready(self) -> bool:
        return False

    def attempt_play(self) -> bool:
        return False

    def vibrate(self, pattern: Sequence[int]) -> bool:
        return False


class CommandAlertCapability(AlertCapability):
    """Play the start beeps by running an external command (e.g. ``aplay``)."""

    def __init__(self, command: str, timeout: float = 10.0):
        self.command = shlex.split(command)
        self.timeout = timeout
        self._lock = threading.Lock()

    def is_ready(self) -> bool:
        return bool(self.command)

    def attempt_play(self) -> bool:
        # One beep at a time; a second request while playing counts as a failure.
        if not self._lock.acquire(blocking=False):
            return False
        try:
            proc = subprocess.run(self.command, timeout=self.timeout, check=False, capture_output=True)
            return proc.returncode == 0
        finally:
            self._lock.release()


def runner_names(cohort: Dict) -> str:
    return ", ".join(f"#{r.get('member_number')} {r.get('full_name')}" for r in cohort.get("runners", []))


def in_trigger_window(time_until_start_ms: int) -> bool:
    return ALERT_LEAD_MS - ALERT_WINDOW_MS < time_until_start_ms <= ALERT_LEAD_MS


class AlertDispatcher:
    """Fire at most one go signal per cohort for the lifetime of a race.

    Args:
        capability: Audio capability, constructed once per process.
        vibrator: Vibration callable taking a pulse pattern; defaults to
            the capability's own ``vibrate``.
        enabled: When false no alerts are fired.
        executor: Runs playback attempts; defaults to a small thread pool.
        clock: Monotonic seconds, used to expire visual alerts.
    """

    def __init__(
        self,
        capability: AlertCapability,
        vibrator: Optional[Callable[[Sequence[int]], bool]] = None,
        enabled: bool = True,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capability = capability
        self._vibrate = vibrator or capability.vibrate
        self.enabled = enabled
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="raceday-alert")
        self._clock = clock
        self._triggered: set[int] = set()
        self._visual: Optional[tuple[str, float]] = None
        self._lock = threading.Lock()

    @property
    def triggered(self) -> frozenset:
        return frozenset(self._triggered)

    def tick(self, cohorts: Iterable[Dict], elapsed_ms: int, show_pre_race: bool = False) -> List[Dict]:
        """Evaluate trigger windows; return the cohorts alerted on this tick."""
        self._evict(elapsed_ms)
        if show_pre_race or not self.enabled:
            return []
        fired = []
        for cohort in cohorts:
            key = cohort["start_offset_ms"]
            if cohort["has_started"] or key in self._triggered:
                continue
            if not in_trigger_window(cohort["time_until_start_ms"]):
                continue
            self._triggered.add(key)
            logger.info("start alert for %s group: %s", key, runner_names(cohort))
            future = self._executor.submit(self.capability.attempt_play)
            future.add_done_callback(lambda f, c=cohort: self._on_played(f, c))
            fired.append(cohort)
        return fired

    def _evict(self, elapsed_ms: int) -> None:
        stale = {key for key in self._triggered if elapsed_ms - key > EVICT_AFTER_START_MS}
        self._triggered -= stale

    def _on_played(self, future: Future, cohort: Dict) -> None:
        try:
            played = bool(future.result())
        except Exception:
            logger.exception("start beep raised for %s", runner_names(cohort))
            played = False
        if played:
            return
        logger.warning("start beep failed, showing visual alert for %s", runner_names(cohort))
        self._show_visual(f"START NOW: {runner_names(cohort)}")
        try:
            self._vibrate(VIBRATION_PATTERN)
        except Exception:
            logger.debug("vibration unavailable", exc_info=True)

    def _show_visual(self, message: str) -> None:
        with self._lock:
            self._visual = (message, self._clock() + VISUAL_ALERT_SECONDS)

    def visual_alert(self) -> Optional[str]:
        """Current fallback message, or ``None`` once it has cleared."""
        with self._lock:
            if self._visual is None:
                return None
            message, expires = self._visual
            if self._clock() >= expires:
                self._visual = None
                return None
            return message

    def reset(self) -> None:
        """Forget delivered alerts, e.g. when a new race is loaded."""
        self._triggered.clear()
        with self._lock:
            self._visual = None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


__all__ = [
    "ALERT_LEAD_MS",
    "ALERT_WINDOW_MS",
    "AlertCapability",
    "AlertDispatcher",
    "CommandAlertCapability",
    "EVICT_AFTER_START_MS",
    "VIBRATION_PATTERN",
    "VISUAL_ALERT_SECONDS",
    "in_trigger_window",
    "runner_names",
]
