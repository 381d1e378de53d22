"""Sliding-window rate limiting shared by every execution trigger."""

import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from shellpilot.locking import file_lock, read_json, write_json_atomic
from shellpilot.logging import get_logger

log = get_logger(__name__)


@dataclass
class RateDecision:
    """Admission verdict; ``wait_seconds`` is set on rejection."""

    allowed: bool
    wait_seconds: float = 0.0
    in_window: int = 0


class RateLimiter:
    """Admit at most ``max_calls`` per trailing ``window_seconds``.

    ``try_acquire`` reads the window, decides and records in one critical
    section. With ``state_path`` the window lives on disk behind a file lock,
    so separate processes (interactive shell, scheduled heartbeat) share it.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        max_calls: int = 10,
        state_path: Path | str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        self.window_seconds = float(window_seconds)
        self.max_calls = int(max_calls)
        self.state_path = Path(state_path).expanduser() if state_path else None
        self._clock = clock
        self._lock = threading.Lock()
        self._timestamps: deque[float] = deque()

    def _decide(self, timestamps: deque[float], now: float) -> RateDecision:
        cutoff = now - self.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        if len(timestamps) >= self.max_calls:
            wait = max(0.0, timestamps[0] + self.window_seconds - now)
            return RateDecision(allowed=False, wait_seconds=wait, in_window=len(timestamps))
        timestamps.append(now)
        return RateDecision(allowed=True, in_window=len(timestamps))

    def try_acquire(self) -> RateDecision:
        """Atomically check the window and record this call if admitted."""
        with self._lock:
            if self.state_path is None:
                decision = self._decide(self._timestamps, self._clock())
            else:
                try:
                    decision = self._acquire_shared()
                except OSError as e:
                    # Lock timeouts and unwritable state fall back to the last
                    # window seen by this process.
                    log.warning("Shared rate window unavailable", path=str(self.state_path), error=str(e))
                    decision = self._decide(self._timestamps, self._clock())
        if not decision.allowed:
            log.info("Rate limit reached", wait_seconds=round(decision.wait_seconds, 2))
        return decision

    def _acquire_shared(self) -> RateDecision:
        with file_lock(self.state_path):
            raw = read_json(self.state_path, [])
            if not isinstance(raw, list):
                raw = []
            stored = deque(sorted(float(t) for t in raw if isinstance(t, (int, float))))
            decision = self._decide(stored, self._clock())
            if decision.allowed:
                write_json_atomic(self.state_path, list(stored))
            self._timestamps = stored
        return decision

    def current_count(self) -> int:
        """Number of admissions inside the current window."""
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if self.state_path is None:
                return sum(1 for t in self._timestamps if t > cutoff)
            raw = read_json(self.state_path, [])
        return sum(1 for t in raw if isinstance(t, (int, float)) and t > cutoff)
