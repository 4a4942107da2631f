"""Exponential backoff with jitter for reconnecting to the nexus."""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Optional

MIN_JITTER_DELAY = 0.1
"""Smallest delay, in seconds, returned when jitter is enabled."""

DEFAULT_BACKOFF_MULTIPLIER = 2.0


@dataclass(frozen=True)
class ReconnectionStats:
    """Snapshot of a reconnection manager's state (delays in seconds)."""

    attempt_count: int
    current_delay: float
    initial_delay: float
    max_delay: float
    is_at_max_delay: bool
    backoff_multiplier: float
    jitter_enabled: bool


class ReconnectionManager:
    """Computes reconnection delays using exponential backoff.

    Delays are in seconds. The first delay is the initial one; each later
    delay multiplies the previous by the backoff multiplier, capped at the
    maximum. With jitter enabled, a delay ``d`` becomes a random value in
    ``[0, d)`` raised to at least 100 ms.
    """

    def __init__(self, initial_delay: float, max_delay: float, logger: Optional[logging.Logger] = None):
        self._lock = threading.Lock()
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._current_delay = initial_delay
        self._attempt_count = 0
        self._logger = logger or logging.getLogger(__name__)
        self._jitter_enabled = True
        self._backoff_multiplier = DEFAULT_BACKOFF_MULTIPLIER

    def next_delay(self) -> float:
        """Advance the backoff and return the delay to wait before the next attempt."""
        with self._lock:
            if self._attempt_count > 0:
                self._current_delay = min(self._current_delay * self._backoff_multiplier, self._max_delay)
            self._attempt_count += 1
            final = self._jittered(self._current_delay) if self._jitter_enabled else self._current_delay
            self._logger.debug(
                "reconnection delay: base=%s final=%s attempt=%d jitter=%s at_max=%s",
                self._current_delay,
                final,
                self._attempt_count,
                self._jitter_enabled,
                self._current_delay >= self._max_delay,
            )
            return final

    def reset_delay(self) -> None:
        """Return to the initial delay; call after a successful connection."""
        with self._lock:
            self._logger.debug(
                "resetting reconnection delay from %s to %s after %d attempts",
                self._current_delay,
                self._initial_delay,
                self._attempt_count,
            )
            self._current_delay = self._initial_delay
            self._attempt_count = 0

    @property
    def current_delay(self) -> float:
        """The current base delay, without advancing."""
        with self._lock:
            return self._current_delay

    @property
    def attempt_count(self) -> int:
        """Number of delays handed out since the last reset."""
        with self._lock:
            return self._attempt_count

    @property
    def jitter_enabled(self) -> bool:
        """Whether random jitter is applied to delays."""
        with self._lock:
            return self._jitter_enabled

    @jitter_enabled.setter
    def jitter_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._jitter_enabled = bool(enabled)

    @property
    def backoff_multiplier(self) -> float:
        """Factor applied to the delay after each attempt."""
        with self._lock:
            return self._backoff_multiplier

    @backoff_multiplier.setter
    def backoff_multiplier(self, multiplier: float) -> None:
        # Multipliers of 1.0 or less would not back off; they are ignored.
        with self._lock:
            if multiplier > 1.0:
                self._backoff_multiplier = multiplier

    @property
    def is_at_max_delay(self) -> bool:
        """True once the base delay has reached the maximum."""
        with self._lock:
            return self._current_delay >= self._max_delay

    def stats(self) -> ReconnectionStats:
        """Return a snapshot of the current state."""
        with self._lock:
            return ReconnectionStats(
                attempt_count=self._attempt_count,
                current_delay=self._current_delay,
                initial_delay=self._initial_delay,
                max_delay=self._max_delay,
                is_at_max_delay=self._current_delay >= self._max_delay,
                backoff_multiplier=self._backoff_multiplier,
                jitter_enabled=self._jitter_enabled,
            )

    @staticmethod
    def _jittered(delay: float) -> float:
        if delay <= 0:
            return MIN_JITTER_DELAY
        return max(random.random() * delay, MIN_JITTER_DELAY)