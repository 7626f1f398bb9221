"""
Exponential backoff state machine shared by the device link and the forwarder.

CHANGELOG:
- 2026-10-19: Extract from uploader so the serial reconnect loop can share it

TODO:
- None
"""

from __future__ import annotations


class Backoff:
    """Exponential backoff: initial -> initial*m -> initial*m^2 ... capped at max.

    :attr:`current` is the delay to wait before the next attempt. It starts at
    *initial_s*, is multiplied on every :meth:`failure`, and returns to
    *initial_s* on :meth:`reset`.

    Args:
        initial_s: Delay after the first failure.
        multiplier: Growth factor per consecutive failure (>= 1).
        max_s: Upper bound on the delay.

    Raises:
        ValueError: On a non-positive initial delay, a multiplier below 1, or
            a cap below the initial delay.
    """

    def __init__(
        self,
        initial_s: float = 1.0,
        multiplier: float = 2.0,
        max_s: float = 300.0,
    ) -> None:
        if initial_s <= 0:
            raise ValueError("initial_s must be > 0")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if max_s < initial_s:
            raise ValueError("max_s must be >= initial_s")
        self._initial_s = initial_s
        self._multiplier = multiplier
        self._max_s = max_s
        self._current = initial_s
        self._failures = 0

    @property
    def current(self) -> float:
        """Delay in seconds before the next attempt."""
        return self._current

    @property
    def failures(self) -> int:
        """Consecutive failures since the last reset."""
        return self._failures

    def failure(self) -> float:
        """Record a failure and return the delay to wait before retrying."""
        delay = self._current
        self._failures += 1
        self._current = min(self._current * self._multiplier, self._max_s)
        return delay

    def reset(self) -> None:
        """Record a success: the next failure waits *initial_s* again."""
        self._current = self._initial_s
        self._failures = 0
