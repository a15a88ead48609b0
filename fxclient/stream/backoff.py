"""Exponential reconnect backoff."""

from __future__ import annotations

import random


class Backoff:
    """
    Doubling delay between reconnect attempts.

    The k-th consecutive failure waits min(base * 2**(k-1), max). A successful
    connect resets the delay to base.
    """

    def __init__(
        self,
        base_delay_s: float = 1.0,
        max_delay_s: float = 300.0,
        jitter: float = 0.0,
    ) -> None:
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.jitter = jitter
        self.current_delay_s = base_delay_s
        self.failures = 0

    def next_delay(self) -> float:
        """Return the delay for the current failure and double it for the next one."""
        delay = self.current_delay_s
        self.failures += 1
        self.current_delay_s = min(self.current_delay_s * 2, self.max_delay_s)

        if self.jitter:
            # Add jitter: ±jitter%
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)
            delay = max(0.1, delay)  # Minimum 100ms
        return float(delay)

    def reset(self) -> None:
        self.current_delay_s = self.base_delay_s
        self.failures = 0

    def __repr__(self) -> str:
        return (
            f"Backoff(current={self.current_delay_s}s, max={self.max_delay_s}s, "
            f"failures={self.failures})"
        )
