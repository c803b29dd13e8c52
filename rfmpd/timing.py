"""Randomised transmission timing for half-duplex radio channels."""

from __future__ import annotations

import random
import threading
from datetime import datetime
from typing import Any

__all__ = ["Timing"]


class Timing:
    """Computes transmit delays (in seconds) with a base delay plus jitter."""

    def __init__(self, base_delay: float, jitter: float, rng: random.Random | None = None) -> None:
        self.base_delay = base_delay
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._transmissions = 0
        self._last_transmit: datetime | None = None

    def calculate_delay(self) -> float:
        """Base delay plus a random share of the jitter."""
        return self.base_delay + self._rng.random() * self.jitter

    def calculate_sync_delay(self) -> float:
        """Normal delay plus up to two extra seconds."""
        return self.calculate_delay() + self._rng.random() * 2.0

    def calculate_fragment_delay(self, fragment_index: int, total: int) -> float:
        """Full delay before the first fragment, 50-100 ms between the rest."""
        if fragment_index == 0:
            return self.calculate_delay()
        return 0.05 + self._rng.random() * 0.05

    def calculate_rebroadcast_delay(self) -> float:
        """Normal delay plus one to three extra seconds."""
        return self.calculate_delay() + 1.0 + self._rng.random() * 2.0

    def record_transmission(self) -> None:
        with self._lock:
            self._transmissions += 1
            self._last_transmit = datetime.now().astimezone()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            stats: dict[str, Any] = {
                "base_delay": self.base_delay,
                "jitter": self.jitter,
                "transmissions": self._transmissions,
            }
            if self._last_transmit is not None:
                stats["last_transmit"] = self._last_transmit.isoformat(timespec="seconds")
            return stats