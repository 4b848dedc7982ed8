"""
Discrete simulated time.
"""

from __future__ import annotations

import logging
from typing import Dict, Hashable, List

logger = logging.getLogger("chorus.clock")


class Clock:
    """Tick counter with a set of running delays keyed by the scheduler."""

    def __init__(self) -> None:
        self.now = 0
        self._delays: Dict[Hashable, int] = {}

    def start(self, key: Hashable, steps: int) -> None:
        self._delays[key] = steps

    def remaining(self, key: Hashable) -> int | None:
        return self._delays.get(key)

    @property
    def active(self) -> bool:
        return bool(self._delays)

    def expired(self) -> List[Hashable]:
        """Delays already at zero; they complete without advancing time."""
        return [key for key, steps in self._delays.items() if steps <= 0]

    def tick(self) -> List[Hashable]:
        """Advance one tick and return the delays that ran out, in start order."""
        self.now += 1
        done: List[Hashable] = []
        for key in list(self._delays):
            self._delays[key] -= 1
            if self._delays[key] <= 0:
                done.append(key)
        logger.debug("tick %d: %d delay(s) expired", self.now, len(done))
        return done

    def finish(self, key: Hashable) -> None:
        self._delays.pop(key, None)
