import random
from collections.abc import Callable

from chisme_client.config import settings


class ExponentialBackoff:
    """Reconnect delays: doubling from min_delay up to max_delay, +/- jitter."""

    def __init__(
        self,
        min_delay: float | None = None,
        max_delay: float | None = None,
        jitter: float | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.min_delay = settings.RECONNECT_MIN_DELAY if min_delay is None else min_delay
        self.max_delay = settings.RECONNECT_MAX_DELAY if max_delay is None else max_delay
        self.jitter = settings.RECONNECT_JITTER if jitter is None else jitter
        self._rng = rng
        self._current = self.min_delay

    def next_delay(self) -> float:
        base = self._current
        self._current = min(self._current * 2, self.max_delay)
        spread = base * self.jitter * (2 * self._rng() - 1)
        return min(max(0.0, base + spread), self.max_delay)

    def reset(self) -> None:
        self._current = self.min_delay
