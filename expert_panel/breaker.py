"""Per-expert circuit breakers.

An expert that keeps failing is skipped for a while instead of eating the
request deadline. State lives on the event loop thread; breakers are not
shared across threads.
"""

import logging
import time
from collections import deque
from collections.abc import Callable

from config.config_loader import BreakerConfig

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


class CircuitBreaker:
    """Closed -> open on a high failure rate, half-open after reset_sec, closed on a good trial."""

    def __init__(self, name: str, config: BreakerConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self._config = config
        self._clock = clock
        self._outcomes: deque[bool] = deque(maxlen=config.window)
        self._state = CLOSED
        self._opened_at = 0.0

    @property
    def state(self) -> str:
        if self._state == OPEN and self._clock() - self._opened_at >= self._config.reset_sec:
            self._state = HALF_OPEN
            logger.info("Circuit for %s half-open, allowing a trial call", self.name)
        return self._state

    @property
    def failure_rate(self) -> float:
        if not self._outcomes:
            return 0.0
        return self._outcomes.count(False) / len(self._outcomes)

    def allow(self) -> bool:
        if not self._config.enabled:
            return True
        return self.state != OPEN

    def record_success(self) -> None:
        if not self._config.enabled:
            return
        self._outcomes.append(True)
        if self.state == HALF_OPEN:
            self._state = CLOSED
            self._outcomes.clear()
            logger.info("Circuit for %s closed after a successful trial", self.name)

    def record_failure(self) -> None:
        if not self._config.enabled:
            return
        self._outcomes.append(False)
        state = self.state
        if state == HALF_OPEN:
            self._trip()
        elif (
            state == CLOSED
            and len(self._outcomes) >= self._config.min_calls
            and self.failure_rate >= self._config.failure_threshold
        ):
            self._trip()

    def _trip(self) -> None:
        self._state = OPEN
        self._opened_at = self._clock()
        logger.warning(
            "Circuit for %s opened (failure rate %.0f%%), skipping for %.0fs",
            self.name,
            self.failure_rate * 100,
            self._config.reset_sec,
        )


class BreakerBoard:
    """Lazily created breaker per expert id."""

    def __init__(self, config: BreakerConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def for_expert(self, expert_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(expert_id)
        if breaker is None:
            breaker = CircuitBreaker(expert_id, self._config, self._clock)
            self._breakers[expert_id] = breaker
        return breaker

    def states(self) -> dict[str, str]:
        return {eid: b.state for eid, b in sorted(self._breakers.items())}
