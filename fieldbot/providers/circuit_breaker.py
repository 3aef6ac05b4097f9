"""Consecutive-failure circuit breaker for model calls."""

from __future__ import annotations

import time
from typing import Callable

from fieldbot.config.schema import ResilienceConfig
from fieldbot.logging import get_logger

logger = get_logger(__name__)


class CircuitBreaker:
    """
    Opens after ``threshold`` consecutive failures and rejects calls for
    ``cooldown`` seconds. Once the cooldown has elapsed the next call is let
    through; its outcome either closes the breaker or re-opens it.

    A threshold of zero disables the breaker.
    """

    def __init__(
        self,
        threshold: int,
        cooldown: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self.clock = clock
        self.failures = 0
        self.open_until = 0.0

    @classmethod
    def from_config(cls, config: ResilienceConfig) -> CircuitBreaker:
        return cls(config.circuit_breaker_threshold, config.circuit_breaker_cooldown)

    @property
    def enabled(self) -> bool:
        return self.threshold > 0

    def rejection(self) -> str | None:
        """Why the next call must not be made, or None when it may proceed."""
        if not self.enabled or self.failures < self.threshold:
            return None
        remaining = self.open_until - self.clock()
        if remaining <= 0:
            return None
        return (
            f"Circuit breaker open: {self.failures} consecutive failures. "
            f"Retry after {int(remaining)}s cooldown."
        )

    def record_success(self) -> None:
        self.failures = 0
        self.open_until = 0.0

    def record_failure(self) -> None:
        if not self.enabled:
            return
        self.failures += 1
        if self.failures >= self.threshold:
            self.open_until = self.clock() + self.cooldown
            logger.warning("circuit_breaker_opened", failures=self.failures, cooldown=self.cooldown)
