# SPDX-License-Identifier: CC-BY-NC-4.0
# Copyright (c) 2025-2026 fumi-engineer

"""Rate-limited diagnostics for weight inspection."""

from __future__ import annotations

import logging
import time
from typing import Callable

import numpy as np

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allows an action at most once per ``interval_seconds``.

    The first call always passes.  ``clock`` is injectable for tests.
    """

    def __init__(self, interval_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        """Return True (and start a new interval) if the interval has elapsed."""
        now = self._clock()
        if self._last is not None and now - self._last < self.interval_seconds:
            return False
        self._last = now
        return True


class WeightPrinter:
    """Logs a short summary of a weight tensor, at most once per interval."""

    def __init__(self, interval_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic,
                 max_values: int = 8):
        self._limiter = RateLimiter(interval_seconds, clock)
        self.max_values = max_values

    def print_weights(self, weight) -> bool:
        """Log ``weight`` (a WeightTensor) if the rate limit allows.

        Returns True when something was logged.
        """
        if not self._limiter.ready():
            return False
        values = weight.to_weight_array()
        preview = np.array2string(values[: self.max_values], precision=4, separator=", ")
        logger.info(
            "Weights '%s' %s: mean=%.6f std=%.6f min=%.6f max=%.6f first=%s",
            weight.name, list(weight.sizes), float(values.mean()), float(values.std()),
            float(values.min()), float(values.max()), preview,
        )
        return True
