"""Reconnect backoff for long-lived channels.

REST calls are never retried by the SDK; only the pull channel reconnects.
The delay grows with the attempt number and is bounded by ``max_delay``.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

# (attempt upper bound, delay seconds)
RECONNECT_STEPS: tuple[tuple[int, float], ...] = (
    (1, 0.5),
    (3, 15.0),
    (5, 45.0),
    (10, 600.0),
)
RECONNECT_CEILING = 3600.0
JITTER_RATIO = 0.2


def reconnect_delay(
    attempt: int,
    *,
    max_delay: float = RECONNECT_CEILING,
    jitter: float = JITTER_RATIO,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before reconnect attempt ``attempt`` (0-based).

    Args:
        attempt: Number of failed attempts so far
        max_delay: Upper bound, jitter included
        jitter: Random extra part, as a ratio of the base delay
        rand: Source of randomness in [0, 1)
    """
    base = RECONNECT_CEILING
    for bound, delay in RECONNECT_STEPS:
        if attempt < bound:
            base = delay
            break
    return min(base + base * jitter * rand(), max_delay)
