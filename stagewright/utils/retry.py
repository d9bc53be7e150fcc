from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    retry_count: int,
    backoff_ms: int,
    max_backoff_ms: Optional[int] = None,
    jitter_ms: int = 0,
) -> float:
    """Compute exponential backoff in milliseconds with optional jitter.

    The delay before retry ``n`` is ``backoff_ms * 2**n``, capped at
    ``max_backoff_ms`` before jitter is added.
    """
    delay = backoff_ms * (2 ** retry_count)
    if max_backoff_ms is not None:
        delay = min(delay, max_backoff_ms)
    if jitter_ms:
        delay += random.uniform(0, jitter_ms)
    return float(delay)

