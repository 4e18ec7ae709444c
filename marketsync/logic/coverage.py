"""Success criterion for a sync pass."""

from __future__ import annotations

import math

SMALL_ITEM_THRESHOLD = 4
COVERAGE_RATIO = 0.5


def min_required(total_variants: int) -> int:
    """Number of refreshed snapshots a pass needs to count as successful.

    Items with fewer than four variants have no room for tolerance, so every
    variant must refresh. Larger items need at least half.
    """
    if total_variants < SMALL_ITEM_THRESHOLD:
        return total_variants
    return math.ceil(total_variants * COVERAGE_RATIO)


def is_successful(refreshed: int, total_variants: int) -> bool:
    if total_variants == 0:
        return False
    return refreshed >= min_required(total_variants)
