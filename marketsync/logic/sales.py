"""Sales volume windows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

WINDOW_72H = timedelta(hours=72)
WINDOW_30D = timedelta(days=30)


@dataclass(slots=True)
class SalesVolume:
    last_72h: int
    last_30d: int


def sales_volume(sold_at: Iterable[datetime], now: datetime) -> SalesVolume:
    last_72h = 0
    last_30d = 0
    for ts in sold_at:
        age = now - ts
        if age < timedelta(0):
            continue
        if age <= WINDOW_30D:
            last_30d += 1
        if age <= WINDOW_72H:
            last_72h += 1
    return SalesVolume(last_72h=last_72h, last_30d=last_30d)
