"""
backend/metegol/services/quota_tracker.py

Purpose:
    Process-wide counter of upstream requests made today (UTC). Every
    upstream call records here; quota-aware decisions (job queue abort,
    smart-sync breadth, bulk populator stop) read from here.

Dependencies:
    - metegol.utils
"""

from __future__ import annotations

import logging
from datetime import date

from metegol import utils

logger = logging.getLogger("metegol.quota")


class QuotaTracker:
    """Daily upstream call counter that rolls over at UTC midnight.

    Single event loop, no awaits inside record()/count(): increments and reads
    cannot interleave.
    """

    def __init__(self) -> None:
        self._day: date | None = None
        self._count = 0

    def _roll(self) -> None:
        today = utils.utcnow().date()
        if self._day != today:
            if self._day is not None:
                logger.info("Upstream call counter reset for %s (was %d)", today, self._count)
            self._day = today
            self._count = 0

    def record(self, calls: int = 1) -> int:
        self._roll()
        self._count += int(calls)
        return self._count

    def count(self) -> int:
        self._roll()
        return self._count

    def usage_pct(self, daily_quota: int) -> float:
        if daily_quota <= 0:
            return 100.0
        return self.count() * 100.0 / daily_quota

    def reset(self) -> None:
        self._day = utils.utcnow().date()
        self._count = 0


quota_tracker = QuotaTracker()
