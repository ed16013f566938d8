"""
backend/metegol/workers/bulk_populator.py

Purpose:
    Long-running warm-up of the cache. Walks a static league catalogue tier
    by tier (high, medium, low), in batches of leagues, and requests every
    (league, date) in a window around today through the synchronizer so the
    usual freshness and negative-result rules decide what reaches upstream.

Dependencies:
    - metegol.services.fixture_sync_service
    - metegol.services.quota_tracker
    - metegol.workers.data_syncer
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Literal

from metegol import utils
from metegol.config import settings
from metegol.services.fixture_sync_service import FixtureSyncService, get_sync_service
from metegol.services.quota_tracker import QuotaTracker, quota_tracker
from metegol.workers.data_syncer import DataSyncer, get_syncer

logger = logging.getLogger("metegol.populator")

Priority = Literal["high", "medium", "low"]
PRIORITY_ORDER: tuple[Priority, ...] = ("high", "medium", "low")


@dataclass(frozen=True)
class CatalogueLeague:
    id: int
    name: str
    priority: Priority
    region: str


LEAGUE_CATALOGUE: tuple[CatalogueLeague, ...] = (
    CatalogueLeague(128, "Liga Profesional Argentina", "high", "South America"),
    CatalogueLeague(129, "Primera Nacional Argentina", "high", "South America"),
    CatalogueLeague(130, "Copa Argentina", "high", "South America"),
    CatalogueLeague(71, "Brasileirao Serie A", "high", "South America"),
    CatalogueLeague(72, "Brasileirao Serie B", "medium", "South America"),
    CatalogueLeague(73, "Copa do Brasil", "high", "South America"),
    CatalogueLeague(2, "UEFA Champions League", "high", "Europe"),
    CatalogueLeague(3, "UEFA Europa League", "high", "Europe"),
    CatalogueLeague(848, "UEFA Conference League", "medium", "Europe"),
    CatalogueLeague(39, "Premier League", "high", "Europe"),
    CatalogueLeague(140, "La Liga", "high", "Europe"),
    CatalogueLeague(135, "Serie A", "high", "Europe"),
    CatalogueLeague(78, "Bundesliga", "high", "Europe"),
    CatalogueLeague(61, "Ligue 1", "high", "Europe"),
    CatalogueLeague(15, "FIFA Club World Cup", "medium", "International"),
    CatalogueLeague(1, "World Cup", "high", "International"),
    CatalogueLeague(4, "Euro Championship", "high", "International"),
    CatalogueLeague(9, "Copa America", "high", "International"),
    CatalogueLeague(13, "Copa Libertadores", "high", "South America"),
    CatalogueLeague(11, "Copa Sudamericana", "medium", "South America"),
    CatalogueLeague(144, "Belgian First Division A", "medium", "Europe"),
    CatalogueLeague(88, "Eredivisie", "medium", "Europe"),
    CatalogueLeague(94, "Primeira Liga", "medium", "Europe"),
    CatalogueLeague(203, "Super League Turkey", "medium", "Europe"),
    CatalogueLeague(188, "Chinese Super League", "low", "Asia"),
    CatalogueLeague(218, "A-League", "low", "Oceania"),
    CatalogueLeague(169, "Saudi Pro League", "low", "Asia"),
)


@dataclass(frozen=True)
class DateRange:
    past_days: int = 30
    future_days: int = 7

    def dates(self, today: datetime) -> list[str]:
        """Oldest first, today included."""
        return [
            utils.day_str(today + timedelta(days=offset))
            for offset in range(-self.past_days, self.future_days + 1)
        ]


@dataclass(frozen=True)
class Throttling:
    batch_size: int = 5
    delay_between_batches: float = 30.0
    unit_delay: float = 0.6
    tier_pause: float = 60.0


@dataclass(frozen=True)
class PopulationConfig:
    leagues: tuple[CatalogueLeague, ...] = LEAGUE_CATALOGUE
    date_range: DateRange = field(default_factory=DateRange)
    throttling: Throttling = field(default_factory=Throttling)


QUICK_CONFIG = PopulationConfig(
    leagues=tuple(
        league for league in LEAGUE_CATALOGUE
        if league.priority == "high" and league.region in ("South America", "Europe")
    ),
    date_range=DateRange(past_days=7, future_days=3),
    throttling=Throttling(batch_size=3, delay_between_batches=20.0),
)

FULL_CONFIG = PopulationConfig(
    date_range=DateRange(past_days=60, future_days=14),
    throttling=Throttling(batch_size=4, delay_between_batches=45.0),
)


@dataclass
class PopulationStats:
    total_batches: int = 0
    completed_batches: int = 0
    failed_batches: int = 0
    units_processed: int = 0
    api_calls: int = 0
    started_at: datetime | None = None
    aborted_on_quota: bool = False


class QuotaExhausted(RuntimeError):
    pass


class BulkPopulator:
    def __init__(
        self,
        service: FixtureSyncService,
        syncer: DataSyncer | None = None,
        quota: QuotaTracker | None = None,
        daily_quota: int | None = None,
        abort_pct: float | None = None,
    ) -> None:
        self._service = service
        self._syncer = syncer
        self._quota = quota or quota_tracker
        self.daily_quota = daily_quota or settings.FOOTBALL_API_DAILY_QUOTA
        self.abort_pct = settings.SYNC_QUOTA_ABORT_PCT if abort_pct is None else abort_pct
        self.stats = PopulationStats()
        self._run: object | None = None
        self._started_monotonic: float | None = None
        self._quota_baseline = 0
        self._quota_day = None

    @property
    def is_running(self) -> bool:
        return self._run is not None

    # ---- Runs ----

    async def start_massive_population(self, config: PopulationConfig | None = None) -> PopulationStats:
        config = config or PopulationConfig()
        if self._run is not None:
            logger.warning("Population already running; stopping the previous run")
            self.stop()
            await asyncio.sleep(2)

        run = self._run = object()
        self.stats = PopulationStats(started_at=utils.utcnow())
        self._started_monotonic = time.monotonic()
        self._quota_baseline = self._quota.count()
        self._quota_day = utils.utcnow().date()
        logger.info(
            "Population started: %d leagues, %d past + %d future days, batch %d",
            len(config.leagues), config.date_range.past_days,
            config.date_range.future_days, config.throttling.batch_size,
        )

        try:
            await self._populate_by_priority(config, run)
        except QuotaExhausted:
            self.stats.aborted_on_quota = True
            logger.warning(
                "Population stopped: daily upstream usage above %.0f%% of %d",
                self.abort_pct, self.daily_quota,
            )
        finally:
            if self._run is run:
                self._run = None
            self._refresh_calls()
        logger.info(
            "Population finished: %d/%d batches, %d failed, %d upstream calls",
            self.stats.completed_batches, self.stats.total_batches,
            self.stats.failed_batches, self.stats.api_calls,
        )
        return self.stats

    async def quick_population(self) -> PopulationStats:
        return await self.start_massive_population(QUICK_CONFIG)

    async def full_population(self) -> PopulationStats:
        return await self.start_massive_population(FULL_CONFIG)

    def stop(self) -> None:
        """Cooperative: the current unit finishes, nothing after it starts."""
        if self._run is not None:
            logger.info("Population stopping")
        self._run = None
        if self._syncer is not None:
            self._syncer.stop()

    async def _populate_by_priority(self, config: PopulationConfig, run: object) -> None:
        tiers = [
            [league for league in config.leagues if league.priority == priority]
            for priority in PRIORITY_ORDER
        ]
        tiers = [tier for tier in tiers if tier]
        for idx, tier in enumerate(tiers):
            if self._run is not run:
                return
            logger.info("Population tier %s: %d leagues", tier[0].priority, len(tier))
            await self._populate_tier(tier, config, run)
            if self._run is run and idx < len(tiers) - 1:
                await asyncio.sleep(config.throttling.tier_pause)

    async def _populate_tier(self, leagues: list[CatalogueLeague], config: PopulationConfig, run: object) -> None:
        size = max(1, config.throttling.batch_size)
        batches = [leagues[i:i + size] for i in range(0, len(leagues), size)]
        self.stats.total_batches += len(batches)
        for idx, batch in enumerate(batches):
            if self._run is not run:
                return
            try:
                await self._process_batch(batch, config, run)
            except QuotaExhausted:
                raise
            except Exception as exc:
                self.stats.failed_batches += 1
                logger.error("Population batch %s failed: %s", [l.id for l in batch], exc)
                continue
            self.stats.completed_batches += 1
            logger.info(
                "Population batch %d/%d done (%s)",
                self.stats.completed_batches, self.stats.total_batches,
                ", ".join(l.name for l in batch),
            )
            if self._run is run and idx < len(batches) - 1:
                await asyncio.sleep(config.throttling.delay_between_batches)

    async def _process_batch(self, batch: list[CatalogueLeague], config: PopulationConfig, run: object) -> None:
        dates = config.date_range.dates(utils.utcnow())
        for league in batch:
            for day in dates:
                if self._run is not run:
                    return
                if self._quota_exceeded():
                    raise QuotaExhausted()
                try:
                    matches = await self._service.get_fixtures(day, day, league.id)
                    logger.debug("Populated %s on %s: %d matches", league.name, day, len(matches))
                except Exception as exc:
                    logger.error("Populating %s on %s failed: %s", league.name, day, exc)
                self.stats.units_processed += 1
                self._refresh_calls()
                await asyncio.sleep(config.throttling.unit_delay)

    # ---- Quota ----

    def _refresh_calls(self) -> None:
        today = utils.utcnow().date()
        count = self._quota.count()
        if self._quota_day is not None and today != self._quota_day:
            # Counter rolled over at midnight; keep what was already counted.
            self._quota_baseline = -self.stats.api_calls
            self._quota_day = today
        self.stats.api_calls = max(0, count - self._quota_baseline)

    def _quota_exceeded(self) -> bool:
        if self.daily_quota <= 0:
            return True
        return self._quota.usage_pct(self.daily_quota) > self.abort_pct

    # ---- Stats ----

    def get_stats(self) -> dict[str, Any]:
        if self._run is not None:
            self._refresh_calls()
        elapsed = 0.0
        if self._started_monotonic is not None:
            elapsed = max(0.0, time.monotonic() - self._started_monotonic)
        total = self.stats.total_batches
        progress = round(self.stats.completed_batches * 100.0 / total) if total else 0
        per_hour = self.stats.api_calls / (elapsed / 3600.0) if elapsed > 0 else 0.0
        return {
            "total_batches": total,
            "completed_batches": self.stats.completed_batches,
            "failed_batches": self.stats.failed_batches,
            "units_processed": self.stats.units_processed,
            "total_api_calls": self.stats.api_calls,
            "start_time": self.stats.started_at,
            "elapsed_seconds": round(elapsed, 1),
            "progress": progress,
            "api_calls_per_hour": round(per_hour, 1),
            "aborted_on_quota": self.stats.aborted_on_quota,
            "is_running": self._run is not None,
        }


def custom_config(
    *,
    league_ids: list[int] | None = None,
    past_days: int | None = None,
    future_days: int | None = None,
    batch_size: int | None = None,
    delay_between_batches: float | None = None,
) -> PopulationConfig:
    """Defaults overridden field by field; unknown league ids get a low tier."""
    base = PopulationConfig()
    leagues = base.leagues
    if league_ids:
        known = {league.id: league for league in LEAGUE_CATALOGUE}
        leagues = tuple(
            known.get(lid) or CatalogueLeague(lid, f"League {lid}", "low", "Other")
            for lid in dict.fromkeys(int(x) for x in league_ids)
        )
    date_range = base.date_range
    if past_days is not None or future_days is not None:
        date_range = DateRange(
            past_days=date_range.past_days if past_days is None else past_days,
            future_days=date_range.future_days if future_days is None else future_days,
        )
    throttling = base.throttling
    if batch_size is not None:
        throttling = replace(throttling, batch_size=batch_size)
    if delay_between_batches is not None:
        throttling = replace(throttling, delay_between_batches=delay_between_batches)
    return PopulationConfig(leagues=leagues, date_range=date_range, throttling=throttling)


_populator: BulkPopulator | None = None


def get_populator() -> BulkPopulator:
    global _populator
    if _populator is None:
        _populator = BulkPopulator(get_sync_service(), syncer=get_syncer())
    return _populator


def reset_populator() -> None:
    global _populator
    _populator = None
