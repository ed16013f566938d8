"""
backend/metegol/workers/data_syncer.py

Purpose:
    Rate-limited background job queue. Schedules per-(league, date) fixture
    jobs and per-match enrichment jobs, drains them one at a time with a
    fixed delay between consecutive jobs, and stops early once today's
    upstream usage crosses the abort mark.

    Pacing is global: every pair of consecutive jobs is separated by
    60 / FOOTBALL_API_RATE_LIMIT_RPM seconds, including jobs that end up
    making no upstream call.

Dependencies:
    - metegol.services.fixture_sync_service
    - metegol.services.quota_tracker
    - metegol.config
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable

from metegol import utils
from metegol.config import settings
from metegol.services.fixture_sync_service import FixtureSyncService, get_sync_service
from metegol.services.freshness import is_live_status, needs_details
from metegol.services.match_mapper import match_id, match_status
from metegol.services.quota_tracker import QuotaTracker, quota_tracker

logger = logging.getLogger("metegol.data_syncer")

STOPPED_BY_USER = "Stopped by user"
HISTORICAL_BATCH_DATES = 3


class JobType(str, Enum):
    FIXTURES = "fixtures"
    ENRICH = "enrich"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ForceTarget(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    TOMORROW = "tomorrow"
    LIVE = "live"


@dataclass
class SyncJob:
    id: str
    type: JobType
    metadata: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utils.utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


@dataclass
class SyncStats:
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    last_sync_time: datetime | None = None
    api_calls_today: int = 0
    data_items_synced: int = 0


def fixtures_job_id(league_id: int, day: str) -> str:
    return f"fixtures_{league_id}_{day}"


def enrich_job_id(match_id_: int, live: bool = False) -> str:
    return f"{'live_enrich' if live else 'enrich'}_{match_id_}"


def _missing_details(match: dict[str, Any]) -> bool:
    return not (match.get("statistics") and match.get("events") and match.get("lineups"))


class DataSyncer:
    def __init__(
        self,
        service: FixtureSyncService,
        quota: QuotaTracker | None = None,
        leagues: Iterable[int] | None = None,
        max_requests_per_minute: int | None = None,
        daily_quota: int | None = None,
        abort_pct: float | None = None,
    ) -> None:
        self._service = service
        self._quota = quota or quota_tracker
        self.leagues = list(leagues) if leagues is not None else settings.sync_default_leagues
        self.max_requests_per_minute = max_requests_per_minute or settings.FOOTBALL_API_RATE_LIMIT_RPM
        self.daily_quota = daily_quota or settings.FOOTBALL_API_DAILY_QUOTA
        self.abort_pct = settings.SYNC_QUOTA_ABORT_PCT if abort_pct is None else abort_pct
        self.queue: list[SyncJob] = []
        self.stats = SyncStats()
        self._processing = False
        self._stopped = False
        self._reconcile()

    # ---- Quota ----

    def _reconcile(self) -> int:
        self.stats.api_calls_today = self._quota.count()
        return self.stats.api_calls_today

    def usage_pct(self) -> float:
        self._reconcile()
        return self._quota.usage_pct(self.daily_quota)

    @property
    def job_delay_seconds(self) -> float:
        return 60.0 / max(1, int(self.max_requests_per_minute))

    # ---- Queueing ----

    def _active_ids(self) -> set[str]:
        return {job.id for job in self.queue}

    def _push(self, job: SyncJob, front: bool = False) -> None:
        if front:
            self.queue.insert(0, job)
        else:
            self.queue.append(job)

    def queue_fixtures(self, days: Iterable[str]) -> int:
        """Queue one fixtures job per (league, day); already-queued ids are skipped."""
        active = self._active_ids()
        added = 0
        for day in days:
            for league_id in self.leagues:
                job_id = fixtures_job_id(league_id, day)
                if job_id in active:
                    continue
                self._push(SyncJob(job_id, JobType.FIXTURES, {"date": day, "league_id": league_id}))
                active.add(job_id)
                added += 1
        self.stats.total_jobs += added
        if added:
            logger.info("Queued %d fixture jobs for %s", added, ", ".join(days))
        return added

    def queue_enrichment(self, match: dict[str, Any]) -> bool:
        job_id = enrich_job_id(match_id(match))
        if job_id in self._active_ids():
            return False
        self._push(SyncJob(job_id, JobType.ENRICH, {"match": match, "priority": "normal"}))
        self.stats.total_jobs += 1
        return True

    def queue_live_enrichment(self, match: dict[str, Any]) -> None:
        """Put a live match at the front, replacing any queued job for it."""
        mid = match_id(match)
        replaced = {enrich_job_id(mid), enrich_job_id(mid, live=True)}
        before = len(self.queue)
        self.queue = [
            job for job in self.queue
            if job.id not in replaced or job.status is JobStatus.RUNNING
        ]
        removed = before - len(self.queue)
        self._push(
            SyncJob(enrich_job_id(mid, live=True), JobType.ENRICH, {"match": match, "priority": "high"}),
            front=True,
        )
        if removed == 0:
            self.stats.total_jobs += 1

    async def queue_details(self, day: str) -> int:
        """Queue enrichment for live/finished matches of ``day`` missing details.

        Leagues that already have a fixtures job for the day are skipped: that
        job enriches as part of get_fixtures.
        """
        covered = {
            job.metadata.get("league_id")
            for job in self.queue
            if job.type is JobType.FIXTURES and job.metadata.get("date") == day
        }
        added = 0
        for league_id in self.leagues:
            if league_id in covered:
                continue
            try:
                matches = await self._service.get_fixtures(day, day, league_id)
            except Exception as exc:
                logger.error("Queuing details for league %s on %s failed: %s", league_id, day, exc)
                continue
            for match in matches:
                if needs_details(match_status(match)) and _missing_details(match):
                    added += int(self.queue_enrichment(match))
        return added

    async def queue_live_matches(self) -> int:
        today = utils.day_str(utils.utcnow())
        added = 0
        for league_id in self.leagues:
            try:
                matches = await self._service.get_fixtures(today, today, league_id)
            except Exception as exc:
                logger.error("Queuing live matches for league %s failed: %s", league_id, exc)
                continue
            for match in matches:
                if is_live_status(match_status(match)):
                    self.queue_live_enrichment(match)
                    added += 1
        if added:
            logger.info("Prioritized %d live matches", added)
        return added

    # ---- Processing ----

    def _purge(self) -> None:
        self.queue = [j for j in self.queue if j.status in (JobStatus.PENDING, JobStatus.RUNNING)]

    async def process_queue(self) -> dict[str, Any]:
        """Drain pending jobs sequentially; returns a run summary."""
        summary = {"processed": 0, "completed": 0, "failed": 0, "aborted": False, "skipped": False}
        if self._processing or self._stopped:
            summary["skipped"] = True
            return summary

        self._processing = True
        self._reconcile()
        started = utils.utcnow()
        pending = [j for j in self.queue if j.status is JobStatus.PENDING]
        try:
            for idx, job in enumerate(pending):
                if self._stopped:
                    break
                if job.status is not JobStatus.PENDING or job not in self.queue:
                    continue
                if self.usage_pct() > self.abort_pct:
                    logger.warning(
                        "Daily upstream usage %d/%d above %.0f%%; leaving %d jobs pending",
                        self.stats.api_calls_today, self.daily_quota, self.abort_pct,
                        len(pending) - idx,
                    )
                    summary["aborted"] = True
                    break

                await self._process_job(job)
                summary["processed"] += 1
                if job.status is JobStatus.COMPLETED:
                    summary["completed"] += 1
                else:
                    summary["failed"] += 1
                self._purge()

                if idx < len(pending) - 1:
                    await asyncio.sleep(self.job_delay_seconds)
        finally:
            self._purge()
            self._reconcile()
            self._processing = False
            if summary["processed"]:
                self.stats.last_sync_time = utils.utcnow()

        elapsed = (utils.utcnow() - started).total_seconds()
        logger.info(
            "Sync queue run: %d processed (%d completed, %d failed) in %.1fs",
            summary["processed"], summary["completed"], summary["failed"], elapsed,
        )
        return summary

    async def _process_job(self, job: SyncJob) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = utils.utcnow()
        upstream = self._service.upstream
        if upstream is not None:
            upstream.reset_call_count()
        calls_before = self._quota.count()

        try:
            if job.type is JobType.FIXTURES:
                day = job.metadata["date"]
                matches = await self._service.get_fixtures(day, day, job.metadata["league_id"])
            elif job.type is JobType.ENRICH:
                live = job.metadata.get("priority") == "high"
                matches = await self._service.enrich_matches_with_details([job.metadata["match"]], refresh=live)
                if matches:
                    await self._service.save_matches(matches)
            else:
                raise ValueError(f"Unknown job type: {job.type}")
        except Exception as exc:
            if job.status is JobStatus.RUNNING:
                job.status = JobStatus.FAILED
                job.error = str(exc) or exc.__class__.__name__
                job.completed_at = utils.utcnow()
                self.stats.failed_jobs += 1
                logger.warning("Sync job %s failed: %s", job.id, job.error)
            return
        finally:
            job.metadata["api_calls"] = max(0, self._quota.count() - calls_before)
            if upstream is not None:
                upstream.reset_call_count()
            self._reconcile()

        if job.status is not JobStatus.RUNNING:
            # stop() already failed this job.
            return
        job.status = JobStatus.COMPLETED
        job.completed_at = utils.utcnow()
        self.stats.completed_jobs += 1
        self.stats.data_items_synced += len(matches)
        logger.debug(
            "Sync job %s completed: %d matches, %d upstream calls",
            job.id, len(matches), job.metadata["api_calls"],
        )

    # ---- Control ----

    def stop(self) -> int:
        """Fail running jobs and block processing until resume()."""
        self._stopped = True
        stopped = 0
        for job in self.queue:
            if job.status is JobStatus.RUNNING:
                job.status = JobStatus.FAILED
                job.error = STOPPED_BY_USER
                job.completed_at = utils.utcnow()
                self.stats.failed_jobs += 1
                stopped += 1
        self._purge()
        logger.info("Sync stopped (%d running jobs failed)", stopped)
        return stopped

    def resume(self) -> None:
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def clear_queue(self) -> int:
        """Drop pending jobs; running ones are left alone."""
        before = len(self.queue)
        self.queue = [j for j in self.queue if j.status is JobStatus.RUNNING]
        cleared = before - len(self.queue)
        logger.info("Cleared %d pending sync jobs", cleared)
        return cleared

    def pending_ids(self) -> list[str]:
        return [j.id for j in self.queue if j.status is JobStatus.PENDING]

    def get_stats(self) -> dict[str, Any]:
        self._reconcile()
        payload = asdict(self.stats)
        payload["queue_length"] = sum(
            1 for j in self.queue if j.status in (JobStatus.PENDING, JobStatus.RUNNING)
        )
        payload["running_jobs"] = sum(1 for j in self.queue if j.status is JobStatus.RUNNING)
        payload["daily_quota"] = self.daily_quota
        payload["is_processing"] = self._processing
        payload["stopped"] = self._stopped
        return payload

    # ---- Entry points ----

    async def sync_todays_data(self) -> dict[str, Any]:
        now = utils.utcnow()
        self.queue_fixtures([utils.day_str(now), utils.day_str(now - timedelta(days=1))])
        return await self.process_queue()

    async def smart_sync(self) -> dict[str, Any]:
        """Breadth depends on the UTC hour and on today's upstream usage."""
        now = utils.utcnow()
        today = utils.day_str(now)
        yesterday = utils.day_str(now - timedelta(days=1))
        tomorrow = utils.day_str(now + timedelta(days=1))
        usage = self.usage_pct()
        hour = now.hour

        if 6 <= hour < 10:
            self.queue_fixtures([yesterday, today])
            if usage < settings.SYNC_QUOTA_DETAILS_PCT:
                await self.queue_details(yesterday)
        elif 10 <= hour < 18:
            self.queue_fixtures([today])
            await self.queue_details(today)
        elif 18 <= hour < 22:
            self.queue_fixtures([today, tomorrow])
            await self.queue_details(today)
            await self.queue_live_matches()
        else:
            self.queue_fixtures([tomorrow])
        return await self.process_queue()

    async def sync_historical_data(self, days: int = 30) -> dict[str, Any]:
        now = utils.utcnow()
        dates = [utils.day_str(now - timedelta(days=offset)) for offset in range(1, days + 1)]
        totals = {"processed": 0, "completed": 0, "failed": 0, "aborted": False, "skipped": False}
        for start in range(0, len(dates), HISTORICAL_BATCH_DATES):
            batch = dates[start:start + HISTORICAL_BATCH_DATES]
            self.queue_fixtures(batch)
            for day in batch:
                await self.queue_details(day)
            result = await self.process_queue()
            for key in ("processed", "completed", "failed"):
                totals[key] += result[key]
            if result["aborted"] or result["skipped"]:
                totals["aborted"] = result["aborted"]
                totals["skipped"] = result["skipped"]
                break
            if start + HISTORICAL_BATCH_DATES < len(dates):
                await asyncio.sleep(settings.SYNC_HISTORICAL_BATCH_PAUSE_SECONDS)
        return totals

    async def force_sync(self, target: str | ForceTarget) -> dict[str, Any]:
        target = ForceTarget(target)
        now = utils.utcnow()
        if target is ForceTarget.TODAY:
            day = utils.day_str(now)
            self.queue_fixtures([day])
            await self.queue_details(day)
        elif target is ForceTarget.YESTERDAY:
            day = utils.day_str(now - timedelta(days=1))
            self.queue_fixtures([day])
            await self.queue_details(day)
        elif target is ForceTarget.TOMORROW:
            self.queue_fixtures([utils.day_str(now + timedelta(days=1))])
        else:
            await self.queue_live_matches()
        return await self.process_queue()


_syncer: DataSyncer | None = None


def get_syncer() -> DataSyncer:
    """Process-wide queue; statistics live as long as the process."""
    global _syncer
    if _syncer is None:
        _syncer = DataSyncer(get_sync_service())
    return _syncer


def reset_syncer() -> None:
    global _syncer
    _syncer = None
