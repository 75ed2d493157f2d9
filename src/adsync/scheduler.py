from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from adsync.util import new_id, to_utc_iso, utc_now

logger = logging.getLogger(__name__)


# (provider, sync_type) -> adapter method. Meta splits structure and metrics;
# Google's adapter always does both in one call.
OPERATIONS: dict[tuple[str, str], str] = {
    ("meta", "campaigns"): "sync_campaigns",
    ("meta", "full"): "sync_campaigns",
    ("meta", "metrics"): "sync_metrics",
    ("google", "campaigns"): "sync_all",
    ("google", "metrics"): "sync_all",
    ("google", "full"): "sync_all",
}

FREQUENCY_INTERVALS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


class SchedulerError(RuntimeError):
    """The run could not start: schedules could not be read or claimed."""


def next_run_at(frequency: str, now: datetime) -> datetime:
    interval = FREQUENCY_INTERVALS.get(str(frequency or "").lower())
    if interval is None:
        logger.warning("unknown schedule frequency %r, using daily", frequency)
        interval = FREQUENCY_INTERVALS["daily"]
    return now + interval


@dataclass(frozen=True)
class ScheduleOutcome:
    schedule_id: str
    outcome: str  # success|skipped|failed
    detail: str | None = None
    operation: str | None = None
    next_sync_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "outcome": self.outcome,
            "detail": self.detail,
            "operation": self.operation,
            "next_sync_at": self.next_sync_at,
        }


@dataclass
class RunReport:
    results: list[ScheduleOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "results": [r.to_dict() for r in self.results],
        }


class SyncScheduler:
    """
    Runs every due sync schedule once.

    Due schedules are claimed with a single conditional UPDATE before dispatch, so an
    overlapping run never sees them. Success advances next_sync_at and clears the claim
    in one guarded UPDATE; failure and skip only clear the claim, leaving the schedule due.
    Claims older than `claim_ttl` are treated as abandoned and released at the next run.
    """

    def __init__(
        self,
        repo,
        adapter_factory: Callable[[dict[str, Any]], Any],
        *,
        concurrency: int = 5,
        adapter_timeout: float = 60.0,
        claim_ttl: timedelta = timedelta(minutes=15),
    ):
        self.repo = repo
        self.adapter_factory = adapter_factory
        self.concurrency = max(1, int(concurrency))
        self.adapter_timeout = float(adapter_timeout)
        self.claim_ttl = claim_ttl

    def _claim(self, now: datetime) -> tuple[str, list[dict[str, Any]]]:
        token = new_id("claim")
        try:
            released = self.repo.release_stale_claims(claimed_before=to_utc_iso(now - self.claim_ttl))
            if released:
                logger.warning("released %d stale schedule claim(s)", released)
            claimed = self.repo.claim_due_schedules(now=to_utc_iso(now), token=token)
        except sqlite3.Error as e:
            raise SchedulerError(f"cannot claim due schedules: {e}") from e
        return token, claimed

    async def run_due_schedules(self, now: datetime | None = None) -> RunReport:
        now = now or utc_now()
        token, claimed = self._claim(now)
        if not claimed:
            return RunReport()
        logger.info("claimed %d due schedule(s)", len(claimed))

        sem = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(*(self._run_one(s, token, now, sem) for s in claimed))
        return RunReport(results=list(results))

    def run_due_schedules_sync(self, now: datetime | None = None) -> RunReport:
        return asyncio.run(self.run_due_schedules(now))

    async def _run_one(
        self,
        schedule: dict[str, Any],
        token: str,
        now: datetime,
        sem: asyncio.Semaphore,
    ) -> ScheduleOutcome:
        sid = str(schedule["id"])
        try:
            async with sem:
                return await self._process(schedule, token, now)
        except asyncio.CancelledError:
            self._release_quietly(sid, token, "cancelled")
            raise
        except Exception as e:  # noqa: BLE001
            # Store errors around the adapter call fail this schedule only.
            logger.warning("schedule %s bookkeeping failed", sid, exc_info=True)
            detail = f"{type(e).__name__}: {e}"
            self._release_quietly(sid, token, detail)
            return ScheduleOutcome(schedule_id=sid, outcome="failed", detail=detail)

    def _release_quietly(self, schedule_id: str, token: str, error: str) -> None:
        try:
            self.repo.release_schedule_claim(schedule_id, token=token, error=error)
        except sqlite3.Error as e:
            logger.error("schedule %s claim not released (expires after ttl): %s", schedule_id, e)

    async def _process(self, schedule: dict[str, Any], token: str, now: datetime) -> ScheduleOutcome:
        sid = str(schedule["id"])
        provider = str(schedule["provider"])
        sync_type = str(schedule["sync_type"])

        integration = self.repo.get_active_integration(user_id=schedule["user_id"], provider=provider)
        if integration is None:
            self.repo.release_schedule_claim(sid, token=token)
            logger.info("schedule %s skipped: no_active_integration (%s)", sid, provider)
            return ScheduleOutcome(schedule_id=sid, outcome="skipped", detail="no_active_integration")

        operation = OPERATIONS.get((provider, sync_type))
        if operation is None:
            self.repo.release_schedule_claim(sid, token=token, error=f"unsupported sync type {provider}/{sync_type}")
            logger.warning("schedule %s skipped: unsupported_sync_type %s/%s", sid, provider, sync_type)
            return ScheduleOutcome(schedule_id=sid, outcome="skipped", detail="unsupported_sync_type")

        log_id = self.repo.create_sync_log(
            schedule_id=sid,
            integration_id=integration["id"],
            provider=provider,
            operation=operation,
            started_at=to_utc_iso(utc_now()),
        )

        result: Any = None
        error: str | None = None
        try:
            adapter = self.adapter_factory(integration)
            call = getattr(adapter, operation)
            result = await asyncio.wait_for(call(integration["id"]), timeout=self.adapter_timeout)
            error = getattr(result, "error", None)
        except asyncio.TimeoutError:
            error = f"timeout after {self.adapter_timeout:g}s"
        except asyncio.CancelledError:
            try:
                self.repo.finish_sync_log(log_id, status="cancelled", error="cancelled")
            except sqlite3.Error as e:
                logger.error("sync log %s not closed: %s", log_id, e)
            raise
        except Exception as e:  # noqa: BLE001
            logger.warning("schedule %s %s failed", sid, operation, exc_info=True)
            error = f"{type(e).__name__}: {e}"

        if error:
            self.repo.release_schedule_claim(sid, token=token, error=error)
            self.repo.finish_sync_log(log_id, status="failed", error=error)
            logger.warning("schedule %s failed: %s", sid, error)
            return ScheduleOutcome(schedule_id=sid, outcome="failed", detail=error, operation=operation)

        next_iso = to_utc_iso(next_run_at(schedule.get("frequency") or "daily", now))
        kept_claim = self.repo.finish_schedule_success(
            sid,
            token=token,
            last_sync_at=to_utc_iso(now),
            next_sync_at=next_iso,
        )
        self.repo.finish_sync_log(
            log_id,
            status="success",
            campaigns_synced=int(getattr(result, "campaigns_synced", 0) or 0),
            metrics_synced=int(getattr(result, "metrics_synced", 0) or 0),
            breakdowns_synced=int(getattr(result, "breakdowns_synced", 0) or 0),
        )
        if not kept_claim:
            # Claim expired mid-dispatch and was swept; the data is written but bookkeeping is not.
            logger.warning("schedule %s finished after its claim expired", sid)
            return ScheduleOutcome(schedule_id=sid, outcome="success", detail="claim_expired", operation=operation)
        logger.info("schedule %s %s ok, next at %s", sid, operation, next_iso)
        return ScheduleOutcome(schedule_id=sid, outcome="success", operation=operation, next_sync_at=next_iso)
