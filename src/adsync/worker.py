from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from adsync.alerts import AlertEvaluator
from adsync.config import Settings
from adsync.db import AdsDB
from adsync.notify.telegram import build_notifier
from adsync.registry import adapter_factory
from adsync.repo import Repo
from adsync.scheduler import SyncScheduler
from adsync.util import utc_now

logger = logging.getLogger(__name__)


def build_scheduler(settings: Settings, repo: Repo) -> SyncScheduler:
    return SyncScheduler(
        repo,
        adapter_factory(repo, demo_mode=settings.demo_mode),
        concurrency=settings.sync_concurrency,
        adapter_timeout=settings.adapter_timeout_sec,
        claim_ttl=timedelta(minutes=settings.claim_ttl_minutes),
    )


def build_evaluator(settings: Settings, repo: Repo) -> AlertEvaluator:
    return AlertEvaluator(
        repo,
        notifier=build_notifier(settings),
        timezone=settings.timezone,
        renotify=settings.alert_renotify,
        notify_timeout=settings.notify_timeout_sec,
    )


async def _tick(settings: Settings) -> dict[str, Any]:
    AdsDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    now = utc_now()

    report = await build_scheduler(settings, repo).run_due_schedules(now)
    logger.info(
        "sync: processed=%d success=%d skipped=%d failed=%d",
        report.processed,
        report.count("success"),
        report.count("skipped"),
        report.count("failed"),
    )

    # Alerts read whatever the sync just wrote; a failing alert pass must not hide the sync report.
    try:
        alerts = await build_evaluator(settings, repo).evaluate(now)
        alerts_out: dict[str, Any] = alerts.to_dict()
    except Exception as e:  # noqa: BLE001
        logger.exception("alert evaluation failed")
        alerts_out = {"error": f"{type(e).__name__}: {e}"}

    return {"sync": report.to_dict(), "alerts": alerts_out}


def run_tick(settings: Settings) -> dict[str, Any]:
    return asyncio.run(_tick(settings))


async def _run_forever(settings: Settings) -> None:
    while True:
        try:
            await _tick(settings)
        except Exception as e:  # noqa: BLE001
            logger.error("tick failed: %s: %s", type(e).__name__, e)
        await asyncio.sleep(settings.tick_seconds)


def run_worker(settings: Settings) -> None:
    asyncio.run(_run_forever(settings))
