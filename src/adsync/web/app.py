from __future__ import annotations

import hmac
import logging
from datetime import timedelta
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from adsync.aggregator import AggregateScope, Aggregator, BREAKDOWN_DIMENSIONS
from adsync.alerts import AlertEvaluator
from adsync.config import Settings
from adsync.db import AdsDB
from adsync.notify.telegram import NotificationSink, build_notifier
from adsync.registry import adapter_factory as default_adapter_factory
from adsync.repo import Repo
from adsync.scheduler import FREQUENCY_INTERVALS, SchedulerError, SyncScheduler
from adsync.util import local_date, parse_iso, utc_now

logger = logging.getLogger(__name__)


def _secret_matches(given: str | None, expected: str | None) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def _authorized(request: Request, settings: Settings) -> bool:
    auth = (request.headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        if _secret_matches(auth[7:].strip(), settings.service_token):
            return True
    return _secret_matches((request.headers.get("x-cron-secret") or "").strip(), settings.cron_secret)


def _unauthorized() -> JSONResponse:
    return JSONResponse({"success": False, "error": "unauthorized"}, status_code=401)


def _is_stale(schedule: dict[str, Any], now) -> bool:
    last = parse_iso(schedule.get("last_sync_at"))
    if last is None:
        return True
    interval = FREQUENCY_INTERVALS.get(str(schedule.get("frequency") or ""), timedelta(days=1))
    return now - last > interval * 2


def create_app(
    settings: Settings,
    *,
    adapter_factory: Callable[[dict[str, Any]], Any] | None = None,
    notifier: NotificationSink | None = None,
) -> FastAPI:
    AdsDB(settings.db_path).init()
    repo = Repo(settings.db_path)
    aggregator = Aggregator(repo)
    factory = adapter_factory or default_adapter_factory(repo, demo_mode=settings.demo_mode)

    app = FastAPI(title="adsync")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _scope(
        date_from: str | None,
        date_to: str | None,
        *,
        account_id: str | None = None,
        provider: str | None = None,
        status: str | None = None,
        campaign_id: str | None = None,
        breakdown: str | None = None,
    ) -> AggregateScope:
        today = local_date(utc_now(), settings.timezone)
        return AggregateScope(
            date_from=date_from or (today - timedelta(days=6)).isoformat(),
            date_to=date_to or today.isoformat(),
            account_id=account_id or None,
            provider=provider or None,
            status=status or None,
            campaign_id=campaign_id or None,
            breakdown=breakdown,
        )

    @app.get("/health")
    def health():
        last = repo.get_last_successful_sync()
        return {"ok": True, "last_successful_sync_at": last["finished_at"] if last else None}

    @app.post("/api/sync/scheduled")
    async def run_scheduled_syncs(request: Request):
        if not _authorized(request, settings):
            return _unauthorized()
        scheduler = SyncScheduler(
            repo,
            factory,
            concurrency=settings.sync_concurrency,
            adapter_timeout=settings.adapter_timeout_sec,
            claim_ttl=timedelta(minutes=settings.claim_ttl_minutes),
        )
        try:
            report = await scheduler.run_due_schedules(utc_now())
        except SchedulerError as e:
            logger.error("scheduled sync run failed: %s", e)
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)
        return {"success": True, **report.to_dict()}

    @app.post("/api/alerts/evaluate")
    async def evaluate_alerts(request: Request):
        if not _authorized(request, settings):
            return _unauthorized()
        evaluator = AlertEvaluator(
            repo,
            aggregator=aggregator,
            notifier=notifier or build_notifier(settings),
            timezone=settings.timezone,
            renotify=settings.alert_renotify,
            notify_timeout=settings.notify_timeout_sec,
        )
        report = await evaluator.evaluate(utc_now())
        return {"success": True, **report.to_dict()}

    @app.get("/api/metrics/summary")
    def metrics_summary(
        date_from: str | None = None,
        date_to: str | None = None,
        account_id: str | None = None,
        provider: str | None = None,
        status: str | None = None,
        campaign_id: str | None = None,
        compare: bool = False,
    ):
        try:
            scope = _scope(
                date_from, date_to, account_id=account_id, provider=provider, status=status, campaign_id=campaign_id
            )
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        if compare:
            return {"ok": True, "scope": scope.store_filters(), **aggregator.compare(scope).to_dict()}
        return {"ok": True, "scope": scope.store_filters(), "metrics": aggregator.aggregate(scope).to_dict()}

    @app.get("/api/metrics/breakdown/{dimension}")
    def metrics_breakdown(
        dimension: str,
        date_from: str | None = None,
        date_to: str | None = None,
        account_id: str | None = None,
        provider: str | None = None,
        status: str | None = None,
        campaign_id: str | None = None,
    ):
        dim = dimension.strip().lower()
        if dim not in BREAKDOWN_DIMENSIONS:
            return JSONResponse({"ok": False, "error": f"unknown breakdown: {dimension}"}, status_code=400)
        try:
            scope = _scope(
                date_from,
                date_to,
                account_id=account_id,
                provider=provider,
                status=status,
                campaign_id=campaign_id,
                breakdown=dim,
            )
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return {"ok": True, **aggregator.aggregate(scope).to_dict()}

    @app.get("/api/metrics/platforms")
    def metrics_platforms(
        date_from: str | None = None,
        date_to: str | None = None,
        account_id: str | None = None,
        status: str | None = None,
    ):
        try:
            scope = _scope(date_from, date_to, account_id=account_id, status=status)
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return {"ok": True, "platforms": [m.to_dict() for m in aggregator.by_provider(scope)]}

    @app.get("/api/metrics/timeline")
    def metrics_timeline(
        date_from: str | None = None,
        date_to: str | None = None,
        account_id: str | None = None,
        provider: str | None = None,
        status: str | None = None,
        campaign_id: str | None = None,
    ):
        try:
            scope = _scope(
                date_from, date_to, account_id=account_id, provider=provider, status=status, campaign_id=campaign_id
            )
        except ValueError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=400)
        return {"ok": True, "days": [m.to_dict() for m in aggregator.timeline(scope)]}

    @app.get("/api/schedules")
    def list_schedules(user_id: str | None = None):
        now = utc_now()
        out: list[dict[str, Any]] = []
        for s in repo.list_schedules(user_id=user_id):
            out.append(
                {
                    "id": s["id"],
                    "user_id": s["user_id"],
                    "provider": s["provider"],
                    "sync_type": s["sync_type"],
                    "frequency": s["frequency"],
                    "is_active": bool(s["is_active"]),
                    "last_sync_at": s["last_sync_at"],
                    "next_sync_at": s["next_sync_at"],
                    "in_flight": s["claim_token"] is not None,
                    "last_error": s["last_error"],
                    "is_stale": _is_stale(s, now),
                }
            )
        return {"ok": True, "schedules": out}

    return app


def run_web(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
