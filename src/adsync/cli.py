from __future__ import annotations

import asyncio
import json
from datetime import date, timedelta

import typer

from adsync.aggregator import AggregateScope, Aggregator
from adsync.alerts import AlertRuleError, validate_rule
from adsync.config import Settings
from adsync.db import AdsDB
from adsync.logs import setup_logging
from adsync.registry import build_adapter
from adsync.repo import Repo
from adsync.scheduler import FREQUENCY_INTERVALS, OPERATIONS, SchedulerError
from adsync.util import local_date, utc_now
from adsync.web.app import run_web
from adsync.worker import build_evaluator, build_scheduler, run_tick, run_worker

app = typer.Typer(no_args_is_help=True)
schedule_app = typer.Typer(no_args_is_help=True)
integration_app = typer.Typer(no_args_is_help=True)
rule_app = typer.Typer(no_args_is_help=True)
app.add_typer(schedule_app, name="schedule")
app.add_typer(integration_app, name="integration")
app.add_typer(rule_app, name="rule")


def _repo(settings: Settings) -> Repo:
    AdsDB(settings.db_path).init()
    return Repo(settings.db_path)


@app.callback()
def main() -> None:
    setup_logging(Settings.load().log_level)


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init|seed"),
    user_id: str = typer.Option("demo_user", help="Owner of the seeded demo integrations."),
) -> None:
    settings = Settings.load()
    db = AdsDB(settings.db_path)
    if action == "init":
        db.init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    if action == "seed":
        db.init()
        seeded = db.seed_demo(user_id=user_id)
        typer.echo(f"OK db seeded demo integrations: {json_dumps(seeded)}")
        return
    raise typer.BadParameter("action must be one of: init, seed")


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    run_web(settings)


@app.command("worker")
def worker_cmd() -> None:
    settings = Settings.load()
    run_worker(settings)


@app.command("tick")
def tick_cmd() -> None:
    settings = Settings.load()
    typer.echo(json_dumps(run_tick(settings)))


@app.command("sync")
def sync_cmd(
    user_id: str | None = typer.Option(None, help="Run one provider sync now for this user (skips schedules)."),
    provider: str | None = typer.Option(None, help="meta|google (with --user-id)."),
    sync_type: str = typer.Option("full", help="campaigns|metrics|full (with --user-id)."),
) -> None:
    """
    Run every due schedule once, or one integration directly when --user-id is given.
    """
    settings = Settings.load()
    repo = _repo(settings)

    if not user_id:
        try:
            report = build_scheduler(settings, repo).run_due_schedules_sync(utc_now())
        except SchedulerError as e:
            typer.echo(f"ERROR: {e}")
            raise typer.Exit(code=2) from e
        typer.echo(json_dumps({"success": True, **report.to_dict()}))
        return

    p = (provider or "").strip().lower()
    operation = OPERATIONS.get((p, sync_type))
    if operation is None:
        typer.echo(f"ERROR: unsupported provider/sync type: {p}/{sync_type}")
        raise typer.Exit(code=2)
    integration = repo.get_active_integration(user_id=user_id, provider=p)
    if integration is None:
        typer.echo(f"ERROR: no active {p} integration for user {user_id}")
        raise typer.Exit(code=2)

    adapter = build_adapter(
        p,
        integration_id=str(integration["id"]),
        user_id=user_id,
        config_json=integration.get("config_json"),
        repo=repo,
        demo_mode=settings.demo_mode,
    )
    try:
        result = asyncio.run(getattr(adapter, operation)(str(integration["id"])))
    except Exception as e:  # noqa: BLE001
        typer.echo(f"ERROR: {type(e).__name__}: {e}")
        raise typer.Exit(code=2) from e
    typer.echo(json_dumps({"operation": operation, **result.to_dict()}))
    if result.error:
        raise typer.Exit(code=2)


@app.command("alerts")
def alerts_cmd(
    day: str | None = typer.Option(None, help="YYYY-MM-DD. Defaults to today in ADSYNC_TIMEZONE."),
) -> None:
    settings = Settings.load()
    repo = _repo(settings)
    d = date.fromisoformat(day) if day else None
    report = build_evaluator(settings, repo).evaluate_sync(utc_now(), d)
    typer.echo(json_dumps(report.to_dict()))


@app.command("report")
def report_cmd(
    days: int = typer.Option(7, help="Window size ending at --until."),
    until: str | None = typer.Option(None, help="YYYY-MM-DD. Defaults to today in ADSYNC_TIMEZONE."),
    provider: str | None = typer.Option(None),
    account_id: str | None = typer.Option(None),
    campaign_id: str | None = typer.Option(None),
    status: str | None = typer.Option(None, help="Campaign status, or WITH_SPEND."),
    breakdown: str | None = typer.Option(None, help="age|gender|device|platform|region"),
    by: str | None = typer.Option(None, help="provider|campaign|day"),
) -> None:
    settings = Settings.load()
    repo = _repo(settings)
    end = date.fromisoformat(until) if until else local_date(utc_now(), settings.timezone)
    try:
        scope = AggregateScope(
            date_from=(end - timedelta(days=max(1, days) - 1)).isoformat(),
            date_to=end.isoformat(),
            provider=provider,
            account_id=account_id,
            campaign_id=campaign_id,
            status=status,
            breakdown=breakdown,
        )
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e

    agg = Aggregator(repo)
    if by == "provider":
        out: object = [m.to_dict() for m in agg.by_provider(scope)]
    elif by == "campaign":
        out = [m.to_dict() for m in agg.by_campaign(scope)]
    elif by == "day":
        out = [m.to_dict() for m in agg.timeline(scope)]
    elif by:
        raise typer.BadParameter("by must be one of: provider, campaign, day")
    else:
        out = agg.aggregate(scope).to_dict()
    typer.echo(json_dumps(out))


@integration_app.command("add")
def integration_add_cmd(
    user_id: str = typer.Option(...),
    provider: str = typer.Option(..., help="meta|google"),
    config: str = typer.Option("{}", help="JSON config, e.g. ad_account_id / customer_id."),
    credentials_ref: str | None = typer.Option(None),
) -> None:
    p = provider.strip().lower()
    if p not in {"meta", "google"}:
        raise typer.BadParameter("provider must be one of: meta, google")
    try:
        cfg = json.loads(config or "{}")
    except ValueError as e:
        raise typer.BadParameter(f"invalid json: {e}") from e
    repo = _repo(Settings.load())
    iid = repo.create_integration(user_id=user_id, provider=p, config=cfg, credentials_ref=credentials_ref)
    typer.echo(f"OK integration {iid}")


@integration_app.command("status")
def integration_status_cmd(
    integration_id: str = typer.Argument(...),
    status: str = typer.Argument(..., help="active|revoked|error"),
) -> None:
    if status not in {"active", "revoked", "error"}:
        raise typer.BadParameter("status must be one of: active, revoked, error")
    repo = _repo(Settings.load())
    repo.set_integration_status(integration_id, status)
    typer.echo(f"OK integration {integration_id} -> {status}")


@schedule_app.command("add")
def schedule_add_cmd(
    user_id: str = typer.Option(...),
    provider: str = typer.Option(..., help="meta|google"),
    sync_type: str = typer.Option("full", help="campaigns|metrics|full"),
    frequency: str = typer.Option("daily", help="hourly|daily|weekly"),
) -> None:
    p = provider.strip().lower()
    if (p, sync_type) not in OPERATIONS:
        raise typer.BadParameter(f"unsupported provider/sync type: {p}/{sync_type}")
    if frequency not in FREQUENCY_INTERVALS:
        raise typer.BadParameter("frequency must be one of: hourly, daily, weekly")
    repo = _repo(Settings.load())
    sid = repo.create_schedule(user_id=user_id, provider=p, sync_type=sync_type, frequency=frequency)
    typer.echo(f"OK schedule {sid}")


@schedule_app.command("list")
def schedule_list_cmd(user_id: str | None = typer.Option(None)) -> None:
    repo = _repo(Settings.load())
    typer.echo(json_dumps(repo.list_schedules(user_id=user_id)))


@schedule_app.command("disable")
def schedule_disable_cmd(schedule_id: str = typer.Argument(...)) -> None:
    repo = _repo(Settings.load())
    repo.set_schedule_active(schedule_id, False)
    typer.echo(f"OK schedule {schedule_id} disabled")


@rule_app.command("add")
def rule_add_cmd(
    user_id: str = typer.Option(...),
    name: str = typer.Option(...),
    metric_type: str = typer.Option(..., help="daily_spend|monthly_spend|cpc|ctr|cpm|budget_utilization"),
    condition: str = typer.Option("greater_than", help="greater_than|less_than"),
    threshold: float = typer.Option(...),
    provider: str | None = typer.Option(None),
    account_id: str | None = typer.Option(None),
    campaign_id: str | None = typer.Option(None),
    send_email: bool = typer.Option(False),
) -> None:
    try:
        validate_rule(metric_type, condition, threshold, campaign_id)
    except AlertRuleError as e:
        raise typer.BadParameter(str(e)) from e
    repo = _repo(Settings.load())
    rid = repo.create_alert_rule(
        user_id=user_id,
        name=name,
        metric_type=metric_type,
        condition=condition,
        threshold=threshold,
        provider=provider,
        account_id=account_id,
        campaign_id=campaign_id,
        send_email=send_email,
    )
    typer.echo(f"OK rule {rid}")


@rule_app.command("disable")
def rule_disable_cmd(rule_id: str = typer.Argument(...)) -> None:
    # Any open trigger is resolved at the next alert evaluation.
    repo = _repo(Settings.load())
    repo.set_alert_rule_active(rule_id, False)
    typer.echo(f"OK rule {rule_id} disabled")


@rule_app.command("enable")
def rule_enable_cmd(rule_id: str = typer.Argument(...)) -> None:
    repo = _repo(Settings.load())
    repo.set_alert_rule_active(rule_id, True)
    typer.echo(f"OK rule {rule_id} enabled")


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2)
