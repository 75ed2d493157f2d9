from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from adsync.aggregator import AggregateScope
from adsync.alerts import AlertEvaluator, AlertRuleError, is_breached, validate_rule
from adsync.db import AdsDB
from adsync.notify.telegram import LogNotifier, TelegramNotifier
from adsync.repo import Repo
from adsync.util import to_utc_iso

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "adsync.sqlite3"
    AdsDB(db_path).init()
    return Repo(db_path)


def _spend(repo: Repo, integration_id: str, day: str, spend: float, *, campaign_id: str = "c1", **counters) -> None:
    repo.upsert_metric_daily(
        provider="meta",
        entity_type="campaign",
        entity_id=campaign_id,
        day=day,
        integration_id=integration_id,
        account_id="acc_1",
        campaign_id=campaign_id,
        impressions=counters.get("impressions", 1000),
        clicks=counters.get("clicks", 10),
        spend=spend,
    )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def notify(self, user_id: str, alert_id: str, message: str) -> None:
        self.sent.append((user_id, alert_id, message))


class SlowNotifier:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.started = 0

    async def notify(self, user_id: str, alert_id: str, message: str) -> None:
        self.started += 1
        await asyncio.sleep(self.delay)


class FailingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    async def notify(self, user_id: str, alert_id: str, message: str) -> None:
        self.calls += 1
        raise RuntimeError("smtp down")


def test_breach_comparison_is_strict() -> None:
    assert is_breached("greater_than", 100.01, 100)
    assert not is_breached("greater_than", 100, 100)
    assert is_breached("less_than", 99.9, 100)
    assert not is_breached("less_than", 100, 100)
    with pytest.raises(AlertRuleError):
        is_breached("equals", 1, 1)


def test_trigger_lifecycle_opens_refreshes_and_resolves(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    notifier = RecordingNotifier()
    ev = AlertEvaluator(repo, notifier=notifier)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend cap", metric_type="daily_spend", condition="greater_than", threshold=100
    )
    rule = repo.get_alert_rule(rid)

    values = [99.0, 101.0, 102.0, 99.0, 103.0]
    times = [NOW + timedelta(hours=i) for i in range(len(values))]

    async def run():
        return [await ev.evaluate_rule(rule, v, t) for v, t in zip(values, times)]

    outcomes = asyncio.run(run())

    assert [o.outcome for o in outcomes] == ["ok", "triggered", "updated", "resolved", "triggered"]
    assert outcomes[1].trigger_id == outcomes[2].trigger_id == outcomes[3].trigger_id
    assert outcomes[4].trigger_id != outcomes[1].trigger_id

    triggers = repo.list_triggers(rule_id=rid)
    assert len(triggers) == 2
    first, second = triggers
    assert first["triggered_at"] == to_utc_iso(times[1])
    assert first["resolved_at"] == to_utc_iso(times[3])
    assert first["current_amount"] == 102.0
    assert second["triggered_at"] == to_utc_iso(times[4])
    assert second["resolved_at"] is None
    assert second["current_amount"] == 103.0

    assert len(notifier.sent) == 2
    assert notifier.sent[0][:2] == ("u1", rid)
    assert repo.get_alert_rule(rid)["last_triggered_at"] == to_utc_iso(times[4])


def test_daily_spend_reads_the_evaluated_day_only(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    _spend(repo, iid, "2026-03-01", 100.0)
    _spend(repo, iid, "2026-03-02", 150.0)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=120
    )
    ev = AlertEvaluator(repo)

    day1 = ev.evaluate_sync(NOW, date(2026, 3, 1))
    assert [r.outcome for r in day1.results] == ["ok"]
    assert day1.results[0].value == 100.0
    assert repo.list_triggers(rule_id=rid) == []

    day2 = ev.evaluate_sync(NOW, date(2026, 3, 2))
    assert [r.outcome for r in day2.results] == ["triggered"]
    assert repo.get_open_trigger(rid)["current_amount"] == 150.0


def test_range_summed_value_is_the_callers_choice(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    _spend(repo, iid, "2026-03-01", 100.0)
    _spend(repo, iid, "2026-03-02", 150.0)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=120
    )
    ev = AlertEvaluator(repo)

    total = ev.aggregator.aggregate(AggregateScope(date_from="2026-03-01", date_to="2026-03-02", user_id="u1"))
    outcome = asyncio.run(ev.evaluate_rule(repo.get_alert_rule(rid), total.spend, NOW))

    assert outcome.outcome == "triggered"
    assert len(repo.list_triggers(rule_id=rid)) == 1
    assert repo.get_open_trigger(rid)["current_amount"] == 250.0


def test_monthly_spend_is_month_to_date(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    _spend(repo, iid, "2026-02-28", 1000.0)
    _spend(repo, iid, "2026-03-01", 40.0)
    _spend(repo, iid, "2026-03-02", 70.0)
    repo.create_alert_rule(
        user_id="u1", name="month", metric_type="monthly_spend", condition="greater_than", threshold=100
    )

    report = AlertEvaluator(repo).evaluate_sync(NOW, date(2026, 3, 2))

    assert report.results[0].outcome == "triggered"
    assert report.results[0].value == pytest.approx(110.0)


def test_rule_scope_is_limited_to_its_owner(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    mine = repo.create_integration(user_id="u1", provider="meta")
    theirs = repo.create_integration(user_id="u2", provider="meta")
    _spend(repo, mine, "2026-03-02", 10.0)
    _spend(repo, theirs, "2026-03-02", 500.0, campaign_id="c9")
    repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=100
    )

    report = AlertEvaluator(repo).evaluate_sync(NOW, date(2026, 3, 2))

    assert report.results[0].outcome == "ok"
    assert report.results[0].value == 10.0


def test_ctr_threshold_is_a_percentage(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    _spend(repo, iid, "2026-03-02", 10.0, impressions=1000, clicks=5)
    repo.create_alert_rule(user_id="u1", name="ctr", metric_type="ctr", condition="less_than", threshold=1.0)

    report = AlertEvaluator(repo).evaluate_sync(NOW, date(2026, 3, 2))

    assert report.results[0].value == pytest.approx(0.5)
    assert report.results[0].outcome == "triggered"


def test_budget_utilization_uses_campaign_daily_budget(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    repo.upsert_entity(
        provider="meta",
        entity_type="campaign",
        entity_id="c1",
        integration_id=iid,
        account_id="acc_1",
        parent_type=None,
        parent_id=None,
        campaign_id="c1",
        name="Camp",
        status="ACTIVE",
        daily_budget=200.0,
    )
    _spend(repo, iid, "2026-03-02", 180.0)
    repo.create_alert_rule(
        user_id="u1",
        name="pace",
        metric_type="budget_utilization",
        condition="greater_than",
        threshold=85,
        campaign_id="c1",
    )

    report = AlertEvaluator(repo).evaluate_sync(NOW, date(2026, 3, 2))

    assert report.results[0].value == pytest.approx(90.0)
    assert report.results[0].outcome == "triggered"


def test_unevaluable_rule_is_reported_and_others_still_run(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    _spend(repo, iid, "2026-03-02", 300.0)
    bad = repo.create_alert_rule(
        user_id="u1", name="roas", metric_type="roas", condition="greater_than", threshold=1
    )
    orphan = repo.create_alert_rule(
        user_id="u1",
        name="pace",
        metric_type="budget_utilization",
        condition="greater_than",
        threshold=50,
        campaign_id="missing",
    )
    good = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=100
    )

    report = AlertEvaluator(repo).evaluate_sync(NOW, date(2026, 3, 2))
    by_id = {r.rule_id: r for r in report.results}

    assert by_id[bad].outcome == "error"
    assert by_id[orphan].outcome == "error"
    assert by_id[good].outcome == "triggered"
    assert report.to_dict()["triggered"] == 1


def test_inactive_rule_is_not_evaluated(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="less_than", threshold=100, is_active=False
    )

    report = AlertEvaluator(repo).evaluate_sync(NOW, date(2026, 3, 2))

    assert [(r.rule_id, r.outcome) for r in report.results] == [(rid, "inactive")]
    assert repo.list_triggers(rule_id=rid) == []


def test_renotify_sends_on_every_breached_evaluation(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    notifier = RecordingNotifier()
    ev = AlertEvaluator(repo, notifier=notifier, renotify=True)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=1
    )
    rule = repo.get_alert_rule(rid)

    async def run():
        for i in range(3):
            await ev.evaluate_rule(rule, 5.0 + i, NOW + timedelta(minutes=i))

    asyncio.run(run())

    assert len(notifier.sent) == 3
    assert len(repo.list_triggers(rule_id=rid)) == 1


def test_notifier_failure_keeps_the_trigger(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    notifier = FailingNotifier()
    ev = AlertEvaluator(repo, notifier=notifier)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=1
    )

    outcome = asyncio.run(ev.evaluate_rule(repo.get_alert_rule(rid), 5.0, NOW))

    assert outcome.outcome == "triggered"
    assert notifier.calls == 1
    assert repo.get_open_trigger(rid) is not None


def test_lost_insert_race_is_treated_as_rebreach(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    notifier = RecordingNotifier()
    ev = AlertEvaluator(repo, notifier=notifier)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=1
    )
    winner = repo.open_trigger(rule_id=rid, current_amount=4.0, threshold=1, triggered_at=to_utc_iso(NOW))

    # Simulate reading "no open trigger" just before the other evaluator's insert landed.
    real_get = repo.get_open_trigger
    seen: list[int] = []

    def stale_get(rule_id: str):
        seen.append(1)
        return None if len(seen) == 1 else real_get(rule_id)

    repo.get_open_trigger = stale_get  # type: ignore[method-assign]

    outcome = asyncio.run(ev.evaluate_rule(repo.get_alert_rule(rid), 6.0, NOW + timedelta(minutes=1)))

    assert outcome.outcome == "updated"
    assert outcome.trigger_id == winner
    assert notifier.sent == []
    assert len(repo.list_triggers(rule_id=rid)) == 1
    assert real_get(rid)["current_amount"] == 6.0


def test_validate_rule_rejects_bad_input() -> None:
    validate_rule("daily_spend", "greater_than", 10)
    with pytest.raises(AlertRuleError):
        validate_rule("roas", "greater_than", 10)
    with pytest.raises(AlertRuleError):
        validate_rule("cpc", "between", 10)
    with pytest.raises(AlertRuleError):
        validate_rule("cpc", "less_than", -1)
    with pytest.raises(AlertRuleError):
        validate_rule("budget_utilization", "greater_than", 80)


def test_telegram_notifier_posts_message() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True, "result": {}})

    notifier = TelegramNotifier("TOKEN", 42, transport=httpx.MockTransport(handler))
    asyncio.run(notifier.notify("u1", "alr_1", "spend: daily_spend 120.00 > 100.00"))

    assert len(seen) == 1
    assert seen[0].url.path == "/botTOKEN/sendMessage"
    body = json.loads(seen[0].content)
    assert body["chat_id"] == 42
    assert "daily_spend 120.00" in body["text"]
    assert "alr_1" in body["text"]


def test_disabling_a_rule_resolves_its_open_trigger(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    _spend(repo, iid, "2026-03-02", 300.0)
    rid = repo.create_alert_rule(
        user_id="u1", name="spend", metric_type="daily_spend", condition="greater_than", threshold=100
    )
    ev = AlertEvaluator(repo)

    first = ev.evaluate_sync(NOW, date(2026, 3, 2))
    assert [r.outcome for r in first.results] == ["triggered"]
    opened = first.results[0].trigger_id

    repo.set_alert_rule_active(rid, False)
    later = NOW + timedelta(hours=1)
    disabled = ev.evaluate_sync(later, date(2026, 3, 2))

    assert [(r.outcome, r.trigger_id) for r in disabled.results] == [("inactive", opened)]
    assert repo.get_open_trigger(rid) is None
    assert repo.list_triggers(rule_id=rid)[0]["resolved_at"] == to_utc_iso(later)

    # Nothing left to resolve on the next pass.
    again = ev.evaluate_sync(later, date(2026, 3, 2))
    assert [(r.outcome, r.trigger_id) for r in again.results] == [("inactive", None)]

    repo.set_alert_rule_active(rid, True)
    enabled = ev.evaluate_sync(NOW + timedelta(hours=2), date(2026, 3, 2))

    assert [r.outcome for r in enabled.results] == ["triggered"]
    assert len(repo.list_triggers(rule_id=rid)) == 2


def test_slow_notifier_does_not_hold_up_other_rules(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    iid = repo.create_integration(user_id="u1", provider="meta")
    _spend(repo, iid, "2026-03-02", 300.0)
    for name in ("cap a", "cap b"):
        repo.create_alert_rule(
            user_id="u1", name=name, metric_type="daily_spend", condition="greater_than", threshold=100
        )
    notifier = SlowNotifier(delay=1.0)
    ev = AlertEvaluator(repo, notifier=notifier, notify_timeout=0.05)

    async def timed():
        started = time.monotonic()
        report = await ev.evaluate(NOW, date(2026, 3, 2))
        return report, time.monotonic() - started

    report, elapsed = asyncio.run(timed())

    assert [r.outcome for r in report.results] == ["triggered", "triggered"]
    assert notifier.started == 2
    assert elapsed < 0.5
    assert all(repo.get_open_trigger(r.rule_id) is not None for r in report.results)


def test_log_notifier_writes_a_warning(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="adsync.notify.telegram")

    asyncio.run(LogNotifier().notify("u1", "alr_1", "spend: daily_spend 120.00 > 100.00"))

    assert "ALERT user=u1 rule=alr_1" in caplog.text
