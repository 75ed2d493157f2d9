from __future__ import annotations

from pathlib import Path

import pytest

from adsync.aggregator import AggregatedMetric, AggregateScope, Aggregator, fold, group_fold
from adsync.db import AdsDB
from adsync.repo import Repo


def _repo(tmp_path: Path) -> Repo:
    db_path = tmp_path / "adsync.sqlite3"
    AdsDB(db_path).init()
    return Repo(db_path)


def _metric(
    repo: Repo,
    *,
    day: str,
    campaign_id: str,
    impressions: int,
    clicks: int,
    spend: float,
    provider: str = "meta",
    entity_id: str | None = None,
    account_id: str = "acc_1",
    integration_id: str = "int_1",
    results: float = 0.0,
    messages: float = 0.0,
) -> None:
    repo.upsert_metric_daily(
        provider=provider,
        entity_type="campaign",
        entity_id=entity_id or campaign_id,
        day=day,
        integration_id=integration_id,
        account_id=account_id,
        campaign_id=campaign_id,
        impressions=impressions,
        clicks=clicks,
        spend=spend,
        results=results,
        messages=messages,
    )


def _campaign(repo: Repo, campaign_id: str, status: str, provider: str = "meta") -> None:
    repo.upsert_entity(
        provider=provider,
        entity_type="campaign",
        entity_id=campaign_id,
        integration_id="int_1",
        account_id="acc_1",
        parent_type=None,
        parent_id=None,
        campaign_id=campaign_id,
        name=campaign_id,
        status=status,
    )


def test_fold_ratios_are_weighted_by_summed_counters() -> None:
    a = [{"impressions": 1000, "clicks": 10, "spend": 5.0, "results": 2, "messages": 1}]
    b = [{"impressions": 100, "clicks": 10, "spend": 15.0, "results": 0, "messages": 3}]

    m = fold(a + b)

    assert m.impressions == 1100
    assert m.clicks == 20
    assert m.ctr == pytest.approx(20 / 1100)
    assert m.ctr != pytest.approx((fold(a).ctr + fold(b).ctr) / 2)
    assert m.cpc == pytest.approx(20.0 / 20)
    assert m.cpm == pytest.approx(20.0 / 1100 * 1000)
    assert m.cost_per_result == pytest.approx(20.0 / 2)
    assert m.cost_per_message == pytest.approx(20.0 / 4)


def test_fold_of_no_rows_is_all_zero() -> None:
    m = fold([])
    assert m == AggregatedMetric()
    assert m.ctr == 0 and m.cpc == 0 and m.cpm == 0
    assert m.cost_per_result == 0 and m.cost_per_message == 0


def test_fold_zero_denominators_yield_zero_ratios() -> None:
    m = fold([{"impressions": 0, "clicks": 0, "spend": 42.0}])
    assert m.spend == 42.0
    assert m.ctr == 0
    assert m.cpc == 0
    assert m.cost_per_result == 0


def test_fold_treats_missing_and_malformed_fields_as_zero() -> None:
    rows = [
        {"impressions": "abc", "clicks": None, "spend": "12.5"},
        {"impressions": 200, "clicks": 4, "spend": float("nan")},
        {},
    ]
    m = fold(rows)
    assert m.impressions == 200
    assert m.clicks == 4
    assert m.spend == pytest.approx(12.5)
    assert m.ctr == pytest.approx(4 / 200)


def test_group_fold_sorts_by_impressions_and_keeps_encounter_order_on_ties() -> None:
    rows = [
        {"breakdown_value": "a", "impressions": 10, "clicks": 1},
        {"breakdown_value": "b", "impressions": 30, "clicks": 3},
        {"breakdown_value": "c", "impressions": 10, "clicks": 2},
        {"breakdown_value": "b", "impressions": 20, "clicks": 2},
        {"breakdown_value": None, "impressions": 1, "clicks": 0},
    ]
    groups = group_fold(rows, "breakdown_value")

    assert [g.key for g in groups] == ["b", "a", "c", "unknown"]
    assert groups[0].impressions == 50
    assert groups[0].ctr == pytest.approx(5 / 50)


def test_scope_rejects_inverted_range() -> None:
    with pytest.raises(ValueError):
        AggregateScope(date_from="2026-03-05", date_to="2026-03-01")


def test_aggregate_applies_date_and_provider_filters_before_folding(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _metric(repo, day="2026-03-01", campaign_id="c1", impressions=1000, clicks=10, spend=10.0)
    _metric(repo, day="2026-03-02", campaign_id="c1", impressions=500, clicks=20, spend=5.0)
    _metric(repo, day="2026-03-03", campaign_id="c1", impressions=9999, clicks=999, spend=99.0)
    _metric(repo, day="2026-03-01", campaign_id="g1", impressions=300, clicks=3, spend=30.0, provider="google")

    agg = Aggregator(repo)
    m = agg.aggregate(AggregateScope(date_from="2026-03-01", date_to="2026-03-02", provider="meta"))

    assert m.impressions == 1500
    assert m.clicks == 30
    assert m.spend == pytest.approx(15.0)
    assert m.ctr == pytest.approx(30 / 1500)


def test_aggregate_status_filter_and_with_spend(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _campaign(repo, "c_active", "ACTIVE")
    _campaign(repo, "c_paused", "PAUSED")
    _metric(repo, day="2026-03-01", campaign_id="c_active", impressions=100, clicks=5, spend=10.0)
    _metric(repo, day="2026-03-01", campaign_id="c_paused", impressions=50, clicks=1, spend=0.0)

    agg = Aggregator(repo)
    active = agg.aggregate(AggregateScope(date_from="2026-03-01", date_to="2026-03-01", status="active"))
    with_spend = agg.aggregate(AggregateScope(date_from="2026-03-01", date_to="2026-03-01", status="WITH_SPEND"))
    paused = agg.aggregate(AggregateScope(date_from="2026-03-01", date_to="2026-03-01", status="PAUSED"))

    assert active.impressions == 100
    assert with_spend.impressions == 100
    assert paused.impressions == 50


def test_aggregate_scopes_by_user_through_integrations(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    i1 = repo.create_integration(user_id="u1", provider="meta")
    i2 = repo.create_integration(user_id="u2", provider="meta")
    _metric(repo, day="2026-03-01", campaign_id="c1", impressions=100, clicks=1, spend=1.0, integration_id=i1)
    _metric(repo, day="2026-03-01", campaign_id="c2", impressions=200, clicks=2, spend=2.0, integration_id=i2)

    m = Aggregator(repo).aggregate(AggregateScope(date_from="2026-03-01", date_to="2026-03-01", user_id="u1"))
    assert m.impressions == 100


def test_breakdown_groups_and_needs_sync_signal(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    agg = Aggregator(repo)
    scope = AggregateScope(date_from="2026-03-01", date_to="2026-03-02", breakdown="age")

    empty = agg.aggregate(scope)
    assert empty.groups == []
    assert empty.needs_sync is False

    _metric(repo, day="2026-03-01", campaign_id="c1", impressions=100, clicks=5, spend=10.0)
    missing = agg.aggregate(scope)
    assert missing.groups == []
    assert missing.needs_sync is True

    for day, value, imps in (("2026-03-01", "18-24", 40), ("2026-03-01", "25-34", 60), ("2026-03-02", "18-24", 30)):
        repo.upsert_breakdown(
            provider="meta",
            campaign_id="c1",
            day=day,
            breakdown_type="age",
            breakdown_value=value,
            integration_id="int_1",
            account_id="acc_1",
            impressions=imps,
            clicks=imps // 10,
            spend=float(imps),
        )
    res = agg.aggregate(scope)
    assert res.needs_sync is False
    assert [g.key for g in res.groups] == ["18-24", "25-34"]
    assert res.groups[0].impressions == 70
    assert res.to_dict()["dimension"] == "age"


def test_by_provider_timeline_and_compare(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _metric(repo, day="2026-02-27", campaign_id="c1", impressions=100, clicks=2, spend=10.0)
    _metric(repo, day="2026-03-01", campaign_id="c1", impressions=400, clicks=8, spend=40.0)
    _metric(repo, day="2026-03-01", campaign_id="g1", impressions=100, clicks=1, spend=20.0, provider="google")

    agg = Aggregator(repo)
    scope = AggregateScope(date_from="2026-02-28", date_to="2026-03-01")

    providers = agg.by_provider(scope)
    assert [p.key for p in providers] == ["meta", "google"]

    days = agg.timeline(scope)
    assert [d.key for d in days] == ["2026-02-28", "2026-03-01"]
    assert days[0] == AggregatedMetric(key="2026-02-28")
    assert days[1].impressions == 500

    cmp = agg.compare(scope)
    assert cmp.previous.spend == pytest.approx(10.0)
    assert cmp.current.spend == pytest.approx(60.0)
    assert cmp.change()["spend"] == pytest.approx(500.0)


def test_by_campaign_groups_ad_rows_under_their_campaign(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    _metric(repo, day="2026-03-01", campaign_id="c1", entity_id="ad_1", impressions=100, clicks=1, spend=1.0)
    _metric(repo, day="2026-03-01", campaign_id="c1", entity_id="ad_2", impressions=300, clicks=3, spend=3.0)
    _metric(repo, day="2026-03-01", campaign_id="c2", entity_id="ad_3", impressions=200, clicks=2, spend=2.0)

    groups = Aggregator(repo).by_campaign(AggregateScope(date_from="2026-03-01", date_to="2026-03-01"))
    assert [(g.key, g.impressions) for g in groups] == [("c1", 400), ("c2", 200)]
