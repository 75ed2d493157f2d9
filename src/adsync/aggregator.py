from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Mapping

from adsync.db import date_span


COUNTERS = ("impressions", "clicks", "spend", "conversions", "results", "messages")

BREAKDOWN_DIMENSIONS = ("age", "gender", "device", "platform", "region")


def _num(v: Any) -> float:
    """Numeric field of a raw row; missing or malformed values count as 0."""
    if v is None or isinstance(v, bool):
        return 0.0
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.0
    return f if math.isfinite(f) else 0.0


def _ratio(num: float, den: float) -> float:
    return num / den if den else 0.0


@dataclass(frozen=True)
class AggregatedMetric:
    key: str | None = None
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    conversions: float = 0.0
    results: float = 0.0
    messages: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    cost_per_result: float = 0.0
    cost_per_message: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "impressions": self.impressions,
            "clicks": self.clicks,
            "spend": round(self.spend, 2),
            "conversions": self.conversions,
            "results": self.results,
            "messages": self.messages,
            "ctr": self.ctr,
            "cpc": self.cpc,
            "cpm": self.cpm,
            "cost_per_result": self.cost_per_result,
            "cost_per_message": self.cost_per_message,
        }


@dataclass
class _Acc:
    impressions: float = 0.0
    clicks: float = 0.0
    spend: float = 0.0
    conversions: float = 0.0
    results: float = 0.0
    messages: float = 0.0

    def add(self, row: Mapping[str, Any]) -> None:
        self.impressions += _num(row.get("impressions"))
        self.clicks += _num(row.get("clicks"))
        self.spend += _num(row.get("spend"))
        self.conversions += _num(row.get("conversions"))
        self.results += _num(row.get("results"))
        self.messages += _num(row.get("messages"))

    def finish(self, key: str | None = None) -> AggregatedMetric:
        # Ratios come from the summed counters, never from per-row ratios.
        return AggregatedMetric(
            key=key,
            impressions=int(self.impressions),
            clicks=int(self.clicks),
            spend=self.spend,
            conversions=self.conversions,
            results=self.results,
            messages=self.messages,
            ctr=_ratio(self.clicks, self.impressions),
            cpc=_ratio(self.spend, self.clicks),
            cpm=_ratio(self.spend, self.impressions) * 1000.0,
            cost_per_result=_ratio(self.spend, self.results),
            cost_per_message=_ratio(self.spend, self.messages),
        )


def fold(rows: Iterable[Mapping[str, Any]]) -> AggregatedMetric:
    acc = _Acc()
    for row in rows:
        acc.add(row)
    return acc.finish()


def group_fold(
    rows: Iterable[Mapping[str, Any]],
    key: str | Callable[[Mapping[str, Any]], Any],
) -> list[AggregatedMetric]:
    """
    Fold rows per group key. Output is sorted by impressions descending;
    groups with equal impressions keep their first-seen order.
    """
    key_fn = key if callable(key) else (lambda r: r.get(key))
    groups: dict[str, _Acc] = {}
    for row in rows:
        k = key_fn(row)
        k = "unknown" if k is None or k == "" else str(k)
        acc = groups.get(k)
        if acc is None:
            acc = groups[k] = _Acc()
        acc.add(row)
    out = [acc.finish(k) for k, acc in groups.items()]
    out.sort(key=lambda m: m.impressions, reverse=True)
    return out


@dataclass(frozen=True)
class AggregateScope:
    date_from: str
    date_to: str
    account_id: str | None = None
    provider: str | None = None
    status: str | None = None
    campaign_id: str | None = None
    breakdown: str | None = None
    user_id: str | None = None
    level: str | None = None

    def __post_init__(self) -> None:
        d0 = date.fromisoformat(self.date_from)
        d1 = date.fromisoformat(self.date_to)
        if d1 < d0:
            raise ValueError(f"date_from {self.date_from} is after date_to {self.date_to}")

    def store_filters(self) -> dict[str, Any]:
        return {
            "date_from": self.date_from,
            "date_to": self.date_to,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "provider": self.provider,
            "campaign_id": self.campaign_id,
            "status": self.status,
            "level": self.level,
        }

    def previous_period(self) -> "AggregateScope":
        d0 = date.fromisoformat(self.date_from)
        d1 = date.fromisoformat(self.date_to)
        span = (d1 - d0).days + 1
        return replace(
            self,
            date_from=(d0 - timedelta(days=span)).isoformat(),
            date_to=(d0 - timedelta(days=1)).isoformat(),
        )


@dataclass(frozen=True)
class BreakdownResult:
    dimension: str
    groups: list[AggregatedMetric] = field(default_factory=list)
    needs_sync: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimension": self.dimension,
            "groups": [g.to_dict() for g in self.groups],
            "needs_sync": self.needs_sync,
        }


@dataclass(frozen=True)
class Comparison:
    current: AggregatedMetric
    previous: AggregatedMetric

    def change(self) -> dict[str, float]:
        out: dict[str, float] = {}
        for name in (*COUNTERS, "ctr", "cpc", "cpm", "cost_per_result", "cost_per_message"):
            cur = float(getattr(self.current, name))
            prev = float(getattr(self.previous, name))
            out[name] = round(_ratio(cur - prev, prev) * 100.0, 2)
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current.to_dict(),
            "previous": self.previous.to_dict(),
            "change_pct": self.change(),
        }


class Aggregator:
    """
    Read-side rollups over the metric store. Filters are pushed into the store
    query so folding always runs over the already-filtered row set.
    """

    def __init__(self, repo):
        self.repo = repo

    def _rows(self, scope: AggregateScope) -> list[dict[str, Any]]:
        return self.repo.list_metric_rows(**scope.store_filters())

    def aggregate(self, scope: AggregateScope) -> AggregatedMetric | BreakdownResult:
        if not scope.breakdown:
            return fold(self._rows(scope))

        dimension = scope.breakdown.strip().lower()
        rows = self.repo.list_breakdown_rows(breakdown_type=dimension, **scope.store_filters())
        needs_sync = False
        if not rows:
            needs_sync = self.repo.count_metric_rows(**scope.store_filters()) > 0
        return BreakdownResult(
            dimension=dimension,
            groups=group_fold(rows, "breakdown_value"),
            needs_sync=needs_sync,
        )

    def by_provider(self, scope: AggregateScope) -> list[AggregatedMetric]:
        return group_fold(self._rows(scope), "provider")

    def by_campaign(self, scope: AggregateScope) -> list[AggregatedMetric]:
        return group_fold(self._rows(scope), "campaign_id")

    def timeline(self, scope: AggregateScope) -> list[AggregatedMetric]:
        """One fold per date in the range, in date order; days without rows are zeroed."""
        by_day: dict[str, _Acc] = {d: _Acc() for d in date_span(scope.date_from, scope.date_to)}
        for row in self._rows(scope):
            acc = by_day.get(str(row.get("date")))
            if acc is not None:
                acc.add(row)
        return [acc.finish(d) for d, acc in by_day.items()]

    def compare(self, scope: AggregateScope) -> Comparison:
        return Comparison(
            current=fold(self._rows(scope)),
            previous=fold(self._rows(scope.previous_period())),
        )
