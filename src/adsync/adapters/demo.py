from __future__ import annotations

import asyncio
import random
from datetime import timedelta

from adsync.adapters.base import AdapterContext, SyncAllResult, SyncCampaignsResult, SyncMetricsResult
from adsync.util import utc_now

_CAMPAIGNS = (
    ("c1", "Prospecting", "ACTIVE", 300.0),
    ("c2", "Retargeting", "PAUSED", 150.0),
)

_BREAKDOWNS = {
    "meta": {
        "age": ("18-24", "25-34", "35-44"),
        "gender": ("female", "male"),
    },
    "google": {
        "device": ("mobile", "desktop"),
    },
}


class DemoSyncAdapter:
    """
    Generates fake data so the scheduler/worker/web flows can be validated without real API keys.
    Values are seeded per (integration, entity, day) so re-syncs overwrite with the same numbers.
    """

    def __init__(self, ctx: AdapterContext, repo):
        self.ctx = ctx
        self.repo = repo

    def _days(self) -> list[str]:
        try:
            n = max(1, int(self.ctx.config.get("demo_days", 14)))
        except (TypeError, ValueError):
            n = 14
        today = utc_now().date()
        return [(today - timedelta(days=i)).isoformat() for i in range(n - 1, -1, -1)]

    def _account_id(self) -> str:
        return f"{self.ctx.provider}_demo_account"

    def _campaign_id(self, suffix: str) -> str:
        return f"{self.ctx.provider}_demo_{suffix}"

    def _metric_level(self) -> str:
        return "ad" if self.ctx.provider == "meta" else "campaign"

    async def sync_campaigns(self, integration_id: str) -> SyncCampaignsResult:
        # Store writes are blocking sqlite calls; keep them off the event loop.
        return await asyncio.to_thread(self._write_campaigns, integration_id)

    async def sync_metrics(self, integration_id: str) -> SyncMetricsResult:
        metrics = 0
        breakdowns = 0
        for day in self._days():
            m, b = await asyncio.to_thread(self._write_day, integration_id, day)
            metrics += m
            breakdowns += b
        return SyncMetricsResult(metrics_synced=metrics, breakdowns_synced=breakdowns)

    def _write_campaigns(self, integration_id: str) -> SyncCampaignsResult:
        account_id = self._account_id()
        self.repo.upsert_ad_account(
            integration_id=integration_id,
            provider=self.ctx.provider,
            account_id=account_id,
            name=f"Demo {self.ctx.provider} account",
            currency="USD",
            timezone="UTC",
        )
        for suffix, name, status, budget in _CAMPAIGNS:
            cid = self._campaign_id(suffix)
            self.repo.upsert_entity(
                provider=self.ctx.provider,
                entity_type="campaign",
                entity_id=cid,
                account_id=account_id,
                parent_type=None,
                parent_id=None,
                campaign_id=cid,
                name=name,
                status=status,
                daily_budget=budget,
                meta_json={"demo": True},
            )
            if self._metric_level() == "ad":
                self.repo.upsert_entity(
                    provider=self.ctx.provider,
                    entity_type="ad",
                    entity_id=f"{cid}_ad1",
                    account_id=account_id,
                    parent_type="campaign",
                    parent_id=cid,
                    campaign_id=cid,
                    name=f"{name} ad",
                    status=status,
                    meta_json={"demo": True},
                )
        return SyncCampaignsResult(campaigns_synced=len(_CAMPAIGNS), accounts_synced=1)

    def _write_day(self, integration_id: str, day: str) -> tuple[int, int]:
        account_id = self._account_id()
        level = self._metric_level()
        metrics = 0
        breakdowns = 0
        for suffix, _, status, budget in _CAMPAIGNS:
            cid = self._campaign_id(suffix)
            rng = random.Random(f"{integration_id}:{cid}:{day}")
            spend = round(rng.uniform(0.2, 1.1) * budget, 2) if status == "ACTIVE" else 0.0
            impressions = int(spend * rng.uniform(60, 120))
            clicks = int(impressions * rng.uniform(0.005, 0.03))
            conversions = float(int(clicks * rng.uniform(0.02, 0.1)))
            messages = float(int(clicks * rng.uniform(0.0, 0.05))) if self.ctx.provider == "meta" else 0.0
            self.repo.upsert_metric_daily(
                provider=self.ctx.provider,
                entity_type=level,
                entity_id=f"{cid}_ad1" if level == "ad" else cid,
                day=day,
                account_id=account_id,
                campaign_id=cid,
                impressions=impressions,
                clicks=clicks,
                spend=spend,
                conversions=conversions,
                results=conversions or messages,
                messages=messages,
                metrics_json={"demo": True},
            )
            metrics += 1

            for dimension, values in _BREAKDOWNS.get(self.ctx.provider, {}).items():
                weights = [rng.uniform(0.5, 1.5) for _ in values]
                total = sum(weights)
                for value, w in zip(values, weights):
                    share = w / total
                    self.repo.upsert_breakdown(
                        provider=self.ctx.provider,
                        campaign_id=cid,
                        day=day,
                        breakdown_type=dimension,
                        breakdown_value=value,
                        account_id=account_id,
                        impressions=int(impressions * share),
                        clicks=int(clicks * share),
                        spend=round(spend * share, 2),
                        conversions=round(conversions * share, 2),
                    )
                    breakdowns += 1
        return metrics, breakdowns

    async def sync_all(self, integration_id: str) -> SyncAllResult:
        camps = await self.sync_campaigns(integration_id)
        mets = await self.sync_metrics(integration_id)
        return SyncAllResult(
            campaigns_synced=camps.campaigns_synced,
            metrics_synced=mets.metrics_synced,
            breakdowns_synced=mets.breakdowns_synced,
        )
