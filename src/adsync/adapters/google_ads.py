from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import timedelta
from typing import Any

from adsync.adapters.base import (
    AdapterContext,
    AdapterError,
    SyncAllResult,
    SyncCampaignsResult,
    SyncMetricsResult,
    to_float,
)
from adsync.util import utc_now

logger = logging.getLogger(__name__)


def _normalize_customer_id(raw: str) -> str:
    # Google Ads customer id is digits only (UI shows hyphens).
    return re.sub(r"\D+", "", str(raw or ""))


def _micros(v: Any) -> float:
    return to_float(v) / 1_000_000.0


def _enum_name(v: Any) -> str | None:
    name = getattr(v, "name", None)
    raw = str(name if name is not None else (v or "")).strip()
    return raw or None


class GoogleSyncAdapter:
    """
    Google Ads adapter.

    Uses GAQL via the official `google-ads` client. The client is blocking, so every
    query runs in a worker thread. Metrics are stored at campaign level.
    """

    def __init__(self, ctx: AdapterContext, repo, *, client=None):
        self.ctx = ctx
        self.repo = repo
        self._client = client

    def _google_client(self):
        if self._client is not None:
            return self._client
        try:
            from google.ads.googleads.client import GoogleAdsClient  # type: ignore
        except Exception as e:  # noqa: BLE001
            raise AdapterError("Missing dependency: google-ads") from e

        cfg: dict[str, Any] = {
            "developer_token": (os.getenv("GOOGLE_ADS_DEVELOPER_TOKEN") or "").strip(),
            "client_id": (os.getenv("GOOGLE_ADS_CLIENT_ID") or "").strip(),
            "client_secret": (os.getenv("GOOGLE_ADS_CLIENT_SECRET") or "").strip(),
            "refresh_token": (os.getenv("GOOGLE_ADS_REFRESH_TOKEN") or "").strip(),
            "use_proto_plus": True,
        }
        login_customer_id = _normalize_customer_id(os.getenv("GOOGLE_ADS_LOGIN_CUSTOMER_ID") or "")
        if login_customer_id:
            cfg["login_customer_id"] = login_customer_id
        self._client = GoogleAdsClient.load_from_dict(cfg)
        return self._client

    def _customer_id(self) -> str:
        raw = str(self.ctx.config.get("customer_id") or "").strip()
        if not raw:
            raw = (os.getenv("GOOGLE_ADS_CUSTOMER_ID") or "").strip()
        return _normalize_customer_id(raw)

    def _lookback_days(self) -> int:
        try:
            return max(1, int(self.ctx.config.get("lookback_days", 30)))
        except (TypeError, ValueError):
            return 30

    def _stream(self, customer_id: str, query: str):
        ga_service = self._google_client().get_service("GoogleAdsService")
        for batch in ga_service.search_stream(customer_id=customer_id, query=query):
            for row in batch.results:
                yield row

    async def sync_campaigns(self, integration_id: str) -> SyncCampaignsResult:
        customer_id = self._customer_id()
        if not customer_id:
            return SyncCampaignsResult(error="Missing GOOGLE_ADS_CUSTOMER_ID (or integration config customer_id)")
        campaigns = await asyncio.to_thread(self._sync_campaigns_api, integration_id, customer_id)
        return SyncCampaignsResult(campaigns_synced=campaigns, accounts_synced=1)

    async def sync_metrics(self, integration_id: str) -> SyncMetricsResult:
        customer_id = self._customer_id()
        if not customer_id:
            return SyncMetricsResult(error="Missing GOOGLE_ADS_CUSTOMER_ID (or integration config customer_id)")
        metrics, breakdowns = await asyncio.to_thread(self._sync_metrics_api, customer_id)
        return SyncMetricsResult(metrics_synced=metrics, breakdowns_synced=breakdowns)

    async def sync_all(self, integration_id: str) -> SyncAllResult:
        camps = await self.sync_campaigns(integration_id)
        if camps.error:
            return SyncAllResult(error=camps.error)
        mets = await self.sync_metrics(integration_id)
        return SyncAllResult(
            campaigns_synced=camps.campaigns_synced,
            metrics_synced=mets.metrics_synced,
            breakdowns_synced=mets.breakdowns_synced,
            error=mets.error,
        )

    def _sync_campaigns_api(self, integration_id: str, customer_id: str) -> int:
        q_customer = """
        SELECT
          customer.id,
          customer.descriptive_name,
          customer.currency_code,
          customer.time_zone
        FROM customer
        LIMIT 1
        """
        name = currency = tz = None
        for row in self._stream(customer_id, q_customer):
            name = str(getattr(row.customer, "descriptive_name", "") or "") or None
            currency = str(getattr(row.customer, "currency_code", "") or "") or None
            tz = str(getattr(row.customer, "time_zone", "") or "") or None
        self.repo.upsert_ad_account(
            integration_id=integration_id,
            provider=self.ctx.provider,
            account_id=customer_id,
            name=name or f"Google Ads {customer_id}",
            currency=currency,
            timezone=tz,
        )

        q_campaigns = """
        SELECT
          campaign.id,
          campaign.name,
          campaign.status,
          campaign_budget.amount_micros
        FROM campaign
        WHERE campaign.status != 'REMOVED'
        """
        n = 0
        for row in self._stream(customer_id, q_campaigns):
            cid = str(getattr(row.campaign, "id", "") or "").strip()
            if not cid:
                continue
            budget_micros = getattr(getattr(row, "campaign_budget", None), "amount_micros", None)
            self.repo.upsert_entity(
                provider=self.ctx.provider,
                entity_type="campaign",
                entity_id=cid,
                account_id=customer_id,
                parent_type=None,
                parent_id=None,
                campaign_id=cid,
                name=str(getattr(row.campaign, "name", "") or "") or None,
                status=_enum_name(getattr(row.campaign, "status", None)),
                daily_budget=_micros(budget_micros) if budget_micros else None,
                meta_json={"source": "google_ads_api"},
            )
            n += 1
        return n

    def _sync_metrics_api(self, customer_id: str) -> tuple[int, int]:
        today = utc_now().date()
        d0 = (today - timedelta(days=self._lookback_days())).isoformat()
        d1 = today.isoformat()

        q = f"""
        SELECT
          segments.date,
          campaign.id,
          metrics.impressions,
          metrics.clicks,
          metrics.cost_micros,
          metrics.conversions
        FROM campaign
        WHERE segments.date BETWEEN '{d0}' AND '{d1}'
          AND campaign.status != 'REMOVED'
        """
        metrics = 0
        for row in self._stream(customer_id, q):
            day = str(getattr(row.segments, "date", "") or "")
            cid = str(getattr(row.campaign, "id", "") or "").strip()
            if not day or not cid:
                continue
            conversions = to_float(getattr(row.metrics, "conversions", 0))
            self.repo.upsert_metric_daily(
                provider=self.ctx.provider,
                entity_type="campaign",
                entity_id=cid,
                day=day,
                account_id=customer_id,
                campaign_id=cid,
                impressions=int(getattr(row.metrics, "impressions", 0) or 0),
                clicks=int(getattr(row.metrics, "clicks", 0) or 0),
                spend=_micros(getattr(row.metrics, "cost_micros", 0)),
                conversions=conversions,
                results=conversions,
                messages=0.0,
                metrics_json={"source": "google_ads_api"},
            )
            metrics += 1

        q_device = f"""
        SELECT
          segments.date,
          segments.device,
          campaign.id,
          metrics.impressions,
          metrics.clicks,
          metrics.cost_micros,
          metrics.conversions
        FROM campaign
        WHERE segments.date BETWEEN '{d0}' AND '{d1}'
          AND campaign.status != 'REMOVED'
        """
        breakdowns = 0
        for row in self._stream(customer_id, q_device):
            day = str(getattr(row.segments, "date", "") or "")
            cid = str(getattr(row.campaign, "id", "") or "").strip()
            if not day or not cid:
                continue
            conversions = to_float(getattr(row.metrics, "conversions", 0))
            self.repo.upsert_breakdown(
                provider=self.ctx.provider,
                campaign_id=cid,
                day=day,
                breakdown_type="device",
                breakdown_value=(_enum_name(getattr(row.segments, "device", None)) or "unknown").lower(),
                account_id=customer_id,
                impressions=int(getattr(row.metrics, "impressions", 0) or 0),
                clicks=int(getattr(row.metrics, "clicks", 0) or 0),
                spend=_micros(getattr(row.metrics, "cost_micros", 0)),
                conversions=conversions,
                results=conversions,
            )
            breakdowns += 1
        return metrics, breakdowns
