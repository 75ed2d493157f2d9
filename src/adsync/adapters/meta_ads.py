from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import os
import re
from datetime import timedelta
from typing import Any

import httpx

from adsync.adapters.base import (
    AdapterContext,
    AdapterError,
    SyncCampaignsResult,
    SyncMetricsResult,
    to_float,
    to_int,
)
from adsync.util import utc_now

logger = logging.getLogger(__name__)

BREAKDOWN_DIMENSIONS = ("age", "gender", "region")

_CONVERSION_MARKERS = ("purchase", "conversion", "lead", "complete_registration")
_MESSAGE_MARKERS = ("messaging", "contact")


def classify_actions(items: Any) -> tuple[float, float, float]:
    """
    Map a Graph API `actions` list to (conversions, messages, results).
    `results` falls back to conversions, then messages, when no result-type action is present.
    """
    conversions = 0.0
    messages = 0.0
    results = 0.0
    if not isinstance(items, list):
        return conversions, messages, results
    for it in items:
        if not isinstance(it, dict):
            continue
        t = str(it.get("action_type") or "").strip()
        if not t:
            continue
        v = float(to_int(it.get("value")))
        if any(m in t for m in _CONVERSION_MARKERS):
            conversions += v
        if any(m in t for m in _MESSAGE_MARKERS):
            messages += v
        if "lead" in t or "engagement" in t or t in {"link_click", "landing_page_view"}:
            results += v
    if results == 0:
        results = conversions if conversions > 0 else messages
    return conversions, messages, results


def _budget(raw: Any) -> float | None:
    # Graph API budgets are in minor currency units.
    if raw in (None, ""):
        return None
    return to_float(raw) / 100.0


class MetaSyncAdapter:
    """
    Meta Ads adapter (Graph API).

    Campaign sync walks accounts -> campaigns -> ad sets -> ads.
    Metric sync stores ad-level daily insights plus per-campaign breakdowns.
    """

    def __init__(self, ctx: AdapterContext, repo, *, transport: httpx.AsyncBaseTransport | None = None):
        self.ctx = ctx
        self.repo = repo
        self._transport = transport

    def _graph_base_url(self) -> str:
        return (os.getenv("META_GRAPH_BASE_URL") or "https://graph.facebook.com").strip().rstrip("/")

    def _graph_version(self) -> str:
        v = (os.getenv("META_GRAPH_API_VERSION") or "").strip()
        return v if v else "v21.0"

    def _access_token(self) -> str:
        token = str(self.ctx.config.get("access_token") or "").strip()
        return token or (os.getenv("META_ACCESS_TOKEN") or "").strip()

    def _appsecret_proof(self) -> str | None:
        app_secret = (os.getenv("META_APP_SECRET") or "").strip()
        token = self._access_token()
        if not app_secret or not token:
            return None
        return hmac.new(
            app_secret.encode("utf-8", errors="strict"),
            token.encode("utf-8", errors="strict"),
            hashlib.sha256,
        ).hexdigest()

    def _configured_account_id(self) -> str:
        raw = str(self.ctx.config.get("ad_account_id") or "").strip()
        if not raw:
            raw = (os.getenv("META_AD_ACCOUNT_ID") or "").strip()
        raw = raw.removeprefix("act_").strip()
        return re.sub(r"\D+", "", raw)

    def _lookback_days(self) -> int:
        try:
            return max(1, int(self.ctx.config.get("lookback_days", 30)))
        except (TypeError, ValueError):
            return 30

    async def _iter_graph_data(self, client: httpx.AsyncClient, *, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Return the full data list of a Graph API collection, following cursor pagination."""
        p = dict(params)
        p["access_token"] = self._access_token()
        proof = self._appsecret_proof()
        if proof:
            p["appsecret_proof"] = proof

        url: str | None = f"{self._graph_base_url()}/{self._graph_version()}/{path.lstrip('/')}"
        out: list[dict[str, Any]] = []
        next_params: dict[str, Any] | None = p
        while url:
            r = await client.get(url, params=next_params)
            try:
                obj = r.json()
            except ValueError as e:
                raise AdapterError(f"Meta Graph API non-JSON response: {r.status_code}") from e
            if isinstance(obj, dict) and obj.get("error"):
                err = obj.get("error") or {}
                msg = str(err.get("message") or "unknown error")
                code = err.get("code")
                raise AdapterError(f"Meta Graph API error: {msg} (code={code})")
            data = obj.get("data") if isinstance(obj, dict) else None
            if isinstance(data, list):
                out.extend(it for it in data if isinstance(it, dict))
            paging = obj.get("paging") if isinstance(obj, dict) else None
            next_url = paging.get("next") if isinstance(paging, dict) else None
            url = str(next_url) if next_url else None
            next_params = None  # next URL already includes query params.
        return out

    def _client(self) -> httpx.AsyncClient:
        timeout = float(self.ctx.config.get("http_timeout_sec", 30.0))
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _accounts(self, client: httpx.AsyncClient) -> list[dict[str, Any]]:
        configured = self._configured_account_id()
        if configured:
            return [{"id": f"act_{configured}", "name": None, "currency": None, "account_status": 1}]
        return await self._iter_graph_data(
            client,
            path="me/adaccounts",
            params={"fields": "id,name,currency,account_status,timezone_name", "limit": 50},
        )

    async def sync_campaigns(self, integration_id: str) -> SyncCampaignsResult:
        if not self._access_token():
            return SyncCampaignsResult(error="Missing META_ACCESS_TOKEN")

        accounts_synced = 0
        campaigns_synced = 0
        errors: list[str] = []
        async with self._client() as client:
            accounts = await self._accounts(client)
            for account in accounts:
                account_id = str(account.get("id") or "").removeprefix("act_").strip()
                if not account_id:
                    continue
                try:
                    campaigns_synced += await self._sync_account(client, integration_id, account_id, account)
                    accounts_synced += 1
                except (AdapterError, httpx.HTTPError) as e:
                    logger.warning("meta account %s sync failed: %s", account_id, e)
                    errors.append(f"{account_id}: {e}")

        if errors and accounts_synced == 0:
            return SyncCampaignsResult(error="; ".join(errors))
        return SyncCampaignsResult(campaigns_synced=campaigns_synced, accounts_synced=accounts_synced)

    async def _sync_account(
        self,
        client: httpx.AsyncClient,
        integration_id: str,
        account_id: str,
        account: dict[str, Any],
    ) -> int:
        # Store writes are blocking sqlite calls; they run in a worker thread so the
        # scheduler's timeout can still interrupt a stuck sync.
        await asyncio.to_thread(self._store_account, integration_id, account_id, account)

        camps = await self._iter_graph_data(
            client,
            path=f"act_{account_id}/campaigns",
            params={
                "fields": "id,name,status,effective_status,objective,daily_budget,lifetime_budget",
                "limit": 200,
            },
        )
        count = await asyncio.to_thread(self._store_campaigns, account_id, camps)

        adsets = await self._iter_graph_data(
            client,
            path=f"act_{account_id}/adsets",
            params={"fields": "id,name,status,effective_status,campaign_id", "limit": 200},
        )
        await asyncio.to_thread(self._store_adsets, account_id, adsets)

        ads = await self._iter_graph_data(
            client,
            path=f"act_{account_id}/ads",
            params={"fields": "id,name,status,effective_status,campaign_id,adset_id", "limit": 200},
        )
        await asyncio.to_thread(self._store_ads, account_id, ads)
        return count

    def _store_account(self, integration_id: str, account_id: str, account: dict[str, Any]) -> None:
        self.repo.upsert_ad_account(
            integration_id=integration_id,
            provider=self.ctx.provider,
            account_id=account_id,
            name=str(account.get("name") or "").strip() or None,
            currency=str(account.get("currency") or "").strip() or None,
            timezone=str(account.get("timezone_name") or "").strip() or None,
            is_active=to_int(account.get("account_status", 1)) == 1,
        )

    def _store_campaigns(self, account_id: str, camps: list[dict[str, Any]]) -> int:
        count = 0
        for c in camps:
            cid = str(c.get("id") or "").strip()
            if not cid:
                continue
            self.repo.upsert_entity(
                provider=self.ctx.provider,
                entity_type="campaign",
                entity_id=cid,
                account_id=account_id,
                parent_type=None,
                parent_id=None,
                campaign_id=cid,
                name=str(c.get("name") or "").strip() or None,
                status=str(c.get("effective_status") or c.get("status") or "").strip() or None,
                daily_budget=_budget(c.get("daily_budget")),
                lifetime_budget=_budget(c.get("lifetime_budget")),
                meta_json={"source": "meta_graph_api", "objective": c.get("objective")},
            )
            count += 1
        return count

    def _store_adsets(self, account_id: str, adsets: list[dict[str, Any]]) -> None:
        for s in adsets:
            sid = str(s.get("id") or "").strip()
            if not sid:
                continue
            parent = str(s.get("campaign_id") or "").strip() or None
            self.repo.upsert_entity(
                provider=self.ctx.provider,
                entity_type="adset",
                entity_id=sid,
                account_id=account_id,
                parent_type="campaign" if parent else None,
                parent_id=parent,
                campaign_id=parent,
                name=str(s.get("name") or "").strip() or None,
                status=str(s.get("effective_status") or s.get("status") or "").strip() or None,
                meta_json={"source": "meta_graph_api"},
            )

    def _store_ads(self, account_id: str, ads: list[dict[str, Any]]) -> None:
        for a in ads:
            aid = str(a.get("id") or "").strip()
            if not aid:
                continue
            parent = str(a.get("adset_id") or "").strip() or None
            self.repo.upsert_entity(
                provider=self.ctx.provider,
                entity_type="ad",
                entity_id=aid,
                account_id=account_id,
                parent_type="adset" if parent else None,
                parent_id=parent,
                campaign_id=str(a.get("campaign_id") or "").strip() or None,
                name=str(a.get("name") or "").strip() or None,
                status=str(a.get("effective_status") or a.get("status") or "").strip() or None,
                meta_json={"source": "meta_graph_api"},
            )

    async def sync_metrics(self, integration_id: str) -> SyncMetricsResult:
        if not self._access_token():
            return SyncMetricsResult(error="Missing META_ACCESS_TOKEN")

        campaigns = await asyncio.to_thread(
            self.repo.list_entities,
            provider=self.ctx.provider,
            entity_type="campaign",
            integration_id=integration_id,
        )
        if not campaigns:
            logger.info("meta integration %s has no campaigns to sync", integration_id)
            return SyncMetricsResult()

        today = utc_now().date()
        time_range = json.dumps(
            {"since": (today - timedelta(days=self._lookback_days())).isoformat(), "until": today.isoformat()}
        )

        metrics_synced = 0
        breakdowns_synced = 0
        errors: list[str] = []
        async with self._client() as client:
            for camp in campaigns:
                campaign_id = str(camp["entity_id"])
                account_id = camp.get("account_id")
                try:
                    metrics_synced += await self._ingest_ad_insights(client, campaign_id, account_id, time_range)
                except (AdapterError, httpx.HTTPError) as e:
                    if "code=100" in str(e) or "does not exist" in str(e):
                        logger.warning("meta campaign %s no longer exists, skipped", campaign_id)
                        continue
                    logger.warning("meta insights for campaign %s failed: %s", campaign_id, e)
                    errors.append(f"{campaign_id}: {e}")
                    continue

                for dimension in BREAKDOWN_DIMENSIONS:
                    try:
                        breakdowns_synced += await self._ingest_breakdown(
                            client, campaign_id, account_id, time_range, dimension
                        )
                    except (AdapterError, httpx.HTTPError) as e:
                        logger.warning("meta %s breakdown for campaign %s failed: %s", dimension, campaign_id, e)

        if errors and metrics_synced == 0:
            return SyncMetricsResult(error="; ".join(errors))
        return SyncMetricsResult(metrics_synced=metrics_synced, breakdowns_synced=breakdowns_synced)

    async def _ingest_ad_insights(
        self,
        client: httpx.AsyncClient,
        campaign_id: str,
        account_id: str | None,
        time_range: str,
    ) -> int:
        rows = await self._iter_graph_data(
            client,
            path=f"{campaign_id}/insights",
            params={
                "level": "ad",
                "time_increment": 1,
                "time_range": time_range,
                "fields": "date_start,ad_id,ad_name,adset_id,impressions,clicks,spend,actions",
                "limit": 500,
            },
        )
        return await asyncio.to_thread(self._store_ad_rows, campaign_id, account_id, rows)

    def _store_ad_rows(self, campaign_id: str, account_id: str | None, rows: list[dict[str, Any]]) -> int:
        n = 0
        for r in rows:
            day = str(r.get("date_start") or "").strip()
            ad_id = str(r.get("ad_id") or "").strip()
            if not day or not ad_id:
                continue
            conversions, messages, results = classify_actions(r.get("actions"))
            self.repo.upsert_metric_daily(
                provider=self.ctx.provider,
                entity_type="ad",
                entity_id=ad_id,
                day=day,
                account_id=account_id,
                campaign_id=campaign_id,
                impressions=to_int(r.get("impressions")),
                clicks=to_int(r.get("clicks")),
                spend=to_float(r.get("spend")),
                conversions=conversions,
                results=results,
                messages=messages,
                metrics_json={"source": "meta_graph_api", "adset_id": r.get("adset_id")},
            )
            n += 1
        return n

    async def _ingest_breakdown(
        self,
        client: httpx.AsyncClient,
        campaign_id: str,
        account_id: str | None,
        time_range: str,
        dimension: str,
    ) -> int:
        rows = await self._iter_graph_data(
            client,
            path=f"{campaign_id}/insights",
            params={
                "level": "campaign",
                "time_increment": 1,
                "time_range": time_range,
                "breakdowns": dimension,
                "fields": "date_start,impressions,clicks,spend,actions",
                "limit": 500,
            },
        )
        return await asyncio.to_thread(self._store_breakdown_rows, campaign_id, account_id, dimension, rows)

    def _store_breakdown_rows(
        self,
        campaign_id: str,
        account_id: str | None,
        dimension: str,
        rows: list[dict[str, Any]],
    ) -> int:
        n = 0
        for r in rows:
            day = str(r.get("date_start") or "").strip()
            if not day:
                continue
            conversions, messages, results = classify_actions(r.get("actions"))
            self.repo.upsert_breakdown(
                provider=self.ctx.provider,
                campaign_id=campaign_id,
                day=day,
                breakdown_type=dimension,
                breakdown_value=str(r.get(dimension) or "unknown"),
                account_id=account_id,
                impressions=to_int(r.get("impressions")),
                clicks=to_int(r.get("clicks")),
                spend=to_float(r.get("spend")),
                conversions=conversions,
                results=results,
                messages=messages,
            )
            n += 1
        return n
