from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from adsync.db import open_db
from adsync.util import new_id, now_utc_iso


WITH_SPEND = "WITH_SPEND"

_METRIC_COLUMNS = "impressions, clicks, spend, conversions, results, messages"


class Repo:
    """
    Repository shared by the scheduler, aggregator, alert evaluator and adapters.
    Every method opens its own short transaction (sqlite3 only).
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self):
        return open_db(self.db_path)

    @staticmethod
    def _scope_filter(
        alias: str,
        *,
        date_from: str,
        date_to: str,
        user_id: str | None = None,
        account_id: str | None = None,
        provider: str | None = None,
        campaign_id: str | None = None,
        status: str | None = None,
        level: str | None = None,
    ) -> tuple[str, list[Any]]:
        """Return (JOIN+WHERE clause, params) shared by metric and breakdown queries."""
        joins: list[str] = []
        where = [f"{alias}.date BETWEEN ? AND ?"]
        params: list[Any] = [date_from, date_to]

        if user_id:
            joins.append(f"JOIN integrations i ON i.id = {alias}.integration_id")
            where.append("i.user_id=?")
            params.append(user_id)
        if account_id:
            where.append(f"{alias}.account_id=?")
            params.append(account_id)
        if provider:
            where.append(f"{alias}.provider=?")
            params.append(provider)
        if campaign_id:
            where.append(f"{alias}.campaign_id=?")
            params.append(campaign_id)
        if level:
            where.append(f"{alias}.entity_type=?")
            params.append(level)
        if status:
            if status.upper() == WITH_SPEND:
                where.append(f"COALESCE({alias}.spend, 0) > 0")
            else:
                joins.append(
                    "JOIN entities c ON c.provider = "
                    f"{alias}.provider AND c.entity_type = 'campaign' AND c.entity_id = {alias}.campaign_id"
                )
                where.append("UPPER(COALESCE(c.status, '')) = ?")
                params.append(status.upper())

        # Param order follows clause order: joins carry no params, WHERE carries them all.
        sql = " ".join(joins) + " WHERE " + " AND ".join(where)
        return sql, params

    # ------------------------------------------------------------------ #
    # Integrations and accounts                                           #
    # ------------------------------------------------------------------ #

    def create_integration(
        self,
        *,
        user_id: str,
        provider: str,
        status: str = "active",
        credentials_ref: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> str:
        now = now_utc_iso()
        iid = new_id("int")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO integrations(id, user_id, provider, status, credentials_ref, config_json,
                                         created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    iid,
                    user_id,
                    provider,
                    status,
                    credentials_ref,
                    json.dumps(config or {}, ensure_ascii=True),
                    now,
                    now,
                ),
            )
        return iid

    def get_integration(self, integration_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM integrations WHERE id=?", (integration_id,)).fetchone()
            return dict(row) if row else None

    def get_active_integration(self, *, user_id: str, provider: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM integrations
                WHERE user_id=? AND provider=? AND status='active'
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (user_id, provider),
            ).fetchone()
            return dict(row) if row else None

    def list_integrations(self, user_id: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM integrations"
        params: list[Any] = []
        if user_id:
            sql += " WHERE user_id=?"
            params.append(user_id)
        sql += " ORDER BY user_id, provider"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def set_integration_status(self, integration_id: str, status: str) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE integrations SET status=?, updated_at=? WHERE id=?",
                (status, now, integration_id),
            )

    def upsert_ad_account(
        self,
        *,
        integration_id: str,
        provider: str,
        account_id: str,
        name: str | None,
        currency: str | None = None,
        timezone: str | None = None,
        is_active: bool = True,
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO ad_accounts(id, integration_id, provider, account_id, name, currency, timezone,
                                        is_active, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(integration_id, account_id) DO UPDATE SET
                  name=excluded.name,
                  currency=excluded.currency,
                  timezone=excluded.timezone,
                  is_active=excluded.is_active,
                  updated_at=excluded.updated_at
                """,
                (
                    new_id("acc"),
                    integration_id,
                    provider,
                    account_id,
                    name,
                    currency,
                    timezone,
                    1 if is_active else 0,
                    now,
                    now,
                ),
            )

    def list_ad_accounts(self, integration_id: str, *, active_only: bool = True) -> list[dict[str, Any]]:
        sql = "SELECT * FROM ad_accounts WHERE integration_id=?"
        if active_only:
            sql += " AND is_active=1"
        sql += " ORDER BY account_id"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, (integration_id,)).fetchall()]

    # ------------------------------------------------------------------ #
    # Entities and metric rows (written by adapters)                      #
    # ------------------------------------------------------------------ #

    def upsert_entity(
        self,
        *,
        provider: str,
        entity_type: str,
        entity_id: str,
        integration_id: str | None,
        account_id: str | None,
        parent_type: str | None,
        parent_id: str | None,
        campaign_id: str | None,
        name: str | None,
        status: str | None,
        daily_budget: float | None = None,
        lifetime_budget: float | None = None,
        meta_json: dict[str, Any] | None = None,
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO entities(
                  provider, entity_type, entity_id, integration_id, account_id,
                  parent_type, parent_id, campaign_id, name, status,
                  daily_budget, lifetime_budget, meta_json, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, entity_type, entity_id) DO UPDATE SET
                  integration_id=excluded.integration_id,
                  account_id=excluded.account_id,
                  parent_type=excluded.parent_type,
                  parent_id=excluded.parent_id,
                  campaign_id=excluded.campaign_id,
                  name=excluded.name,
                  status=COALESCE(excluded.status, entities.status),
                  daily_budget=COALESCE(excluded.daily_budget, entities.daily_budget),
                  lifetime_budget=COALESCE(excluded.lifetime_budget, entities.lifetime_budget),
                  meta_json=excluded.meta_json,
                  updated_at=excluded.updated_at
                """,
                (
                    provider,
                    entity_type,
                    entity_id,
                    integration_id,
                    account_id,
                    parent_type,
                    parent_id,
                    campaign_id,
                    name,
                    status,
                    daily_budget,
                    lifetime_budget,
                    json.dumps(meta_json or {}, ensure_ascii=True),
                    now,
                ),
            )

    def get_campaign(self, campaign_id: str, *, provider: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM entities WHERE entity_type='campaign' AND entity_id=?"
        params: list[Any] = [campaign_id]
        if provider:
            sql += " AND provider=?"
            params.append(provider)
        with self.connect() as conn:
            row = conn.execute(sql + " LIMIT 1", params).fetchone()
            return dict(row) if row else None

    def list_entities(
        self,
        *,
        provider: str | None = None,
        entity_type: str | None = None,
        integration_id: str | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM entities"
        where: list[str] = []
        params: list[Any] = []
        if provider:
            where.append("provider=?")
            params.append(provider)
        if entity_type:
            where.append("entity_type=?")
            params.append(entity_type)
        if integration_id:
            where.append("integration_id=?")
            params.append(integration_id)
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY provider, entity_type, name LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def upsert_metric_daily(
        self,
        *,
        provider: str,
        entity_type: str,
        entity_id: str,
        day: str,
        integration_id: str | None,
        account_id: str | None,
        campaign_id: str | None,
        impressions: int | None,
        clicks: int | None,
        spend: float | None,
        conversions: float | None = None,
        results: float | None = None,
        messages: float | None = None,
        metrics_json: dict[str, Any] | None = None,
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                f"""
                INSERT INTO metrics_daily(
                  provider, entity_type, entity_id, date, integration_id, account_id, campaign_id,
                  {_METRIC_COLUMNS}, metrics_json, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, entity_type, entity_id, date) DO UPDATE SET
                  integration_id=excluded.integration_id,
                  account_id=excluded.account_id,
                  campaign_id=excluded.campaign_id,
                  impressions=excluded.impressions,
                  clicks=excluded.clicks,
                  spend=excluded.spend,
                  conversions=excluded.conversions,
                  results=excluded.results,
                  messages=excluded.messages,
                  metrics_json=excluded.metrics_json,
                  updated_at=excluded.updated_at
                """,
                (
                    provider,
                    entity_type,
                    entity_id,
                    day,
                    integration_id,
                    account_id,
                    campaign_id,
                    impressions,
                    clicks,
                    spend,
                    conversions,
                    results,
                    messages,
                    json.dumps(metrics_json or {}, ensure_ascii=True),
                    now,
                ),
            )

    def upsert_breakdown(
        self,
        *,
        provider: str,
        campaign_id: str,
        day: str,
        breakdown_type: str,
        breakdown_value: str,
        integration_id: str | None,
        account_id: str | None,
        impressions: int | None,
        clicks: int | None,
        spend: float | None,
        conversions: float | None = None,
        results: float | None = None,
        messages: float | None = None,
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                f"""
                INSERT INTO metric_breakdowns(
                  provider, campaign_id, date, breakdown_type, breakdown_value, integration_id, account_id,
                  {_METRIC_COLUMNS}, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, campaign_id, date, breakdown_type, breakdown_value) DO UPDATE SET
                  integration_id=excluded.integration_id,
                  account_id=excluded.account_id,
                  impressions=excluded.impressions,
                  clicks=excluded.clicks,
                  spend=excluded.spend,
                  conversions=excluded.conversions,
                  results=excluded.results,
                  messages=excluded.messages,
                  updated_at=excluded.updated_at
                """,
                (
                    provider,
                    campaign_id,
                    day,
                    breakdown_type,
                    breakdown_value or "unknown",
                    integration_id,
                    account_id,
                    impressions,
                    clicks,
                    spend,
                    conversions,
                    results,
                    messages,
                    now,
                ),
            )

    # ------------------------------------------------------------------ #
    # Metric store queries (read by the aggregator)                       #
    # ------------------------------------------------------------------ #

    def list_metric_rows(self, **scope: Any) -> list[dict[str, Any]]:
        clause, params = self._scope_filter("m", **scope)
        sql = (
            "SELECT m.provider, m.entity_type, m.entity_id, m.date, m.account_id, m.campaign_id, "
            "m.impressions, m.clicks, m.spend, m.conversions, m.results, m.messages "
            "FROM metrics_daily m " + clause + " ORDER BY m.date, m.provider, m.entity_id"
        )
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def count_metric_rows(self, **scope: Any) -> int:
        clause, params = self._scope_filter("m", **scope)
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM metrics_daily m " + clause, params).fetchone()
            return int(row["n"] or 0)

    def list_breakdown_rows(self, *, breakdown_type: str, **scope: Any) -> list[dict[str, Any]]:
        scope.pop("level", None)
        clause, params = self._scope_filter("b", **scope)
        clause += " AND b.breakdown_type=?"
        params.append(breakdown_type)
        sql = (
            "SELECT b.provider, b.campaign_id, b.date, b.account_id, b.breakdown_type, b.breakdown_value, "
            "b.impressions, b.clicks, b.spend, b.conversions, b.results, b.messages "
            "FROM metric_breakdowns b " + clause + " ORDER BY b.date, b.campaign_id, b.breakdown_value"
        )
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    # ------------------------------------------------------------------ #
    # Sync schedules: claim-then-update protocol                          #
    # ------------------------------------------------------------------ #

    def create_schedule(
        self,
        *,
        user_id: str,
        provider: str,
        sync_type: str,
        frequency: str = "daily",
        is_active: bool = True,
        next_sync_at: str | None = None,
    ) -> str:
        now = now_utc_iso()
        sid = new_id("sch")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_schedules(id, user_id, provider, sync_type, frequency, is_active,
                                           next_sync_at, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (sid, user_id, provider, sync_type, frequency, 1 if is_active else 0, next_sync_at, now, now),
            )
        return sid

    def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM sync_schedules WHERE id=?", (schedule_id,)).fetchone()
            return dict(row) if row else None

    def list_schedules(self, user_id: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM sync_schedules"
        params: list[Any] = []
        if user_id:
            sql += " WHERE user_id=?"
            params.append(user_id)
        sql += " ORDER BY user_id, provider, sync_type"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def set_schedule_active(self, schedule_id: str, is_active: bool) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE sync_schedules SET is_active=?, updated_at=? WHERE id=?",
                (1 if is_active else 0, now, schedule_id),
            )

    def release_stale_claims(self, *, claimed_before: str) -> int:
        now = now_utc_iso()
        with self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE sync_schedules
                SET claim_token=NULL, claimed_at=NULL, updated_at=?
                WHERE claim_token IS NOT NULL AND claimed_at < ?
                """,
                (now, claimed_before),
            )
            return int(cur.rowcount or 0)

    def claim_due_schedules(self, *, now: str, token: str) -> list[dict[str, Any]]:
        """
        Mark every due, unclaimed schedule with `token` in one UPDATE, then read back
        only the rows carrying that token. A concurrent run sees them as claimed.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                UPDATE sync_schedules
                SET claim_token=?, claimed_at=?, updated_at=?
                WHERE is_active=1
                  AND claim_token IS NULL
                  AND (next_sync_at IS NULL OR next_sync_at <= ?)
                """,
                (token, now, now, now),
            )
            rows = conn.execute(
                "SELECT * FROM sync_schedules WHERE claim_token=? ORDER BY created_at, id",
                (token,),
            ).fetchall()
            return [dict(r) for r in rows]

    def finish_schedule_success(
        self,
        schedule_id: str,
        *,
        token: str,
        last_sync_at: str,
        next_sync_at: str,
    ) -> bool:
        with self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE sync_schedules
                SET last_sync_at=?, next_sync_at=?, claim_token=NULL, claimed_at=NULL,
                    last_error=NULL, updated_at=?
                WHERE id=? AND claim_token=?
                """,
                (last_sync_at, next_sync_at, last_sync_at, schedule_id, token),
            )
            return cur.rowcount == 1

    def release_schedule_claim(self, schedule_id: str, *, token: str, error: str | None = None) -> bool:
        now = now_utc_iso()
        with self.connect() as conn:
            if error is None:
                cur = conn.execute(
                    """
                    UPDATE sync_schedules SET claim_token=NULL, claimed_at=NULL, updated_at=?
                    WHERE id=? AND claim_token=?
                    """,
                    (now, schedule_id, token),
                )
            else:
                cur = conn.execute(
                    """
                    UPDATE sync_schedules SET claim_token=NULL, claimed_at=NULL, last_error=?, updated_at=?
                    WHERE id=? AND claim_token=?
                    """,
                    (error, now, schedule_id, token),
                )
            return cur.rowcount == 1

    # ------------------------------------------------------------------ #
    # Sync logs                                                           #
    # ------------------------------------------------------------------ #

    def create_sync_log(
        self,
        *,
        schedule_id: str | None,
        integration_id: str | None,
        provider: str,
        operation: str,
        started_at: str,
    ) -> str:
        lid = new_id("log")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_logs(id, schedule_id, integration_id, provider, operation, status, started_at)
                VALUES(?, ?, ?, ?, ?, 'running', ?)
                """,
                (lid, schedule_id, integration_id, provider, operation, started_at),
            )
        return lid

    def finish_sync_log(
        self,
        log_id: str,
        *,
        status: str,
        campaigns_synced: int = 0,
        metrics_synced: int = 0,
        breakdowns_synced: int = 0,
        error: str | None = None,
    ) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE sync_logs
                SET status=?, campaigns_synced=?, metrics_synced=?, breakdowns_synced=?, error=?, finished_at=?
                WHERE id=?
                """,
                (status, campaigns_synced, metrics_synced, breakdowns_synced, error, now, log_id),
            )

    def get_last_successful_sync(self, *, operation: str | None = None) -> dict[str, Any] | None:
        sql = "SELECT * FROM sync_logs WHERE status='success'"
        params: list[Any] = []
        if operation:
            sql += " AND operation=?"
            params.append(operation)
        sql += " ORDER BY finished_at DESC LIMIT 1"
        with self.connect() as conn:
            row = conn.execute(sql, params).fetchone()
            return dict(row) if row else None

    def list_sync_logs(self, *, schedule_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        sql = "SELECT * FROM sync_logs"
        params: list[Any] = []
        if schedule_id:
            sql += " WHERE schedule_id=?"
            params.append(schedule_id)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    # ------------------------------------------------------------------ #
    # Alert rules and trigger records                                     #
    # ------------------------------------------------------------------ #

    def create_alert_rule(
        self,
        *,
        user_id: str,
        name: str,
        metric_type: str,
        condition: str,
        threshold: float,
        provider: str | None = None,
        account_id: str | None = None,
        campaign_id: str | None = None,
        send_email: bool = False,
        is_active: bool = True,
    ) -> str:
        now = now_utc_iso()
        rid = new_id("alr")
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO alert_rules(id, user_id, name, metric_type, condition, threshold, provider,
                                        account_id, campaign_id, send_email, is_active, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rid,
                    user_id,
                    name,
                    metric_type,
                    condition,
                    float(threshold),
                    provider,
                    account_id,
                    campaign_id,
                    1 if send_email else 0,
                    1 if is_active else 0,
                    now,
                    now,
                ),
            )
        return rid

    def get_alert_rule(self, rule_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM alert_rules WHERE id=?", (rule_id,)).fetchone()
            return dict(row) if row else None

    def list_alert_rules(self, *, user_id: str | None = None, active_only: bool = False) -> list[dict[str, Any]]:
        sql = "SELECT * FROM alert_rules"
        where: list[str] = []
        params: list[Any] = []
        if user_id:
            where.append("user_id=?")
            params.append(user_id)
        if active_only:
            where.append("is_active=1")
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at, id"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def set_alert_rule_active(self, rule_id: str, is_active: bool) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE alert_rules SET is_active=?, updated_at=? WHERE id=?",
                (1 if is_active else 0, now, rule_id),
            )

    def get_open_trigger(self, rule_id: str) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM alert_triggers WHERE rule_id=? AND resolved_at IS NULL",
                (rule_id,),
            ).fetchone()
            return dict(row) if row else None

    def open_trigger(
        self,
        *,
        rule_id: str,
        current_amount: float,
        threshold: float,
        triggered_at: str,
    ) -> str | None:
        """
        Insert the rule's single unresolved trigger record and stamp the rule.
        Returns None when an unresolved record already exists (unique index).
        """
        tid = new_id("trg")
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO alert_triggers(id, rule_id, current_amount, threshold, triggered_at, updated_at)
                    VALUES(?, ?, ?, ?, ?, ?)
                    """,
                    (tid, rule_id, float(current_amount), float(threshold), triggered_at, triggered_at),
                )
                conn.execute(
                    "UPDATE alert_rules SET last_triggered_at=?, updated_at=? WHERE id=?",
                    (triggered_at, triggered_at, rule_id),
                )
        except sqlite3.IntegrityError:
            return None
        return tid

    def update_trigger_amount(self, trigger_id: str, current_amount: float) -> None:
        now = now_utc_iso()
        with self.connect() as conn:
            conn.execute(
                "UPDATE alert_triggers SET current_amount=?, updated_at=? WHERE id=? AND resolved_at IS NULL",
                (float(current_amount), now, trigger_id),
            )

    def resolve_trigger(self, trigger_id: str, *, resolved_at: str) -> bool:
        with self.connect() as conn:
            cur = conn.execute(
                "UPDATE alert_triggers SET resolved_at=?, updated_at=? WHERE id=? AND resolved_at IS NULL",
                (resolved_at, resolved_at, trigger_id),
            )
            return cur.rowcount == 1

    def list_triggers(self, *, rule_id: str | None = None, open_only: bool = False) -> list[dict[str, Any]]:
        sql = "SELECT * FROM alert_triggers"
        where: list[str] = []
        params: list[Any] = []
        if rule_id:
            where.append("rule_id=?")
            params.append(rule_id)
        if open_only:
            where.append("resolved_at IS NULL")
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY triggered_at, id"
        with self.connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]
