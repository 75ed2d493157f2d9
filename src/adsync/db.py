from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import date, timedelta
from pathlib import Path
from typing import Iterator

from adsync.util import new_id, now_utc_iso


SCHEMA_VERSION = 3


@contextmanager
def open_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Yield a connection inside a transaction; commit on success, always close."""
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON;")
        with conn:
            yield conn
    finally:
        conn.close()


class AdsDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return open_db(self.db_path)

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS integrations (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  provider TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'active',
                  credentials_ref TEXT,
                  config_json TEXT NOT NULL DEFAULT '{}',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_integrations_user_provider
                ON integrations(user_id, provider, status);

                CREATE TABLE IF NOT EXISTS ad_accounts (
                  id TEXT PRIMARY KEY,
                  integration_id TEXT NOT NULL,
                  provider TEXT NOT NULL,
                  account_id TEXT NOT NULL,
                  name TEXT,
                  currency TEXT,
                  timezone TEXT,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(integration_id, account_id),
                  FOREIGN KEY (integration_id) REFERENCES integrations(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS entities (
                  provider TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT NOT NULL,
                  integration_id TEXT,
                  account_id TEXT,
                  parent_type TEXT,
                  parent_id TEXT,
                  campaign_id TEXT,
                  name TEXT,
                  status TEXT,
                  daily_budget REAL,
                  lifetime_budget REAL,
                  meta_json TEXT NOT NULL DEFAULT '{}',
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (provider, entity_type, entity_id)
                );

                CREATE TABLE IF NOT EXISTS metrics_daily (
                  provider TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT NOT NULL,
                  date TEXT NOT NULL,
                  integration_id TEXT,
                  account_id TEXT,
                  campaign_id TEXT,
                  impressions INTEGER,
                  clicks INTEGER,
                  spend REAL,
                  conversions REAL,
                  results REAL,
                  messages REAL,
                  metrics_json TEXT NOT NULL DEFAULT '{}',
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (provider, entity_type, entity_id, date)
                );

                CREATE INDEX IF NOT EXISTS idx_metrics_daily_date
                ON metrics_daily(date, provider, account_id);

                CREATE INDEX IF NOT EXISTS idx_metrics_daily_campaign_date
                ON metrics_daily(campaign_id, date);

                CREATE TABLE IF NOT EXISTS metric_breakdowns (
                  provider TEXT NOT NULL,
                  campaign_id TEXT NOT NULL,
                  date TEXT NOT NULL,
                  breakdown_type TEXT NOT NULL,
                  breakdown_value TEXT NOT NULL,
                  integration_id TEXT,
                  account_id TEXT,
                  impressions INTEGER,
                  clicks INTEGER,
                  spend REAL,
                  conversions REAL,
                  results REAL,
                  messages REAL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (provider, campaign_id, date, breakdown_type, breakdown_value)
                );

                CREATE INDEX IF NOT EXISTS idx_metric_breakdowns_type_date
                ON metric_breakdowns(breakdown_type, date);

                CREATE TABLE IF NOT EXISTS sync_schedules (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  provider TEXT NOT NULL,
                  sync_type TEXT NOT NULL,
                  frequency TEXT NOT NULL DEFAULT 'daily',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  last_sync_at TEXT,
                  next_sync_at TEXT,
                  claim_token TEXT,
                  claimed_at TEXT,
                  last_error TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_sync_schedules_due
                ON sync_schedules(is_active, next_sync_at);

                CREATE TABLE IF NOT EXISTS sync_logs (
                  id TEXT PRIMARY KEY,
                  schedule_id TEXT,
                  integration_id TEXT,
                  provider TEXT NOT NULL,
                  operation TEXT NOT NULL,
                  status TEXT NOT NULL,
                  campaigns_synced INTEGER NOT NULL DEFAULT 0,
                  metrics_synced INTEGER NOT NULL DEFAULT 0,
                  breakdowns_synced INTEGER NOT NULL DEFAULT 0,
                  error TEXT,
                  started_at TEXT NOT NULL,
                  finished_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_sync_logs_operation_finished
                ON sync_logs(operation, status, finished_at);

                CREATE TABLE IF NOT EXISTS alert_rules (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  name TEXT NOT NULL,
                  metric_type TEXT NOT NULL,
                  condition TEXT NOT NULL,
                  threshold REAL NOT NULL,
                  provider TEXT,
                  account_id TEXT,
                  campaign_id TEXT,
                  send_email INTEGER NOT NULL DEFAULT 0,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  last_triggered_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS alert_triggers (
                  id TEXT PRIMARY KEY,
                  rule_id TEXT NOT NULL,
                  current_amount REAL NOT NULL,
                  threshold REAL NOT NULL,
                  triggered_at TEXT NOT NULL,
                  resolved_at TEXT,
                  updated_at TEXT NOT NULL,
                  FOREIGN KEY (rule_id) REFERENCES alert_rules(id) ON DELETE CASCADE
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_alert_triggers_open
                ON alert_triggers(rule_id) WHERE resolved_at IS NULL;

                CREATE INDEX IF NOT EXISTS idx_alert_triggers_rule_triggered
                ON alert_triggers(rule_id, triggered_at);
                """
            )
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def schema_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
            if not row:
                return 0
            try:
                return int(row["value"])
            except ValueError:
                return 0

    def seed_demo(self, *, user_id: str = "demo_user", days: int = 14) -> dict[str, str]:
        """
        Seed one active integration per provider with schedules and a spend rule.
        Metric rows are left to the demo adapters so a first tick has work to do.
        """
        now = now_utc_iso()
        out: dict[str, str] = {}
        with self._connect() as conn:
            for provider, sync_types in (("meta", ("campaigns", "metrics")), ("google", ("full",))):
                row = conn.execute(
                    "SELECT id FROM integrations WHERE user_id=? AND provider=?",
                    (user_id, provider),
                ).fetchone()
                if row:
                    integration_id = str(row["id"])
                else:
                    integration_id = new_id("int")
                    conn.execute(
                        """
                        INSERT INTO integrations(id, user_id, provider, status, credentials_ref, config_json,
                                                 created_at, updated_at)
                        VALUES(?, ?, ?, 'active', NULL, ?, ?, ?)
                        """,
                        (integration_id, user_id, provider, f'{{"demo": true, "demo_days": {int(days)}}}', now, now),
                    )
                out[provider] = integration_id

                for sync_type in sync_types:
                    exists = conn.execute(
                        "SELECT 1 FROM sync_schedules WHERE user_id=? AND provider=? AND sync_type=?",
                        (user_id, provider, sync_type),
                    ).fetchone()
                    if exists:
                        continue
                    conn.execute(
                        """
                        INSERT INTO sync_schedules(id, user_id, provider, sync_type, frequency, is_active,
                                                   created_at, updated_at)
                        VALUES(?, ?, ?, ?, 'hourly', 1, ?, ?)
                        """,
                        (new_id("sch"), user_id, provider, sync_type, now, now),
                    )

            name = "Daily spend above 500"
            exists = conn.execute(
                "SELECT 1 FROM alert_rules WHERE user_id=? AND name=?",
                (user_id, name),
            ).fetchone()
            if not exists:
                conn.execute(
                    """
                    INSERT INTO alert_rules(id, user_id, name, metric_type, condition, threshold,
                                            send_email, is_active, created_at, updated_at)
                    VALUES(?, ?, ?, 'daily_spend', 'greater_than', 500, 0, 1, ?, ?)
                    """,
                    (new_id("alr"), user_id, name, now, now),
                )
        return out


def date_span(date_from: str, date_to: str) -> list[str]:
    d0 = date.fromisoformat(date_from)
    d1 = date.fromisoformat(date_to)
    out: list[str] = []
    cur = d0
    while cur <= d1:
        out.append(cur.isoformat())
        cur += timedelta(days=1)
    return out
