from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    db_path: Path
    timezone: str
    web_host: str
    web_port: int
    service_token: str | None
    cron_secret: str | None
    demo_mode: bool
    sync_concurrency: int = 5
    adapter_timeout_sec: float = 60.0
    claim_ttl_minutes: int = 15
    tick_seconds: int = 300
    alert_renotify: bool = False
    notify_timeout_sec: float = 5.0
    log_level: str = "INFO"
    telegram_bot_token: str | None = None
    telegram_chat_id: int | None = None

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("ADSYNC_DB_PATH", "./data/adsync.sqlite3"))
        timezone = os.getenv("ADSYNC_TIMEZONE", "UTC").strip() or "UTC"
        web_host = os.getenv("ADSYNC_WEB_HOST", "127.0.0.1")
        web_port = int(os.getenv("ADSYNC_WEB_PORT", "8020"))

        service_token = (os.getenv("ADSYNC_SERVICE_TOKEN") or "").strip() or None
        cron_secret = (os.getenv("ADSYNC_CRON_SECRET") or "").strip() or None

        chat_id_raw = (os.getenv("TELEGRAM_CHAT_ID") or "").strip()
        chat_id = int(chat_id_raw) if chat_id_raw else None

        return Settings(
            db_path=db_path,
            timezone=timezone,
            web_host=web_host,
            web_port=web_port,
            service_token=service_token,
            cron_secret=cron_secret,
            demo_mode=_truthy(os.getenv("ADSYNC_DEMO_MODE", "0")),
            # Keep concurrent adapter calls small: every call hits an external API.
            sync_concurrency=max(1, _int_env("ADSYNC_SYNC_CONCURRENCY", 5)),
            adapter_timeout_sec=max(1.0, _float_env("ADSYNC_ADAPTER_TIMEOUT_SEC", 60.0)),
            claim_ttl_minutes=max(1, _int_env("ADSYNC_CLAIM_TTL_MINUTES", 15)),
            tick_seconds=max(10, _int_env("ADSYNC_TICK_SECONDS", 300)),
            alert_renotify=_truthy(os.getenv("ADSYNC_ALERT_RENOTIFY", "0")),
            notify_timeout_sec=max(0.1, _float_env("ADSYNC_NOTIFY_TIMEOUT_SEC", 5.0)),
            log_level=(os.getenv("ADSYNC_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
            telegram_bot_token=(os.getenv("TELEGRAM_BOT_TOKEN") or "").strip() or None,
            telegram_chat_id=chat_id,
        )
