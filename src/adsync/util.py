from __future__ import annotations

import secrets
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def now_utc_iso() -> str:
    return utc_now().isoformat()


def to_utc_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def parse_iso(raw: str | None) -> datetime | None:
    """Parse a stored timestamp. Naive values are treated as UTC."""
    if not raw:
        return None
    dt = datetime.fromisoformat(str(raw))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    # URL-safe, reasonably short, no external deps
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def local_date(dt: datetime, timezone_name: str) -> date:
    return dt.astimezone(ZoneInfo(timezone_name)).date()

