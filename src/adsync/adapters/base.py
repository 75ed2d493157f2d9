from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class AdapterError(RuntimeError):
    """Raised by an adapter when a provider call fails hard."""


@dataclass(frozen=True)
class SyncCampaignsResult:
    campaigns_synced: int = 0
    accounts_synced: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaigns_synced": self.campaigns_synced,
            "accounts_synced": self.accounts_synced,
            "error": self.error,
        }


@dataclass(frozen=True)
class SyncMetricsResult:
    metrics_synced: int = 0
    breakdowns_synced: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics_synced": self.metrics_synced,
            "breakdowns_synced": self.breakdowns_synced,
            "error": self.error,
        }


@dataclass(frozen=True)
class SyncAllResult:
    campaigns_synced: int = 0
    metrics_synced: int = 0
    breakdowns_synced: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaigns_synced": self.campaigns_synced,
            "metrics_synced": self.metrics_synced,
            "breakdowns_synced": self.breakdowns_synced,
            "error": self.error,
        }


@dataclass(frozen=True)
class AdapterContext:
    integration_id: str
    user_id: str
    provider: str
    config: dict[str, Any] = field(default_factory=dict)


class ProviderSyncAdapter(Protocol):
    """
    Pulls entities and metrics from one ad platform into the metric store.
    A result with `error` set counts as a failed sync, same as raising.
    """

    async def sync_campaigns(self, integration_id: str) -> SyncCampaignsResult:
        """Upsert accounts, campaigns, ad sets and ads for the integration."""

    async def sync_metrics(self, integration_id: str) -> SyncMetricsResult:
        """Upsert daily metric rows and breakdown rows for the integration."""


class CombinedSyncAdapter(ProviderSyncAdapter, Protocol):
    async def sync_all(self, integration_id: str) -> SyncAllResult:
        """Campaign structure and metrics in one pass."""


def to_float(v: Any) -> float:
    try:
        return float(str(v).replace(",", "")) if v is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def to_int(v: Any) -> int:
    try:
        return int(float(str(v).replace(",", ""))) if v is not None else 0
    except (TypeError, ValueError):
        return 0
