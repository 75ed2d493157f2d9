from adsync.adapters.base import (
    AdapterContext,
    AdapterError,
    CombinedSyncAdapter,
    ProviderSyncAdapter,
    SyncAllResult,
    SyncCampaignsResult,
    SyncMetricsResult,
)
from adsync.adapters.demo import DemoSyncAdapter
from adsync.adapters.google_ads import GoogleSyncAdapter
from adsync.adapters.meta_ads import MetaSyncAdapter

__all__ = [
    "AdapterContext",
    "AdapterError",
    "CombinedSyncAdapter",
    "ProviderSyncAdapter",
    "SyncAllResult",
    "SyncCampaignsResult",
    "SyncMetricsResult",
    "DemoSyncAdapter",
    "GoogleSyncAdapter",
    "MetaSyncAdapter",
]
